"""Tests for mail.py module."""

import smtplib

import pytest

from alertwatch_mcp.mail import EmailCompositionError, SmtpSender, compose_email


class FakeSMTP:
    """Context manager standing in for smtplib.SMTP."""

    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def send_message(self, message):
        if message["Subject"] == "reject":
            raise smtplib.SMTPRecipientsRefused({})
        self.sent.append(message)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr("alertwatch_mcp.mail.smtplib.SMTP", FakeSMTP)
    return FakeSMTP


def test_compose_email():
    """Test composing an HTML email."""
    message = compose_email(["a@example.com", "Bee <b@example.com>"], "Subject", "<b>hi</b>", sender="x@example.com")

    assert message["From"] == "x@example.com"
    assert message["Subject"] == "Subject"
    assert "b@example.com" in message["To"]
    assert message.get_content_type() == "text/html"
    assert "<b>hi</b>" in message.get_content()


@pytest.mark.parametrize("recipients", [[], ["nobody"], ["a@example.com", ""]])
def test_compose_email_invalid_recipients(recipients):
    """Test that empty or invalid recipient lists are rejected."""
    with pytest.raises(EmailCompositionError):
        compose_email(recipients, "Subject", "body")


def test_send_all(fake_smtp):
    """Test sending messages over one connection."""
    messages = [compose_email(["a@example.com"], f"Subject {i}", "body") for i in range(2)]

    SmtpSender(host="mail.example.com", port=2525).send_all(messages)

    (smtp,) = fake_smtp.instances
    assert (smtp.host, smtp.port) == ("mail.example.com", 2525)
    assert len(smtp.sent) == 2


def test_send_all_nothing_to_send(fake_smtp):
    """Test that no connection is opened without messages."""
    SmtpSender().send_all([])
    assert fake_smtp.instances == []


def test_send_all_logs_rejected_message(fake_smtp, caplog):
    """Test that one rejected message does not stop the others."""
    messages = [
        compose_email(["a@example.com"], "reject", "body"),
        compose_email(["a@example.com"], "accept", "body"),
    ]

    SmtpSender().send_all(messages)

    assert [m["Subject"] for m in fake_smtp.instances[0].sent] == ["accept"]
    assert "Failed to send email" in caplog.text
    assert "reject" in caplog.text


def test_send_all_connection_failure(monkeypatch, caplog):
    """Test that an unreachable relay is logged, not raised."""

    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr("alertwatch_mcp.mail.smtplib.SMTP", refuse)

    SmtpSender().send_all([compose_email(["a@example.com"], "Subject", "body")])

    assert "Failed to deliver 1 email(s)" in caplog.text
