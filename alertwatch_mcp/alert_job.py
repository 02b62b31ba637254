"""Alert job: evaluates every test, commits new statuses and sends notifications."""

import logging
import time
from email.message import EmailMessage
from typing import Iterable, Optional
from urllib.parse import quote

from pydantic import ValidationError

from .classify import build_test_status, classify_run_history, join_build_ids
from .config import ALERT_RUN_TYPES, DEFAULT_EMAIL_SENDER, MAX_WRITE_RETRIES, STATUS_PAGE_PATH
from .mail import EmailCompositionError, SmtpSender, compose_email
from .models import AlertJobReport, ClassificationResult, Notification, TestStatus
from .render import render_inactivity_notification, render_status_notification
from .store import RETRYABLE_STORE_ERRORS, EntityNotFoundError, StatusStore
from .test_history import get_current_failures, iter_run_history

logger = logging.getLogger(__name__)


def now_micros() -> int:
    return time.time_ns() // 1000


def get_status_link(base_url: str, test_name: str) -> str:
    """Link to the status table of a test."""
    return f"{base_url.rstrip('/')}{STATUS_PAGE_PATH}?testName={quote(test_name)}"


class TestEvaluation:
    """Outcome of evaluating one test."""

    def __init__(
        self,
        new_status: Optional[TestStatus] = None,
        notifications: Optional[list[Notification]] = None,
        classification: Optional[ClassificationResult] = None,
        build_id: str = "",
    ):
        self.new_status = new_status  # None if there are no newer runs
        self.notifications = notifications or []
        self.classification = classification
        self.build_id = build_id
        self.updated = False
        self.messages_sent = 0


def evaluate_test(
    store: StatusStore,
    test_status: TestStatus,
    link: str,
    now: Optional[int] = None,
    run_types: Iterable[str] = ALERT_RUN_TYPES,
) -> TestEvaluation:
    """Classify a test's new runs and compose its notification. Nothing is written.

    If there are no runs newer than the current status, only an inactivity
    notification may be composed and new_status is None.

    Args:
        store: Store to read from
        test_status: Current aggregate status of the test
        link: Link to the test's status page
        now: Current time in microseconds (defaults to the wall clock)
        run_types: Run types to consider

    Returns:
        TestEvaluation
    """
    if now is None:
        now = now_micros()

    failed_test_cases = get_current_failures(store, test_status)
    history = iter_run_history(store, test_status, run_types)
    result = classify_run_history(history, failed_test_cases)

    if result is None:
        notification = render_inactivity_notification(test_status, link, now)
        return TestEvaluation(notifications=[notification] if notification else [])

    build_id = join_build_ids(store.devices_for_run(result.most_recent_run.run_id))
    notification = render_status_notification(result, test_status.test_name, build_id, link)

    return TestEvaluation(
        new_status=build_test_status(test_status.test_name, result),
        notifications=[notification] if notification else [],
        classification=result,
        build_id=build_id,
    )


def compose_messages(
    notifications: list[Notification],
    emails: list[str],
    sender_address: str = DEFAULT_EMAIL_SENDER,
) -> list[EmailMessage]:
    """Address notifications to subscribers, dropping any that fail to compose."""
    if not emails:
        return []

    messages = []
    for notification in notifications:
        try:
            messages.append(compose_email(emails, notification.subject, notification.body, sender_address))
        except EmailCompositionError as e:
            logger.warning("Error composing email %r: %s", notification.subject, e)
    return messages


def update_test_status(
    store: StatusStore,
    new_status: TestStatus,
    messages: list[EmailMessage],
    sender: SmtpSender,
    max_retries: int = MAX_WRITE_RETRIES,
) -> bool:
    """Commit a new test status if it is newer than the stored one, then send messages.

    Messages are sent only after a successful commit. A stored status that is
    as new or newer, or a status that disappeared, is left alone.

    Args:
        store: Store holding the status
        new_status: Candidate status
        messages: Messages to send once the candidate is committed
        sender: Delivery backend
        max_retries: Retries after conflicts, timeouts or database failures

    Returns:
        True if new_status was committed

    Raises:
        StoreError: The last retryable error, once retries are exhausted
    """
    test_name = new_status.test_name
    retries = 0
    while True:
        txn = None
        try:
            txn = store.begin_transaction()
            try:
                current = txn.get(test_name)
            except EntityNotFoundError:
                logger.info("Test disappeared during update: %s", test_name)
                return False
            except ValidationError as e:
                logger.warning("Corrupted test status during update: %s (%s)", test_name, e)
                return False

            if current.timestamp >= new_status.timestamp:
                # Another job already advanced this test
                txn.rollback()
                return False

            txn.put(new_status)
            txn.commit()
            sender.send_all(messages)
            return True

        except RETRYABLE_STORE_ERRORS as e:
            logger.warning("Retrying test status update: %s (%s)", test_name, e)
            if retries >= max_retries:
                logger.error("Exceeded test status update retries: %s", test_name)
                raise
            retries += 1
        finally:
            if txn is not None and txn.is_active:
                txn.rollback()


def process_test(
    store: StatusStore,
    sender: SmtpSender,
    test_status: TestStatus,
    base_url: str,
    now: Optional[int] = None,
    sender_address: str = DEFAULT_EMAIL_SENDER,
) -> TestEvaluation:
    """Evaluate one test, then commit its new status or send its inactivity notice."""
    link = get_status_link(base_url, test_status.test_name)
    evaluation = evaluate_test(store, test_status, link, now=now)

    emails = store.subscriber_emails(test_status.test_name)
    messages = compose_messages(evaluation.notifications, emails, sender_address)

    if evaluation.new_status is None:
        # Inactivity notices have no status to commit
        if messages:
            sender.send_all(messages)
            evaluation.messages_sent = len(messages)
        return evaluation

    evaluation.updated = update_test_status(store, evaluation.new_status, messages, sender)
    if evaluation.updated:
        evaluation.messages_sent = len(messages)
    return evaluation


def run_alert_job(
    store: StatusStore,
    sender: SmtpSender,
    base_url: str,
    now: Optional[int] = None,
    sender_address: str = DEFAULT_EMAIL_SENDER,
) -> AlertJobReport:
    """Run one alert cycle over every test.

    A failure while processing one test is logged and recorded in the report;
    the remaining tests are still processed.
    """
    if now is None:
        now = now_micros()

    report = AlertJobReport()
    for test_status in store.iter_test_statuses():
        report.tests_checked += 1
        try:
            evaluation = process_test(store, sender, test_status, base_url, now, sender_address)
        except Exception as e:
            logger.exception("Alert job failed for test: %s", test_status.test_name)
            report.errors[test_status.test_name] = str(e)
            continue

        if evaluation.updated:
            report.tests_updated += 1
        report.notifications_sent += evaluation.messages_sent

    logger.info(
        "Alert job checked %d tests: %d updated, %d notifications, %d errors",
        report.tests_checked,
        report.tests_updated,
        report.notifications_sent,
        len(report.errors),
    )
    return report
