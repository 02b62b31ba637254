"""HTML rendering of status and inactivity notifications."""

from datetime import datetime, timezone
from html import escape
from typing import Optional

from .config import (
    INACTIVITY_MAX_ELAPSED,
    INACTIVITY_MIN_ELAPSED,
    INACTIVITY_TRIGGER_WINDOW,
    MICROS_PER_DAY,
    UPLOAD_TIME_FORMAT,
)
from .models import ClassificationResult, Notification, TestStatus

FAILING_INTRO = "Test cases are failing in {test_name} for device build ID(s): {build_id}.<br><br>"
TRANSIENT_INTRO = (
    "Some test cases failed in {test_name} but tests all are passing in the "
    "latest device build(s): {build_id}.<br><br>"
)
PASSING_INTRO = "All test cases passed in {test_name} for device build ID(s): {build_id}!<br><br>"

# Checked in order, the first match is the only notification sent:
# (predicate, subject, intro)
NOTIFICATION_PRIORITY = [
    (
        lambda result: bool(result.new_failures),
        "New test failures in {test_name} @ {build_id}",
        FAILING_INTRO,
    ),
    (
        lambda result: bool(result.continued_failures),
        "Continued test failures in {test_name} @ {build_id}",
        FAILING_INTRO,
    ),
    (
        lambda result: bool(result.transient_failures),
        "Transient test failure in {test_name} @ {build_id}",
        TRANSIENT_INTRO,
    ),
    (
        lambda result: bool(result.fixed),
        "All test cases passing in {test_name} @ {build_id}",
        PASSING_INTRO,
    ),
]


def render_footer(link: str) -> str:
    return f"<br><br>For details, visit the <a href='{escape(link)}'>status dashboard.</a>"


def render_summary(result: ClassificationResult) -> str:
    """Render the per test case summary shared by all status notifications.

    Sections, each only if non-empty:
    - failing test cases (new ones in bold first, then continued ones)
    - fixed test cases (italic)
    - transient failures
    - test cases not run since failing

    Args:
        result: ClassificationResult to summarize

    Returns:
        HTML fragment
    """
    html = []

    if result.new_failures or result.continued_failures:
        html.append("The following test cases failed in the latest test run:<br>")
        for name in sorted(result.new_failures):
            html.append(f"- <b>{escape(name)}</b><br>")
        for name in sorted(result.continued_failures):
            html.append(f"- {escape(name)}<br>")

    if result.fixed:
        html.append("<br><br>The following test cases were fixed in the latest test run:<br>")
        for name in sorted(result.fixed):
            html.append(f"- <i>{escape(name)}</i><br>")

    if result.transient_failures:
        html.append("<br><br>The following transient test case failures occurred:<br>")
        for name in sorted(result.transient_failures):
            html.append(f"- {escape(name)}<br>")

    if result.skipped_since_failing:
        html.append("<br><br>The following test cases have not been run since failing:<br>")
        for name in sorted(result.skipped_since_failing):
            html.append(f"- {escape(name)}<br>")

    return "".join(html)


def render_status_notification(
    result: ClassificationResult,
    test_name: str,
    build_id: str,
    link: str,
) -> Optional[Notification]:
    """Pick and render the single notification for a classification, if any."""
    for predicate, subject, intro in NOTIFICATION_PRIORITY:
        if not predicate(result):
            continue
        body = (
            "Hello,<br><br>"
            + intro.format(test_name=escape(test_name), build_id=escape(build_id))
            + render_summary(result)
            + render_footer(link)
        )
        return Notification(
            subject=subject.format(test_name=test_name, build_id=build_id),
            body=body,
        )
    return None


def is_inactive(elapsed: int) -> bool:
    """Whether an inactivity notification is due, given microseconds since the last run.

    True once per day inside a short window, starting one full day after the
    last run and stopping after seven days (the test is presumed deprecated).
    """
    return (
        INACTIVITY_MIN_ELAPSED < elapsed < INACTIVITY_MAX_ELAPSED
        and elapsed % MICROS_PER_DAY < INACTIVITY_TRIGGER_WINDOW
    )


def render_inactivity_notification(
    test_status: TestStatus,
    link: str,
    now: int,
) -> Optional[Notification]:
    """Render an inactivity warning if one is due at time now (microseconds)."""
    if not is_inactive(now - test_status.timestamp):
        return None

    last_upload = datetime.fromtimestamp(test_status.timestamp / 1_000_000, tz=timezone.utc)
    body = (
        f'Hello,<br><br>Test "{escape(test_status.test_name)}" is inactive. '
        f"No new data has been uploaded since {last_upload.strftime(UPLOAD_TIME_FORMAT)}."
        + render_footer(link)
    )
    return Notification(subject=f"Warning! Inactive test: {test_status.test_name}", body=body)
