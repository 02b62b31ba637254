"""MCP server exposing the test status alert job."""

import logging
import os

from mcp.server.fastmcp import FastMCP

from .alert_job import compose_messages, evaluate_test, get_status_link, run_alert_job
from .config import (
    DEFAULT_BASE_URL,
    DEFAULT_DB_URL,
    DEFAULT_EMAIL_SENDER,
    DEFAULT_SMTP_HOST,
    DEFAULT_SMTP_PORT,
)
from .mail import SmtpSender
from .store import StatusStore, StoreError

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("Test Alert Watch")


def get_store() -> StatusStore:
    """Open the store named by ALERTWATCH_DB_URL (default: local SQLite file)."""
    return StatusStore(os.environ.get("ALERTWATCH_DB_URL", DEFAULT_DB_URL))


def get_sender() -> SmtpSender:
    """Create an SMTP sender from ALERTWATCH_SMTP_HOST / ALERTWATCH_SMTP_PORT."""
    return SmtpSender(
        host=os.environ.get("ALERTWATCH_SMTP_HOST", DEFAULT_SMTP_HOST),
        port=int(os.environ.get("ALERTWATCH_SMTP_PORT", DEFAULT_SMTP_PORT)),
    )


def get_sender_address() -> str:
    return os.environ.get("ALERTWATCH_EMAIL_SENDER", DEFAULT_EMAIL_SENDER)


def get_base_url() -> str:
    return os.environ.get("ALERTWATCH_BASE_URL", DEFAULT_BASE_URL)


@mcp.tool(name="alertwatch.run_alert_job")
async def run_alert_job_tool(base_url: str = "") -> dict:
    """Evaluate every test, commit new statuses and send notifications.

    Meant to be triggered on a fixed schedule.

    Args:
        base_url: Dashboard base URL for status page links (default: ALERTWATCH_BASE_URL)

    Returns:
        Dict with tests_checked, tests_updated, notifications_sent, errors
    """
    store = get_store()
    try:
        report = run_alert_job(
            store,
            get_sender(),
            base_url or get_base_url(),
            sender_address=get_sender_address(),
        )
        return report.model_dump()
    except StoreError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Alert job failed")
        return {"error": f"Unexpected error: {str(e)}"}
    finally:
        store.dispose()


@mcp.tool(name="alertwatch.preview_test_status")
async def preview_test_status(test_name: str, base_url: str = "") -> dict:
    """Classify a test's new runs without committing or sending anything.

    Args:
        test_name: Name of the test
        base_url: Dashboard base URL for status page links (default: ALERTWATCH_BASE_URL)

    Returns:
        Dict with the current status, the candidate status, the classification
        and the notifications that would be sent
    """
    store = get_store()
    try:
        test_status = store.get_test_status(test_name)
        if test_status is None:
            return {"error": f"Test not found: {test_name}"}

        link = get_status_link(base_url or get_base_url(), test_name)
        evaluation = evaluate_test(store, test_status, link)
        emails = store.subscriber_emails(test_name)

        classification = None
        if evaluation.classification is not None:
            result = evaluation.classification
            classification = {
                "most_recent_run": result.most_recent_run.model_dump(),
                "build_id": evaluation.build_id,
                "new_failures": sorted(result.new_failures),
                "continued_failures": sorted(result.continued_failures),
                "fixed": sorted(result.fixed),
                "transient_failures": sorted(result.transient_failures),
                "skipped_since_failing": sorted(result.skipped_since_failing),
                "passing_count": result.passing_count,
            }

        return {
            "test_name": test_name,
            "current_status": test_status.model_dump(),
            "new_status": evaluation.new_status.model_dump() if evaluation.new_status else None,
            "classification": classification,
            "notifications": [n.model_dump() for n in evaluation.notifications],
            "recipients": emails,
            "deliverable": len(compose_messages(evaluation.notifications, emails, get_sender_address())),
        }
    except StoreError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Preview failed for test: %s", test_name)
        return {"error": f"Unexpected error: {str(e)}"}
    finally:
        store.dispose()


def main():
    """CLI entry point for running MCP server."""
    logging.basicConfig(
        level=os.environ.get("ALERTWATCH_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Using store: %s", os.environ.get("ALERTWATCH_DB_URL", DEFAULT_DB_URL))

    mcp.run()


if __name__ == "__main__":
    main()
