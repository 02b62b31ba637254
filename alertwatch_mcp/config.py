"""Configuration constants for test status alerting."""

# Storage
DEFAULT_DB_URL = "sqlite:///alertwatch.db"
MAX_WRITE_RETRIES = 5  # Retries after the first attempt, per aggregate update
RUN_QUERY_BATCH_SIZE = 100  # Rows buffered per fetch while streaming runs

# Run types that count as final/official results (intermediate runs are ignored)
ALERT_RUN_TYPES = ("postsubmit",)

# Time units (all timestamps are microseconds since epoch)
MICROS_PER_MINUTE = 60 * 1_000_000
MICROS_PER_DAY = 24 * 60 * MICROS_PER_MINUTE

# Inactivity notifications: once a day inside a short trigger window,
# from one full day after the last upload until the test is presumed deprecated.
INACTIVITY_MIN_ELAPSED = MICROS_PER_DAY
INACTIVITY_MAX_ELAPSED = 8 * MICROS_PER_DAY
INACTIVITY_TRIGGER_WINDOW = 3 * MICROS_PER_MINUTE

# Notification delivery
DEFAULT_SMTP_HOST = "localhost"
DEFAULT_SMTP_PORT = 25
SMTP_TIMEOUT = 30  # seconds
DEFAULT_EMAIL_SENDER = "alertwatch@localhost"

# Dashboard link construction
DEFAULT_BASE_URL = "http://localhost:8080"
STATUS_PAGE_PATH = "/show_table"
UPLOAD_TIME_FORMAT = "%m/%d/%Y %H:%M:%S"
