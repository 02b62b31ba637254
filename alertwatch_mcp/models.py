"""Pydantic models for test status alerting."""

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class TestCaseResult(str, Enum):
    """Outcome of a single test case execution."""

    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"
    EXCEPTION = "EXCEPTION"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def _missing_(cls, value):
        # Unrecognized results count as failures
        if not isinstance(value, str):
            return None
        for member in cls:
            if member.value == value.upper():
                return member
        return cls.UNKNOWN

    @property
    def is_failure(self) -> bool:
        """Anything that is neither a pass nor a skip counts as a failure."""
        return self not in (TestCaseResult.PASS, TestCaseResult.SKIP)


class TestCase(BaseModel):
    """A named test case result inside a test case run."""

    name: str
    result: TestCaseResult

    @field_validator("result", mode="before")
    @classmethod
    def coerce_result(cls, value):
        if isinstance(value, str):
            return TestCaseResult(value)
        return value


class TestCaseReference(BaseModel):
    """Points at one test case inside a stored test case run."""

    parent_id: int  # test case run id
    offset: int = Field(ge=0)  # index into the run's test_cases


class TestStatus(BaseModel):
    """Aggregate status of a test, as of the last incorporated run."""

    test_name: str
    timestamp: int  # microseconds, start of the last incorporated run
    passing_count: int = 0
    failing_count: int = 0
    failing_test_cases: list[TestCaseReference] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_failing_count(self) -> "TestStatus":
        if self.failing_count != len(self.failing_test_cases):
            raise ValueError(
                f"failing_count {self.failing_count} does not match "
                f"{len(self.failing_test_cases)} failing test case references"
            )
        return self


class TestRun(BaseModel):
    """One timestamped execution of a test."""

    run_id: int
    test_name: str
    start_timestamp: int  # microseconds
    run_type: str
    test_case_ids: list[int] = Field(default_factory=list)


class TestCaseRun(BaseModel):
    """A batch of test case results belonging to one run."""

    test_case_run_id: int
    test_cases: list[TestCase] = Field(default_factory=list)


class DeviceInfo(BaseModel):
    """A device that participated in a run."""

    run_id: int
    build_id: str


class TestCaseOutcome(BaseModel):
    """A test case as observed in one run, with a way back to its record."""

    name: str
    result: TestCaseResult
    reference: TestCaseReference


class RunResults(BaseModel):
    """A run together with every test case outcome it reported."""

    run: TestRun
    outcomes: list[TestCaseOutcome] = Field(default_factory=list)


class ClassificationResult(BaseModel):
    """Classified test cases of the most recent run relative to the last status."""

    most_recent_run: TestRun
    new_failures: set[str] = Field(default_factory=set)
    continued_failures: set[str] = Field(default_factory=set)
    fixed: set[str] = Field(default_factory=set)
    transient_failures: set[str] = Field(default_factory=set)
    # Never populated by classification; kept so the summary section renders if set.
    skipped_since_failing: set[str] = Field(default_factory=set)
    passing_count: int = 0
    failing_test_cases: list[TestCaseReference] = Field(default_factory=list)


class Notification(BaseModel):
    """A composed notification, before it is addressed to anyone."""

    subject: str
    body: str  # HTML


class AlertJobReport(BaseModel):
    """Summary of one alert job cycle over all tests."""

    tests_checked: int = 0
    tests_updated: int = 0
    notifications_sent: int = 0
    errors: dict[str, str] = Field(default_factory=dict)
