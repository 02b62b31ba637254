"""Classification of test case failures across a test's run history."""

from typing import Iterable, Optional

from .models import (
    ClassificationResult,
    DeviceInfo,
    RunResults,
    TestCaseReference,
    TestCaseResult,
    TestStatus,
)


def classify_run_history(
    history: Iterable[RunResults],
    failed_test_cases: dict[str, TestCaseReference],
) -> Optional[ClassificationResult]:
    """Classify the test cases of the most recent run against the last known failures.

    The history must be ordered newest first. The first run is ground truth for
    what each test case currently does; older runs only:
    1. Replace a SKIP with the next older concrete result
    2. Reveal transient failures (passing now, failed earlier in the window)
    3. Supply the failure details recorded for new failures

    Test cases absent from the most recent run are not tracked any further.

    Args:
        history: Runs newer than the last status, newest first
        failed_test_cases: Test cases failing as of the last status, by name

    Returns:
        ClassificationResult, or None if the history holds no runs
    """
    most_recent_run = None
    most_recent_results: dict[str, TestCaseResult] = {}
    most_recent_refs: dict[str, TestCaseReference] = {}
    breakages: dict[str, TestCaseReference] = {}
    transient_failures: set[str] = set()

    for run_results in history:
        is_most_recent = most_recent_run is None
        if is_most_recent:
            most_recent_run = run_results.run

        for outcome in run_results.outcomes:
            name = outcome.name

            if is_most_recent:
                most_recent_results[name] = outcome.result
                most_recent_refs[name] = outcome.reference
            elif name not in most_recent_results:
                # Not reported by newer runs anymore
                continue
            else:
                recent = most_recent_results[name]
                if recent == TestCaseResult.SKIP:
                    most_recent_results[name] = outcome.result
                elif recent == TestCaseResult.PASS and outcome.result.is_failure:
                    transient_failures.add(name)

            if outcome.result.is_failure:
                breakages[name] = outcome.reference

    if most_recent_run is None:
        return None

    result = ClassificationResult(
        most_recent_run=most_recent_run,
        transient_failures=transient_failures,
    )

    for name, recent in most_recent_results.items():
        previously_failed = name in failed_test_cases

        if recent == TestCaseResult.SKIP:
            # Keep the previous status through a skip
            if previously_failed:
                result.failing_test_cases.append(failed_test_cases[name])
            else:
                result.passing_count += 1
        elif recent == TestCaseResult.PASS:
            result.passing_count += 1
            if previously_failed and name not in transient_failures:
                result.fixed.add(name)
        elif previously_failed:
            result.continued_failures.add(name)
            result.failing_test_cases.append(failed_test_cases[name])
        else:
            result.new_failures.add(name)
            result.failing_test_cases.append(breakages.get(name, most_recent_refs[name]))

    return result


def join_build_ids(devices: Iterable[DeviceInfo]) -> str:
    """Join the distinct build IDs of a run's devices for display."""
    return ",".join(sorted({device.build_id for device in devices}))


def build_test_status(test_name: str, result: ClassificationResult) -> TestStatus:
    """Fold a classification into the next aggregate status of a test."""
    return TestStatus(
        test_name=test_name,
        timestamp=result.most_recent_run.start_timestamp,
        passing_count=result.passing_count,
        failing_count=len(result.failing_test_cases),
        failing_test_cases=list(result.failing_test_cases),
    )
