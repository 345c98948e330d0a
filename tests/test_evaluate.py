from datetime import datetime, timezone

import pytest

from playrun.evaluate import counted, evaluate, success_rate
from playrun.model import ExecutionRecord, Job, JobInstance, RunResult, Status, SuccessCriteria


def _result(**statuses_by_job):
    """_result(A="succeeded", B="failed") -> RunResult with one record per job."""
    records = [
        ExecutionRecord(instance=JobInstance(Job(id=job_id)), status=Status(status))
        for job_id, status in statuses_by_job.items()
    ]
    now = datetime.now(timezone.utc)
    return RunResult.from_records("t", now, now, records)


def _counts(completed, failed):
    statuses = {f"ok{n}": "succeeded" for n in range(completed)}
    statuses.update({f"bad{n}": "failed" for n in range(failed)})
    return _result(**statuses)


def test_require_all_success_ignores_allowed_failures():
    result = _result(A="succeeded", B="failed")

    assert not evaluate(result, SuccessCriteria(require_all_success=True))
    assert evaluate(result, SuccessCriteria(require_all_success=True, allowed_failures=("B",)))


@pytest.mark.parametrize(
    "completed, failed, expected",
    [(8, 2, True), (7, 3, False), (10, 0, True)],
)
def test_minimum_percent(completed, failed, expected):
    criteria = SuccessCriteria(minimum_success_percent=80)
    assert evaluate(_counts(completed, failed), criteria) is expected


def test_minimum_count_checked_before_percent():
    assert not evaluate(_counts(2, 0), SuccessCriteria(minimum_success_count=3))
    assert evaluate(_counts(3, 0), SuccessCriteria(minimum_success_count=3))


def test_more_failures_than_completions_fails_even_with_zero_threshold():
    assert not evaluate(_counts(1, 2), SuccessCriteria())
    assert evaluate(_counts(2, 2), SuccessCriteria())


def test_skipped_and_cached_never_count_as_failures():
    result = _result(A="cached", B="skipped", C="skipped")

    assert counted(result, SuccessCriteria()) == (1, 0)
    assert evaluate(result, SuccessCriteria(require_all_success=True))


def test_nothing_counted_is_full_success_rate():
    assert success_rate(0, 0) == 100.0
    assert evaluate(_result(A="skipped"), SuccessCriteria(minimum_success_percent=100))


def test_success_rate_is_exact_at_boundaries():
    assert success_rate(8, 2) == 80
    assert success_rate(1, 2) == pytest.approx(33.333, abs=1e-3)
