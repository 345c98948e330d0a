# evaluate.py
from __future__ import annotations

from typing import Tuple

from .model import RunResult, Status, SuccessCriteria


def counted(result: RunResult, criteria: SuccessCriteria) -> Tuple[int, int]:
    """
    (completed, failed) as seen by the policy.

    Failures of allow-listed jobs are removed from `failed`; they are still
    reported, they just never fail the run.
    """
    allowed = set(criteria.allowed_failures)
    failed = sum(
        1 for r in result.records
        if r.status is Status.FAILED and r.instance.job_id not in allowed
    )
    return result.completed_count, failed


def success_rate(completed: int, failed: int) -> float:
    total = completed + failed
    if total == 0:
        return 100.0
    return completed * 100 / total


def evaluate(result: RunResult, criteria: SuccessCriteria) -> bool:
    """
    First matching rule decides:
      1. require_all_success  -> no (non-allowed) failures
      2. completed < minimum_success_count -> failure
      3. failed > completed   -> failure
      4. success rate >= minimum_success_percent
    Skipped and Cached records never count as failures.
    """
    completed, failed = counted(result, criteria)

    if criteria.require_all_success:
        return failed == 0
    if completed < criteria.minimum_success_count:
        return False
    if failed > completed:
        return False
    return success_rate(completed, failed) >= criteria.minimum_success_percent
