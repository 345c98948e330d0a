# runner.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .dag import Wave
from .errors import ConfigurationError, JobTimeout
from .model import (
    CAUSE_CONFIGURATION,
    CAUSE_EXECUTION,
    CAUSE_TIMEOUT,
    ExecutionRecord,
    JobInstance,
    Status,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionOutcome:
    exit_code: int
    output_ref: Optional[str] = None


class Executor(Protocol):
    """
    Synchronous collaborator call. Implementations raise
    ConfigurationError when the collaborator cannot be found or run and
    JobTimeout when it exceeds `timeout`.
    """

    def execute(
        self,
        instance: JobInstance,
        variables: Mapping[str, Any],
        timeout: Optional[float],
    ) -> ExecutionOutcome:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def instance_variables(instance: JobInstance, run_variables: Mapping[str, Any]) -> Dict[str, Any]:
    """run variables < job variables < matrix combination."""
    out = dict(run_variables)
    out.update(instance.job.variables)
    out.update(instance.combo)
    return out


class Runner:
    """
    Runs waves strictly in order, each wave on a bounded worker pool.

    - without fail-fast every wave runs regardless of earlier failures
    - with fail-fast a failed wave finishes, later waves are Skipped
    - cancel() stops launching new instances; in-flight ones finish
    """

    def __init__(
        self,
        executor: Executor,
        *,
        max_concurrency: int = 4,
        fail_fast: bool = False,
        timeout: Optional[float] = None,
        on_record: Optional[Callable[[ExecutionRecord], None]] = None,
    ):
        if max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be >= 1", ref=str(max_concurrency))
        self.executor = executor
        self.max_concurrency = max_concurrency
        self.fail_fast = fail_fast
        self.timeout = timeout
        self.on_record = on_record
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- per instance ----

    def _run_one(self, record: ExecutionRecord, run_variables: Mapping[str, Any]) -> ExecutionRecord:
        inst = record.instance
        if self._cancel.is_set():
            record.status = Status.SKIPPED
            record.message = "cancelled"
            return record

        record.status = Status.RUNNING
        record.started_at = _now()
        logger.debug("instance %s running", inst.key)
        timeout = inst.job.timeout or self.timeout

        try:
            outcome = self.executor.execute(inst, instance_variables(inst, run_variables), timeout)
            record.exit_code = outcome.exit_code
            record.output_ref = outcome.output_ref
            if outcome.exit_code == 0:
                record.status = Status.SUCCEEDED
            else:
                record.status = Status.FAILED
                record.cause = CAUSE_EXECUTION
                record.message = f"exited with code {outcome.exit_code}"
        except JobTimeout as e:
            record.status = Status.FAILED
            record.cause = CAUSE_TIMEOUT
            record.message = e.message
            record.output_ref = e.details.get("output_ref")
        except ConfigurationError as e:
            record.status = Status.FAILED
            record.cause = CAUSE_CONFIGURATION
            record.message = e.message
        except Exception as e:
            record.status = Status.FAILED
            record.cause = CAUSE_EXECUTION
            record.message = f"{type(e).__name__}: {e}"
        finally:
            record.ended_at = _now()

        logger.debug("instance %s -> %s", inst.key, record.status.value)
        return record

    # ---- waves ----

    def _skip(self, records: List[ExecutionRecord], reason: str) -> None:
        for r in records:
            r.status = Status.SKIPPED
            r.message = reason
            if self.on_record:
                self.on_record(r)

    def run(
        self,
        waves: List[Wave],
        run_variables: Optional[Mapping[str, Any]] = None,
        *,
        on_wave: Optional[Callable[[Wave], None]] = None,
    ) -> List[ExecutionRecord]:
        run_variables = dict(run_variables or {})
        by_wave = [[ExecutionRecord(instance=i) for i in w.instances] for w in waves]
        failed = False

        try:
            for wave, records in zip(waves, by_wave):
                if self._cancel.is_set():
                    self._skip(records, "cancelled")
                    continue
                if failed and self.fail_fast:
                    self._skip(records, "fail-fast: an earlier wave failed")
                    continue

                if on_wave:
                    on_wave(wave)
                failed = self._run_wave(records, run_variables) or failed
        except KeyboardInterrupt:
            self.cancel()
            for records in by_wave:
                self._skip([r for r in records if not r.status.terminal], "cancelled")

        return [r for records in by_wave for r in records]

    def _run_wave(self, records: List[ExecutionRecord], run_variables: Mapping[str, Any]) -> bool:
        """Blocks until every instance of the wave is terminal. Returns True if any failed."""
        any_failed = False
        pool = ThreadPoolExecutor(max_workers=self.max_concurrency)
        try:
            futures = {pool.submit(self._run_one, r, run_variables): r for r in records}
            for future in as_completed(futures):
                record = future.result()
                if record.status is Status.FAILED:
                    any_failed = True
                if self.on_record:
                    self.on_record(record)
        except KeyboardInterrupt:
            self.cancel()
            raise
        finally:
            # queued instances see the cancel flag and skip themselves
            pool.shutdown(wait=True)
        return any_failed
