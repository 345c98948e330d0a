# engine.py
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional

from .cache import CacheStore, compute_fingerprint
from .config import ENGINE_VERSION, Settings
from .dag import Wave, schedule
from .errors import CacheError
from .evaluate import evaluate
from .loader import check_variables
from .model import ExecutionRecord, JobInstance, Playbook, RunResult, Status
from .runner import Executor, Runner
from .scripts import ScriptResolver, SubprocessExecutor
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def effective_variables(playbook: Playbook, overrides: Optional[Mapping[str, Any]] = None) -> dict:
    """Playbook variables overlaid by operator-supplied ones."""
    out = dict(playbook.variables)
    out.update(check_variables(overrides, "command line"))
    return out


class Engine:
    """
    Load -> expand -> schedule -> [cache] -> run -> evaluate.

    Configuration and scheduling errors propagate before anything runs;
    execution failures only show up in the returned RunResult.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        executor: Optional[Executor] = None,
        cache: Optional[CacheStore] = None,
        console: Optional[Console] = None,
    ):
        self.settings = settings or Settings()
        self.executor = executor or SubprocessExecutor(
            ScriptResolver(self.settings.scripts_dir),
            self.settings.output_dir,
        )
        self.cache = cache or CacheStore(self.settings.cache_dir, engine_version=ENGINE_VERSION)
        self.console = console or get_console()
        self.runner: Optional[Runner] = None

    def plan(self, playbook: Playbook) -> List[Wave]:
        return schedule(playbook)

    def validate(self, playbook: Playbook) -> List[Wave]:
        """Schedule and check every collaborator can be resolved."""
        waves = self.plan(playbook)
        check = getattr(self.executor, "validate", None)
        if callable(check):
            for job in playbook.jobs:
                check(job)
        return waves

    def cancel(self) -> None:
        if self.runner is not None:
            self.runner.cancel()

    def run(
        self,
        playbook: Playbook,
        variables: Optional[Mapping[str, Any]] = None,
        *,
        use_cache: bool = False,
        dry_run: bool = False,
        fail_fast: Optional[bool] = None,
        max_concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> RunResult:
        started = _now()
        run_vars = effective_variables(playbook, variables)
        criteria = playbook.success_criteria

        waves = self.validate(playbook) if dry_run else self.plan(playbook)
        instances: List[JobInstance] = [i for w in waves for i in w.instances]
        fingerprint, inputs = compute_fingerprint(instances, run_vars)
        concurrency = max_concurrency or self.settings.max_concurrency

        self.console.print_run_started(
            playbook=playbook.name,
            instance_count=len(instances),
            wave_count=len(waves),
            max_concurrency=concurrency,
        )

        extra = dict(variables=run_vars, fingerprint=fingerprint, criteria=criteria)

        if dry_run:
            self.console.print_plan(w.keys for w in waves)
            records = [ExecutionRecord(instance=i) for i in instances]
            result = RunResult.from_records(playbook.name, started, _now(), records, dry_run=True, **extra)
            return replace(result, overall_success=True)

        if use_cache:
            hit = self.cache.lookup(
                fingerprint,
                instances,
                restore_dir=Path(self.settings.output_dir) / "cached" / fingerprint[:12],
            )
            if hit.hit:
                self.console.print_cache_hit(fingerprint, hit.reason)
                for r in hit.records:
                    self.console.print_instance_result(r)
                return self._finish(playbook, started, list(hit.records), extra)
            self.console.print_cache_miss(fingerprint)

        self.runner = Runner(
            self.executor,
            max_concurrency=concurrency,
            fail_fast=self.settings.fail_fast if fail_fast is None else fail_fast,
            timeout=timeout or self.settings.timeout_seconds,
            on_record=self.console.print_instance_result,
        )
        records = self.runner.run(
            waves,
            run_vars,
            on_wave=lambda w: self.console.print_wave(w.index, w.keys),
        )
        cancelled = self.runner.cancelled
        result = self._finish(playbook, started, records, dict(extra, cancelled=cancelled))

        if use_cache and not cancelled and all(r.status is Status.SUCCEEDED for r in records):
            try:
                self.cache.store(fingerprint, records, inputs=inputs)
                self.console.print_cache_saved(fingerprint)
            except (OSError, CacheError) as e:
                logger.debug("cache store for %s failed: %s", fingerprint[:12], e)

        return result

    def _finish(self, playbook: Playbook, started: datetime, records: List[ExecutionRecord], extra: dict) -> RunResult:
        result = RunResult.from_records(playbook.name, started, _now(), records, **extra)
        return replace(result, overall_success=evaluate(result, playbook.success_criteria))
