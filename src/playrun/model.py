# model.py
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class SuccessCriteria:
    """Policy turning aggregated pass/fail counts into one run verdict."""
    require_all_success: bool = False
    minimum_success_count: int = 0
    minimum_success_percent: float = 0.0
    allowed_failures: Tuple[str, ...] = ()

    def override(self, **fields: Any) -> "SuccessCriteria":
        """
        Field-wise override: a present field replaces the default value as a
        whole (lists are replaced, never merged). None means "not given".
        """
        given = {k: v for k, v in fields.items() if v is not None}
        if "allowed_failures" in given:
            given["allowed_failures"] = tuple(str(x) for x in given["allowed_failures"])
        return replace(self, **given)


@dataclass(frozen=True)
class Job:
    """
    A unit of work referencing one external script collaborator.

    `id` is the stable reference used by `depends_on` (e.g. "0402").
    `script` is the collaborator id; defaults to `id`.
    """
    id: str
    variables: Dict[str, Any] = field(default_factory=dict)
    matrix: Optional[Dict[str, List[Any]]] = None
    depends_on: Tuple[str, ...] = ()
    script: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def script_id(self) -> str:
        return self.script or self.id


@dataclass(frozen=True)
class Stage:
    name: str
    jobs: Tuple[Job, ...] = ()


@dataclass(frozen=True)
class Playbook:
    name: str
    stages: Tuple[Stage, ...]
    success_criteria: SuccessCriteria = field(default_factory=SuccessCriteria)
    expected_artifacts: Tuple[str, ...] = ()
    variables: Dict[str, Any] = field(default_factory=dict)
    schema_version: int = 2

    @property
    def jobs(self) -> List[Job]:
        return [j for s in self.stages for j in s.jobs]

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)


def _stable(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class JobInstance:
    """One matrix-resolved execution of a job."""
    job: Job
    combination: Tuple[Tuple[str, Any], ...] = ()

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def combo(self) -> Dict[str, Any]:
        return dict(self.combination)

    @property
    def key(self) -> str:
        """Unique, deterministic name, e.g. `0402` or `0402[os=linux,py="3.11"]`."""
        if not self.combination:
            return self.job.id
        pairs = ",".join(f"{k}={_stable(v)}" for k, v in self.combination)
        return f"{self.job.id}[{pairs}]"

    @property
    def slug(self) -> str:
        """Filesystem-safe, collision-free variant of `key`."""
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in self.key)
        if safe == self.key:
            return safe
        return f"{safe}-{hashlib.sha256(self.key.encode('utf-8')).hexdigest()[:8]}"

    def identity(self) -> List[Any]:
        return [self.job.id, [[k, v] for k, v in sorted(self.combination)]]


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CACHED = "cached"

    @property
    def terminal(self) -> bool:
        return self not in (Status.PENDING, Status.RUNNING)


# failure causes surfaced in the summary
CAUSE_EXECUTION = "execution"
CAUSE_TIMEOUT = "timeout"
CAUSE_CONFIGURATION = "configuration"


@dataclass
class ExecutionRecord:
    """Per-instance outcome. Mutated only by the runner while the run is live."""
    instance: JobInstance
    status: Status = Status.PENDING
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    cache_hit: bool = False
    output_ref: Optional[str] = None
    cause: Optional[str] = None
    message: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.instance.key,
            "job_id": self.instance.job_id,
            "combination": self.instance.combo,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "cache_hit": self.cache_hit,
            "output_ref": self.output_ref,
            "cause": self.cause,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], instance: JobInstance) -> "ExecutionRecord":
        def _ts(v: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(v) if v else None

        return cls(
            instance=instance,
            status=Status(data["status"]),
            exit_code=data.get("exit_code"),
            started_at=_ts(data.get("started_at")),
            ended_at=_ts(data.get("ended_at")),
            cache_hit=bool(data.get("cache_hit", False)),
            output_ref=data.get("output_ref"),
            cause=data.get("cause"),
            message=data.get("message"),
        )


@dataclass(frozen=True)
class RunResult:
    playbook_name: str
    started_at: datetime
    ended_at: datetime
    records: Tuple[ExecutionRecord, ...]
    completed_count: int
    failed_count: int
    overall_success: bool = False
    variables: Dict[str, Any] = field(default_factory=dict)
    fingerprint: Optional[str] = None
    cancelled: bool = False
    dry_run: bool = False
    criteria: Optional[SuccessCriteria] = None

    @classmethod
    def from_records(
        cls,
        playbook_name: str,
        started_at: datetime,
        ended_at: datetime,
        records: List[ExecutionRecord],
        **extra: Any,
    ) -> "RunResult":
        completed = sum(1 for r in records if r.status in (Status.SUCCEEDED, Status.CACHED))
        failed = sum(1 for r in records if r.status is Status.FAILED)
        return cls(
            playbook_name=playbook_name,
            started_at=started_at,
            ended_at=ended_at,
            records=tuple(records),
            completed_count=completed,
            failed_count=failed,
            **extra,
        )

    def count(self, status: Status) -> int:
        return sum(1 for r in self.records if r.status is status)

    @property
    def duration(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()
