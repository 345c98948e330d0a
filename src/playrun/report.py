# report.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .evaluate import counted, success_rate
from .matrix import breakdown
from .model import CAUSE_CONFIGURATION, RunResult, Status, SuccessCriteria


@dataclass(frozen=True)
class FailureDetail:
    job_id: str
    key: str
    combination: Dict[str, Any]
    exit_code: Optional[int]
    cause: Optional[str]
    message: Optional[str]
    output_ref: Optional[str]
    allowed: bool = False


@dataclass(frozen=True)
class Report:
    playbook: str
    status: str  # SUCCESS | FAILURE | DRY RUN
    duration: float
    totals: Dict[str, int]
    success_rate: float
    variables: Dict[str, Any]
    matrix: Dict[str, List[Dict[str, Any]]]
    failures: List[FailureDetail] = field(default_factory=list)
    configuration_failures: List[FailureDetail] = field(default_factory=list)
    fingerprint: Optional[str] = None
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook": self.playbook,
            "status": self.status,
            "duration_seconds": round(self.duration, 3),
            "totals": dict(self.totals),
            "success_rate": round(self.success_rate, 2),
            "variables": dict(self.variables),
            "matrix": self.matrix,
            "failures": [asdict(f) for f in self.failures],
            "configuration_failures": [asdict(f) for f in self.configuration_failures],
            "fingerprint": self.fingerprint,
            "cancelled": self.cancelled,
        }

    # ---- text ----

    def render_text(self) -> str:
        lines = [
            "=" * 40,
            f"SUMMARY: {self.playbook}",
            "=" * 40,
            f"Status: {self.status}" + (" (cancelled)" if self.cancelled else ""),
            f"Duration: {self.duration:.1f}s",
        ]
        lines.append("Results:")
        for name in ("total", "completed", "failed", "skipped", "cached"):
            lines.append(f"  {name.capitalize()}: {self.totals.get(name, 0)}")
        lines.append(f"  Success rate: {self.success_rate:.1f}%")

        if self.variables:
            lines.append("Variables:")
            for k in sorted(self.variables):
                lines.append(f"  {k} = {self.variables[k]!r}")

        if self.matrix:
            lines.append("Matrix:")
            for job_id, combos in sorted(self.matrix.items()):
                lines.append(f"  {job_id}: {len(combos)} combination(s)")
                for c in combos:
                    lines.append("    " + ", ".join(f"{k}={v}" for k, v in c.items()))

        for title, items in (
            ("Failures:", self.failures),
            ("Configuration errors:", self.configuration_failures),
        ):
            if not items:
                continue
            lines.append(title)
            for f in items:
                suffix = " (allowed)" if f.allowed else ""
                lines.append(f"  {f.key}{suffix}")
                lines.append(f"    exit code: {f.exit_code if f.exit_code is not None else '-'}")
                if f.cause:
                    lines.append(f"    cause: {f.cause}")
                if f.message:
                    lines.append(f"    error: {f.message}")
                if f.output_ref:
                    lines.append(f"    output: {f.output_ref}")
        return "\n".join(lines)

    # ---- markdown ----

    def render_markdown(self) -> str:
        out = [
            f"# Run summary: {self.playbook}",
            "",
            f"**Status:** {self.status}" + (" (cancelled)" if self.cancelled else ""),
            f"**Duration:** {self.duration:.1f}s",
            "",
            "| Total | Completed | Failed | Skipped | Cached | Success rate |",
            "|---|---|---|---|---|---|",
            "| {total} | {completed} | {failed} | {skipped} | {cached} | {rate:.1f}% |".format(
                rate=self.success_rate, **{k: self.totals.get(k, 0) for k in
                                           ("total", "completed", "failed", "skipped", "cached")}
            ),
        ]
        if self.variables:
            out += ["", "## Variables", ""]
            out += [f"- `{k}` = `{self.variables[k]!r}`" for k in sorted(self.variables)]
        if self.matrix:
            out += ["", "## Matrix", ""]
            for job_id, combos in sorted(self.matrix.items()):
                out.append(f"- **{job_id}** ({len(combos)})")
                out += ["  - " + ", ".join(f"{k}={v}" for k, v in c.items()) for c in combos]
        failures = self.failures + self.configuration_failures
        if failures:
            out += ["", "## Failures", "", "| Instance | Exit code | Cause | Output |", "|---|---|---|---|"]
            for f in failures:
                name = f"{f.key} (allowed)" if f.allowed else f.key
                code = f.exit_code if f.exit_code is not None else "-"
                out.append(f"| {name} | {code} | {f.cause or '-'} | {f.output_ref or '-'} |")
        return "\n".join(out) + "\n"


def render(result: RunResult, criteria: Optional[SuccessCriteria] = None) -> Report:
    """Pure transformation of a RunResult into a Report."""
    criteria = criteria or result.criteria
    allowed = set(criteria.allowed_failures) if criteria else set()

    failures: List[FailureDetail] = []
    config_failures: List[FailureDetail] = []
    for r in result.records:
        if r.status is not Status.FAILED:
            continue
        detail = FailureDetail(
            job_id=r.instance.job_id,
            key=r.instance.key,
            combination=r.instance.combo,
            exit_code=r.exit_code,
            cause=r.cause,
            message=r.message,
            output_ref=r.output_ref,
            allowed=r.instance.job_id in allowed,
        )
        (config_failures if r.cause == CAUSE_CONFIGURATION else failures).append(detail)

    totals = {
        "total": len(result.records),
        "completed": result.completed_count,
        "failed": result.failed_count,
        "skipped": result.count(Status.SKIPPED),
        "cached": result.count(Status.CACHED),
    }
    # the rate the verdict was decided on: allow-listed failures excluded
    completed, failed = counted(result, criteria) if criteria else (result.completed_count, result.failed_count)
    if result.dry_run:
        status = "DRY RUN"
    else:
        status = "SUCCESS" if result.overall_success else "FAILURE"

    return Report(
        playbook=result.playbook_name,
        status=status,
        duration=result.duration,
        totals=totals,
        success_rate=success_rate(completed, failed),
        variables=dict(result.variables),
        matrix=breakdown([r.instance for r in result.records]),
        failures=failures,
        configuration_failures=config_failures,
        fingerprint=result.fingerprint,
        cancelled=result.cancelled,
    )
