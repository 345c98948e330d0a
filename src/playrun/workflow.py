# workflow.py
# Convert a CI-style workflow document (jobs / needs / strategy.matrix / steps)
# into a job-graph playbook. Each external job becomes one orchestration job;
# its steps are not translated.

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .errors import ConfigurationError
from .loader import load, parse_text
from .model import Playbook, SuccessCriteria

MANUAL_MAPPING = "manual mapping required"


@dataclass
class ConversionResult:
    playbook: Playbook
    document: Dict[str, Any]  # the job-graph mapping fed to the loader
    notes: List[str] = field(default_factory=list)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.document, sort_keys=False)


def _scalar_env(env: Any) -> Dict[str, Any]:
    if not isinstance(env, Mapping):
        return {}
    return {
        str(k): v for k, v in env.items()
        if isinstance(v, (str, int, float, bool)) or v is None
    }


def to_job_graph(workflow: Mapping[str, Any]) -> tuple[Dict[str, Any], List[str]]:
    """Map the external document onto the v3 playbook shape. Returns (doc, notes)."""
    jobs = workflow.get("jobs")
    if not isinstance(jobs, Mapping) or not jobs:
        raise ConfigurationError("Workflow has no `jobs` mapping")

    out_jobs: Dict[str, Any] = {}
    notes: List[str] = []
    for name, spec in jobs.items():
        spec = spec or {}
        if not isinstance(spec, Mapping):
            raise ConfigurationError("Workflow job must be a mapping", ref=str(name))

        entry: Dict[str, Any] = {}
        needs = spec.get("needs")
        if needs:
            entry["needs"] = [needs] if isinstance(needs, str) else list(needs)

        strategy = spec.get("strategy")
        if isinstance(strategy, Mapping) and strategy.get("matrix") is not None:
            matrix = strategy["matrix"]
            if not isinstance(matrix, Mapping):
                # e.g. `matrix: ${{ fromJson(...) }}`
                raise ConfigurationError(
                    "Dynamic matrix expressions cannot be converted", ref=str(name)
                )
            entry["strategy"] = {"matrix": dict(matrix)}

        variables = _scalar_env(spec.get("env"))
        if variables:
            entry["variables"] = variables
        if "timeout-minutes" in spec:
            entry["timeout-minutes"] = spec["timeout-minutes"]

        steps = spec.get("steps") or []
        if steps or spec.get("uses"):
            count = len(steps) if isinstance(steps, list) else 0
            notes.append(f"{name}: {count} step(s) not translated ({MANUAL_MAPPING})")

        out_jobs[str(name)] = entry

    doc: Dict[str, Any] = {}
    if workflow.get("name"):
        doc["name"] = str(workflow["name"])
    doc["variables"] = _scalar_env(workflow.get("env"))
    if not doc["variables"]:
        del doc["variables"]
    doc["jobs"] = out_jobs
    return doc, notes


def convert(
    source: Union[str, Path, Mapping[str, Any]],
    *,
    defaults: Optional[SuccessCriteria] = None,
) -> ConversionResult:
    """
    Convert a workflow (path, YAML text or parsed mapping) into a Playbook.
    Validation is the loader's: unknown `needs` and cycles fail the same way.
    """
    if isinstance(source, Mapping):
        data: Any = source
        default_name = "workflow"
    elif isinstance(source, str) and ("\n" in source or source.lstrip().startswith("{")):
        data = parse_text(source)
        default_name = "workflow"
    else:
        path = Path(source)
        if not path.is_file():
            raise ConfigurationError(f"Workflow not found: {source}", ref=str(source))
        data = parse_text(path.read_text(encoding="utf-8"), origin=str(path))
        default_name = path.stem

    if not isinstance(data, Mapping):
        raise ConfigurationError("Workflow must be a mapping")

    doc, notes = to_job_graph(data)
    doc.setdefault("name", default_name)
    playbook = load(doc, defaults=defaults)
    return ConversionResult(playbook=playbook, document=doc, notes=notes)
