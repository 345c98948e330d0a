# loader.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from .dag import effective_dependencies, find_cycle
from .errors import ConfigurationError, SchedulingError
from .model import Job, Playbook, Stage, SuccessCriteria

logger = logging.getLogger(__name__)

PLAYBOOK_SUFFIXES = (".yaml", ".yml", ".json")

V1_LEGACY = 1
V2_STAGED = 2
V3_JOB_GRAPH = 3

_SCALARS = (str, int, float, bool, type(None))

_CRITERIA_KEYS = {
    "requireAllSuccess": "require_all_success",
    "require_all_success": "require_all_success",
    "minimumSuccessCount": "minimum_success_count",
    "minimum_success_count": "minimum_success_count",
    "minimumSuccessPercent": "minimum_success_percent",
    "minimum_success_percent": "minimum_success_percent",
    "allowedFailures": "allowed_failures",
    "allowed_failures": "allowed_failures",
}

Source = Union[str, Path, Mapping[str, Any], List[Any]]


# ----------------------------------------------------------------------
# Source reading
# ----------------------------------------------------------------------

def parse_text(text: str, origin: str = "<string>") -> Any:
    """Parse JSON or YAML text (YAML is a superset of JSON)."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Playbook is not valid structured data: {e}", ref=origin) from e
    if data is None:
        raise ConfigurationError("Playbook is empty", ref=origin)
    if not isinstance(data, (dict, list)):
        raise ConfigurationError(
            "Playbook must be a mapping or a list",
            ref=origin,
            details={"got": type(data).__name__},
        )
    return data


def find_playbook(name: str, playbooks_dir: Union[str, Path]) -> Optional[Path]:
    """
    Resolve a playbook by name:
      <dir>/<name>.yaml|.yml|.json
      <dir>/<name>/playbook.yaml|.yml|.json
    """
    root = Path(playbooks_dir)
    for suffix in PLAYBOOK_SUFFIXES:
        for candidate in (root / f"{name}{suffix}", root / name / f"playbook{suffix}"):
            if candidate.is_file():
                return candidate
    return None


def list_playbooks(playbooks_dir: Union[str, Path]) -> List[str]:
    root = Path(playbooks_dir)
    if not root.is_dir():
        return []
    names = set()
    for p in root.iterdir():
        if p.is_file() and p.suffix in PLAYBOOK_SUFFIXES:
            names.add(p.stem)
        elif p.is_dir() and any((p / f"playbook{s}").is_file() for s in PLAYBOOK_SUFFIXES):
            names.add(p.name)
    return sorted(names)


def read_source(source: Source, playbooks_dir: Optional[Union[str, Path]] = None) -> Tuple[Any, str]:
    """Returns (parsed data, default name)."""
    if isinstance(source, (Mapping, list)):
        return source, "playbook"

    path = Path(source).expanduser()
    if not path.is_file() and playbooks_dir is not None:
        found = find_playbook(str(source), playbooks_dir)
        if found is not None:
            path = found
    if not path.is_file():
        raise ConfigurationError(
            f"Playbook not found: {source}",
            ref=str(source),
            details={"playbooks_dir": playbooks_dir} if playbooks_dir else None,
        )

    text = path.read_text(encoding="utf-8")
    stem = path.parent.name if path.stem == "playbook" else path.stem
    return parse_text(text, origin=str(path)), stem


# ----------------------------------------------------------------------
# Schema probing
# ----------------------------------------------------------------------

def detect_version(data: Any) -> int:
    """
    Structural probe:
      - flat list of references (or `sequence`/`scripts` list) -> v1
      - `stages` collection of ordered groups                 -> v2
      - `jobs` map with `needs` / `strategy.matrix`            -> v3
    """
    if isinstance(data, list):
        return V1_LEGACY
    if not isinstance(data, Mapping):
        raise ConfigurationError("Playbook must be a mapping or a list")

    if "stages" in data:
        return V2_STAGED
    if isinstance(data.get("jobs"), Mapping):
        return V3_JOB_GRAPH
    if isinstance(data.get("jobs"), list):
        # a single flat job list is a one-stage v2 playbook
        return V2_STAGED
    for key in ("sequence", "scripts"):
        if isinstance(data.get(key), list):
            return V1_LEGACY
    raise ConfigurationError(
        "Cannot detect playbook format: expected `stages`, `jobs` or a flat `sequence`",
        details={"keys": sorted(str(k) for k in data)},
    )


# ----------------------------------------------------------------------
# Field helpers
# ----------------------------------------------------------------------

def _pick(data: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for n in names:
        if n in data:
            return data[n]
    return default


def job_id(value: Any) -> str:
    """Normalize a script reference. Integers are zero-padded to four digits."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid job reference: {value!r}")
    if isinstance(value, int):
        return f"{value:04d}"
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ConfigurationError(f"Invalid job reference: {value!r}")


def check_variables(variables: Any, ref: str) -> Dict[str, Any]:
    """Variables are a map of str -> scalar or list of scalars."""
    if variables is None:
        return {}
    if not isinstance(variables, Mapping):
        raise ConfigurationError("`variables` must be a mapping", ref=ref)
    out: Dict[str, Any] = {}
    for k, v in variables.items():
        ok = isinstance(v, _SCALARS) or (
            isinstance(v, (list, tuple)) and all(isinstance(x, _SCALARS) for x in v)
        )
        if not ok:
            raise ConfigurationError(
                f"Variable '{k}' has unsupported type {type(v).__name__}",
                ref=ref,
                details={"allowed": "str, int, float, bool, null, list of those"},
            )
        out[str(k)] = list(v) if isinstance(v, tuple) else v
    return out


def _matrix(value: Any, ref: str) -> Optional[Dict[str, List[Any]]]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ConfigurationError("`matrix` must be a mapping of dimension -> values", ref=ref)
    for unsupported in ("include", "exclude"):
        if unsupported in value:
            raise ConfigurationError(f"Matrix `{unsupported}` is not supported", ref=ref)
    return {str(k): list(v) if isinstance(v, (list, tuple)) else v for k, v in value.items()} or None


def _deps(value: Any, ref: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        value = [value]
    if not isinstance(value, list):
        raise ConfigurationError("Dependencies must be a list of job ids", ref=ref)
    return tuple(job_id(v) for v in value)


def _timeout(value: Any, ref: str) -> Optional[float]:
    if value is None:
        return None
    try:
        t = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid timeout: {value!r}", ref=ref)
    if t <= 0:
        raise ConfigurationError("Timeout must be positive", ref=ref)
    return t


def _job_from_entry(entry: Any) -> Job:
    """A v2 job entry: a bare id or a mapping."""
    if not isinstance(entry, Mapping):
        return Job(id=job_id(entry))

    raw = _pick(entry, "id", "script", "name")
    if raw is None:
        raise ConfigurationError("Job entry has no `id`", details={"entry": dict(entry)})
    jid = job_id(raw)
    script = _pick(entry, "script")
    return Job(
        id=jid,
        variables=check_variables(_pick(entry, "variables", "parameters"), jid),
        matrix=_matrix(_pick(entry, "matrix"), jid),
        depends_on=_deps(_pick(entry, "dependsOn", "depends_on", "needs"), jid),
        script=job_id(script) if script is not None and "id" in entry else None,
        timeout=_timeout(_pick(entry, "timeout"), jid),
    )


# ----------------------------------------------------------------------
# Version-specific parsers
# ----------------------------------------------------------------------

def _parse_v1(data: Any) -> List[Stage]:
    items = data if isinstance(data, list) else _pick(data, "sequence", "scripts")
    logger.warning(
        "Playbook uses the legacy flat-list format (v1), which is deprecated; "
        "convert it to `stages` or `jobs`"
    )
    return [Stage(name="main", jobs=tuple(Job(id=job_id(i)) for i in items))]


def _parse_v2(data: Mapping[str, Any]) -> List[Stage]:
    raw_stages = data.get("stages")
    if raw_stages is None:
        raw_stages = [{"name": "main", "jobs": data.get("jobs")}]
    if not isinstance(raw_stages, list):
        raise ConfigurationError("`stages` must be a list")

    stages: List[Stage] = []
    for n, raw in enumerate(raw_stages):
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"Stage #{n} must be a mapping", ref=f"stages[{n}]")
        name = str(raw.get("name") or f"stage-{n + 1}")
        entries = _pick(raw, "jobs", "sequence", "scripts", default=[])
        if not isinstance(entries, list):
            raise ConfigurationError("Stage jobs must be a list", ref=name)
        stages.append(Stage(name=name, jobs=tuple(_job_from_entry(e) for e in entries)))
    return stages


def _parse_v3(data: Mapping[str, Any]) -> List[Stage]:
    jobs: Dict[str, Job] = {}
    for key, spec in data["jobs"].items():
        jid = job_id(key)
        spec = spec or {}
        if not isinstance(spec, Mapping):
            raise ConfigurationError("Job definition must be a mapping", ref=jid)
        strategy = spec.get("strategy") or {}
        matrix = strategy.get("matrix") if isinstance(strategy, Mapping) else None
        script = spec.get("script")
        timeout = _timeout(spec.get("timeout"), jid)
        if "timeout-minutes" in spec:
            minutes = _timeout(spec["timeout-minutes"], jid)
            timeout = minutes * 60 if minutes is not None else None
        jobs[jid] = Job(
            id=jid,
            variables=check_variables(_pick(spec, "variables", "parameters"), jid),
            matrix=_matrix(matrix if matrix is not None else spec.get("matrix"), jid),
            depends_on=_deps(_pick(spec, "needs", "dependsOn", "depends_on"), jid),
            script=job_id(script) if script is not None else None,
            timeout=timeout,
        )

    for j in jobs.values():
        for d in j.depends_on:
            if d not in jobs:
                raise ConfigurationError(f"Job '{j.id}' needs unknown job '{d}'", ref=j.id)

    cycle = find_cycle({j.id: list(j.depends_on) for j in jobs.values()})
    if cycle:
        raise SchedulingError("Dependency cycle detected", cycle=cycle)

    depth: Dict[str, int] = {}

    def _depth(jid: str) -> int:
        if jid not in depth:
            needs = jobs[jid].depends_on
            depth[jid] = 0 if not needs else 1 + max(_depth(d) for d in needs)
        return depth[jid]

    by_depth: Dict[int, List[Job]] = {}
    for jid, j in jobs.items():
        by_depth.setdefault(_depth(jid), []).append(j)
    return [
        Stage(name=f"stage-{d + 1}", jobs=tuple(by_depth[d]))
        for d in sorted(by_depth)
    ]


_PARSERS = {
    V1_LEGACY: _parse_v1,
    V2_STAGED: _parse_v2,
    V3_JOB_GRAPH: _parse_v3,
}


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def validate_stages(stages: Iterable[Stage]) -> None:
    """
    - job ids are unique within the playbook
    - every dependency exists, in the same or an earlier stage
    """
    stages = list(stages)
    stage_of: Dict[str, int] = {}
    for n, stage in enumerate(stages):
        for j in stage.jobs:
            if j.id in stage_of:
                raise ConfigurationError(f"Duplicate job id '{j.id}'", ref=j.id)
            stage_of[j.id] = n

    for n, stage in enumerate(stages):
        for j in stage.jobs:
            for d in j.depends_on:
                if d not in stage_of:
                    raise ConfigurationError(
                        f"Job '{j.id}' depends on missing job '{d}'",
                        ref=j.id,
                        details={"known": sorted(stage_of)},
                    )
                if stage_of[d] > n:
                    raise ConfigurationError(
                        f"Job '{j.id}' depends on '{d}' from a later stage",
                        ref=j.id,
                        details={"stage": stage.name},
                    )


def parse_criteria(raw: Any, defaults: SuccessCriteria) -> SuccessCriteria:
    if raw is None:
        return defaults
    if not isinstance(raw, Mapping):
        raise ConfigurationError("`successCriteria` must be a mapping")
    fields: Dict[str, Any] = {}
    for key, value in raw.items():
        name = _CRITERIA_KEYS.get(str(key))
        if name is None:
            raise ConfigurationError(f"Unknown success criteria field '{key}'")
        fields[name] = value
    try:
        if fields.get("require_all_success") is not None:
            fields["require_all_success"] = bool(fields["require_all_success"])
        if fields.get("minimum_success_count") is not None:
            fields["minimum_success_count"] = int(fields["minimum_success_count"])
        if fields.get("minimum_success_percent") is not None:
            fields["minimum_success_percent"] = float(fields["minimum_success_percent"])
        if fields.get("allowed_failures") is not None:
            fields["allowed_failures"] = [job_id(x) for x in fields["allowed_failures"]]
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid success criteria: {e}") from e
    return defaults.override(**fields)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def load(
    source: Source,
    *,
    defaults: Optional[SuccessCriteria] = None,
    playbooks_dir: Optional[Union[str, Path]] = None,
    name: Optional[str] = None,
) -> Playbook:
    """
    Load any supported playbook shape into the canonical model.

    `source` may be a file path, a playbook name under `playbooks_dir`, or
    already-parsed data. Nothing is executed and the cache is not touched.
    """
    data, default_name = read_source(source, playbooks_dir)
    version = detect_version(data)
    stages = _PARSERS[version](data)
    validate_stages(stages)

    meta: Mapping[str, Any] = data if isinstance(data, Mapping) else {}
    artifacts = _pick(meta, "expectedArtifacts", "expected_artifacts", default=[]) or []
    if not isinstance(artifacts, list):
        raise ConfigurationError("`expectedArtifacts` must be a list")

    playbook = Playbook(
        name=name or str(meta.get("name") or default_name),
        stages=tuple(stages),
        success_criteria=parse_criteria(
            _pick(meta, "successCriteria", "success_criteria"),
            defaults or SuccessCriteria(),
        ),
        expected_artifacts=tuple(str(a) for a in artifacts),
        variables=check_variables(meta.get("variables"), "playbook"),
        schema_version=version,
    )
    cycle = find_cycle(effective_dependencies(playbook))
    if cycle:
        raise SchedulingError("Dependency cycle detected", cycle=cycle)
    return playbook


def from_sequence(ids: List[str], *, defaults: Optional[SuccessCriteria] = None) -> Playbook:
    """An explicit job-id sequence is a single-stage playbook without dependencies."""
    stages = [Stage(name="main", jobs=tuple(Job(id=job_id(i)) for i in ids))]
    validate_stages(stages)
    return Playbook(
        name="sequence",
        stages=tuple(stages),
        success_criteria=defaults or SuccessCriteria(),
        schema_version=V1_LEGACY,
    )
