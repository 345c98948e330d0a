# matrix.py
from __future__ import annotations

import itertools
from typing import Any, Dict, List

from .errors import ConfigurationError
from .model import Job, JobInstance


def dimensions(job: Job) -> List[tuple[str, List[Any]]]:
    """
    Sorted (key, values) pairs of the job's matrix.

    Keys are sorted lexically so enumeration order (and therefore cache
    fingerprints) does not depend on the input map's ordering.
    """
    matrix = job.matrix or {}
    dims = []
    for key in sorted(matrix):
        values = matrix[key]
        if not isinstance(values, (list, tuple)):
            raise ConfigurationError(
                f"Matrix dimension '{key}' must be a list of values",
                ref=job.id,
                details={"got": type(values).__name__},
            )
        if len(values) == 0:
            raise ConfigurationError(
                f"Matrix dimension '{key}' has no values; no instances could be produced",
                ref=job.id,
            )
        dims.append((key, list(values)))
    return dims


def expand(job: Job) -> List[JobInstance]:
    """
    Cartesian product across all matrix dimensions.

    Example:
        {"py": ["3.10", "3.11"], "os": ["linux", "mac", "win"]} -> 6 instances
    """
    dims = dimensions(job)
    if not dims:
        return [JobInstance(job=job)]

    keys = [k for k, _ in dims]
    return [
        JobInstance(job=job, combination=tuple(zip(keys, values)))
        for values in itertools.product(*(v for _, v in dims))
    ]


def breakdown(instances: List[JobInstance]) -> Dict[str, List[Dict[str, Any]]]:
    """job id -> list of combinations, only for matrixed jobs."""
    out: Dict[str, List[Dict[str, Any]]] = {}
    for inst in instances:
        if inst.combination:
            out.setdefault(inst.job_id, []).append(inst.combo)
    return out
