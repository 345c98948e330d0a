# cache.py
from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tarfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import CacheError
from .model import ExecutionRecord, Job, JobInstance, Status

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Run-level caching:
#   fingerprint = sha256(
#       sorted job-instance identities (job id + sorted combination pairs),
#       sorted effective variables,
#       per-job variables,
#   )
#
# Store layout (all keyed by fingerprint):
#   root/
#     results/<fp>.json       serialized ExecutionRecords
#     artifacts/<fp>.tar.gz   captured output directories (outputRef)
#     metadata/<fp>.json      fingerprint inputs, timestamp, engine version
#
# A hit replays every record as Cached; there is no partial hit.
# Anything unreadable is a miss, never an error.
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".playrun/cache"
FINGERPRINT_VERSION = 1

RESULTS = "results"
ARTIFACTS = "artifacts"
METADATA = "metadata"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    records: Tuple[ExecutionRecord, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_fingerprint(
    instances: List[JobInstance],
    variables: Mapping[str, Any],
) -> Tuple[str, Dict[str, Any]]:
    """
    Returns (fingerprint, inputs) where inputs can be stored for explainability.
    """
    identities = sorted(
        (inst.identity() for inst in instances),
        key=_json_dumps_stable,
    )
    jobs: Dict[str, Job] = {}
    for inst in instances:
        jobs.setdefault(inst.job_id, inst.job)
    job_variables = {
        jid: sorted([k, v] for k, v in job.variables.items())
        for jid, job in sorted(jobs.items())
        if job.variables
    }

    payload = {
        "v": FINGERPRINT_VERSION,  # bump this if you change hashing format
        "instances": identities,
        "variables": sorted([k, v] for k, v in variables.items()),
        "job_variables": job_variables,
    }
    return _sha256_str(_json_dumps_stable(payload)), payload


class CacheStore:
    """File-based store with `results`, `artifacts` and `metadata` namespaces."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, engine_version: str = "unknown"):
        self.root = Path(root).resolve()
        self.engine_version = engine_version

    def _ns(self, namespace: str) -> Path:
        d = self.root / namespace
        d.mkdir(parents=True, exist_ok=True)
        return d

    def results_path(self, key: str) -> Path:
        return self._ns(RESULTS) / f"{key}.json"

    def artifact_path(self, key: str) -> Path:
        return self._ns(ARTIFACTS) / f"{key}.tar.gz"

    def metadata_path(self, key: str) -> Path:
        return self._ns(METADATA) / f"{key}.json"

    # ---- read ----

    def _read_records(self, key: str, instances: List[JobInstance]) -> List[ExecutionRecord]:
        path = self.results_path(key)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            by_key = {i.key: i for i in instances}
            stored = data["records"]
            if sorted(r["key"] for r in stored) != sorted(by_key):
                raise CacheError("stored instance set does not match", ref=key)
            return [ExecutionRecord.from_dict(r, by_key[r["key"]]) for r in stored]
        except CacheError:
            raise
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CacheError(f"unreadable results: {e}", ref=key) from e

    def _restore_artifacts(self, key: str, dest: Path) -> None:
        art = self.artifact_path(key)
        if not art.exists():
            return
        dest.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(path=str(dest), filter="data")
                else:
                    tar.extractall(path=str(dest))
        except (OSError, tarfile.TarError) as e:
            raise CacheError(f"artifact restore failed: {e}", ref=key) from e

    def lookup(
        self,
        key: str,
        instances: List[JobInstance],
        *,
        restore_dir: Optional[str | Path] = None,
    ) -> CacheHit:
        """
        Full-fingerprint lookup. On a hit every record comes back as Cached
        with its recorded exit code; artifacts are unpacked under
        `restore_dir` and output refs point there.
        """
        if not self.results_path(key).exists():
            return CacheHit(hit=False, key=key, reason="cache miss")

        try:
            records = self._read_records(key, instances)
            if restore_dir is not None:
                dest = Path(restore_dir)
                self._restore_artifacts(key, dest)
                for r in records:
                    if r.output_ref is not None:
                        r.output_ref = str(dest / r.instance.slug)
        except CacheError as e:
            logger.debug("cache entry %s ignored: %s", key[:12], e.message)
            return CacheHit(hit=False, key=key, reason=f"cache entry unreadable: {e.message}")

        for r in records:
            r.status = Status.CACHED
            r.cache_hit = True

        try:
            meta = json.loads(self.metadata_path(key).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            meta = {}

        return CacheHit(
            hit=True,
            key=key,
            reason="cache hit: replayed recorded results",
            records=tuple(records),
            metadata=meta,
        )

    # ---- write ----

    def store(
        self,
        key: str,
        records: List[ExecutionRecord],
        *,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Persist records, their captured output dirs and diagnostics metadata.
        Files are written to a temp name and renamed into place.
        """
        results = {
            "fingerprint": key,
            "records": [r.to_dict() for r in records],
        }

        art = self.artifact_path(key)
        tmp_art = art.with_suffix(".gz.tmp")
        try:
            with tarfile.open(str(tmp_art), mode="w:gz") as tar:
                for r in records:
                    if not r.output_ref:
                        continue
                    src = Path(r.output_ref)
                    if src.is_dir():
                        tar.add(str(src), arcname=r.instance.slug)
            tmp_art.replace(art)

            self._write_json(self.results_path(key), results)
            self._write_json(
                self.metadata_path(key),
                {
                    "fingerprint": key,
                    "inputs": inputs or {},
                    "created_at_unix": time.time(),
                    "engine_version": self.engine_version,
                    "instance_count": len(records),
                },
            )
        finally:
            if tmp_art.exists():
                tmp_art.unlink(missing_ok=True)

    @staticmethod
    def _write_json(path: Path, obj: Any) -> None:
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    # ---- maintenance ----

    def entries(self) -> List[Dict[str, Any]]:
        """Metadata of every stored fingerprint, newest first."""
        out: List[Dict[str, Any]] = []
        for p in self._ns(RESULTS).glob("*.json"):
            key = p.stem
            try:
                meta = json.loads(self.metadata_path(key).read_text(encoding="utf-8"))
            except (OSError, ValueError):
                meta = {"fingerprint": key, "created_at_unix": p.stat().st_mtime}
            out.append(meta)
        return sorted(out, key=lambda m: m.get("created_at_unix", 0), reverse=True)

    def remove(self, key: str) -> None:
        for p in (self.results_path(key), self.artifact_path(key), self.metadata_path(key)):
            p.unlink(missing_ok=True)

    def prune(self, keep: int = 3) -> int:
        """Keep only the newest N fingerprints. Returns how many were removed."""
        if keep < 0:
            raise ValueError(f"keep must be >= 0, got {keep}")
        stale = self.entries()[keep:]
        for meta in stale:
            self.remove(meta["fingerprint"])
        return len(stale)

    def clear(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
