# config.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError
from .model import SuccessCriteria

ENGINE_VERSION = "1.0.0"

DEFAULT_CONFIG_FILE = "playrun.yaml"
DEFAULT_MAX_CONCURRENCY = 4

# env var -> settings field
ENV_FIELDS = {
    "PLAYRUN_SCRIPTS_DIR": "scripts_dir",
    "PLAYRUN_PLAYBOOKS_DIR": "playbooks_dir",
    "PLAYRUN_CACHE_DIR": "cache_dir",
    "PLAYRUN_OUTPUT_DIR": "output_dir",
    "PLAYRUN_MAX_CONCURRENCY": "max_concurrency",
    "PLAYRUN_TIMEOUT": "timeout_seconds",
    "PLAYRUN_FAIL_FAST": "fail_fast",
}


# -------------------- Schemas --------------------

class CriteriaConfig(BaseModel):
    """Global default success criteria (camelCase aliases accepted)."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    require_all_success: bool = Field(default=False, alias="requireAllSuccess")
    minimum_success_count: int = Field(default=0, ge=0, alias="minimumSuccessCount")
    minimum_success_percent: float = Field(default=0.0, ge=0, le=100, alias="minimumSuccessPercent")
    allowed_failures: List[str] = Field(default_factory=list, alias="allowedFailures")

    def to_criteria(self) -> SuccessCriteria:
        return SuccessCriteria(
            require_all_success=self.require_all_success,
            minimum_success_count=self.minimum_success_count,
            minimum_success_percent=self.minimum_success_percent,
            allowed_failures=tuple(self.allowed_failures),
        )


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scripts_dir: Path = Path("automation-scripts")
    playbooks_dir: Path = Path("orchestration/playbooks")
    cache_dir: Path = Path(".playrun/cache")
    output_dir: Path = Path(".playrun/output")
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    fail_fast: bool = False
    success_criteria: CriteriaConfig = Field(default_factory=CriteriaConfig)

    @property
    def default_criteria(self) -> SuccessCriteria:
        return self.success_criteria.to_criteria()

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Apply CLI-level overrides; None means "not given"."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return _validate(data, origin="command line")


def _validate(data: Mapping[str, Any], origin: str) -> Settings:
    try:
        return Settings.model_validate(dict(data))
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid configuration: {first.get('msg')}",
            ref=field or origin,
            details={"source": origin},
        ) from e


def _read_file(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read config file: {e}", ref=str(path)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("Config file must contain a mapping", ref=str(path))
    # accept camelCase for the criteria block
    if "successCriteria" in data:
        data["success_criteria"] = data.pop("successCriteria")
    return data


def load_settings(
    path: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Resolve settings once per process.

    Precedence (low -> high): defaults, config file, PLAYRUN_* environment.
    CLI flags are applied afterwards with `Settings.with_overrides`.
    """
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}

    config_path = Path(path) if path is not None else Path(DEFAULT_CONFIG_FILE)
    if path is not None and not config_path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}", ref=str(config_path))
    if config_path.is_file():
        data.update(_read_file(config_path))

    for var, name in ENV_FIELDS.items():
        value = env.get(var)
        if value is not None and value != "":
            data[name] = value

    return _validate(data, origin=str(config_path) if config_path.is_file() else "environment")
