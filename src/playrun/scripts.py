# scripts.py
# Script collaborators: numbered automation units in a scripts directory
# (e.g. automation-scripts/0402_Run-UnitTests.ps1), resolved by id and run as
# independent processes with their variables injected.

from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigurationError, JobTimeout
from .model import Job, JobInstance
from .runner import ExecutionOutcome

SCRIPT_NAME = re.compile(r"^(\d{4})(?:_.*)?$")
RANGE = re.compile(r"^(\d{1,4})-(\d{1,4})$")

VAR_ENV_PREFIX = "PLAYRUN_VAR_"

INTERPRETERS = {
    ".py": lambda: [sys.executable],
    ".sh": lambda: ["bash"],
    ".ps1": lambda: ["pwsh", "-NoProfile", "-NonInteractive", "-File"],
}

TOOL_HINTS = {
    "pwsh": "Install PowerShell 7 or fix PATH (pwsh).",
    "bash": "Install bash or fix PATH.",
}


class ScriptResolver:
    """Maps job ids to script files under `scripts_dir`."""

    def __init__(self, scripts_dir: str | Path):
        self.scripts_dir = Path(scripts_dir)

    def scripts(self) -> Dict[str, List[Path]]:
        """id -> matching files, for every numbered script in the directory."""
        found: Dict[str, List[Path]] = {}
        if not self.scripts_dir.is_dir():
            return found
        for p in sorted(self.scripts_dir.iterdir()):
            if not p.is_file():
                continue
            m = SCRIPT_NAME.match(p.stem)
            if m:
                found.setdefault(m.group(1), []).append(p)
        return found

    def resolve(self, script_id: str) -> Path:
        if not self.scripts_dir.is_dir():
            raise ConfigurationError(
                f"Scripts directory not found: {self.scripts_dir}",
                ref=script_id,
            )

        direct = self.scripts_dir / script_id
        if direct.is_file():
            return direct

        matches = [
            p for p in sorted(self.scripts_dir.iterdir())
            if p.is_file() and (p.stem == script_id or p.name.startswith(f"{script_id}_"))
        ]
        if not matches:
            raise ConfigurationError(
                f"No script found for '{script_id}'",
                ref=script_id,
                details={"scripts_dir": str(self.scripts_dir)},
            )
        if len(matches) > 1:
            raise ConfigurationError(
                f"Ambiguous script reference '{script_id}'",
                ref=script_id,
                details={"matches": ", ".join(p.name for p in matches)},
            )
        return matches[0]

    def command(self, script: Path) -> List[str]:
        factory = INTERPRETERS.get(script.suffix.lower())
        if factory is not None:
            cmd = factory()
            if shutil.which(cmd[0]) is None and not Path(cmd[0]).exists():
                raise ConfigurationError(
                    f"Interpreter '{cmd[0]}' not found for {script.name}",
                    ref=script.name,
                    details={"hint": TOOL_HINTS.get(cmd[0], "fix PATH")},
                )
            return [*cmd, str(script.resolve())]
        if not os.access(script, os.X_OK):
            raise ConfigurationError(f"Script is not executable: {script.name}", ref=script.name)
        return [str(script.resolve())]

    def validate(self, job: Job) -> None:
        self.command(self.resolve(job.script_id))


def parse_sequence(text: str, resolver: Optional[ScriptResolver] = None) -> List[str]:
    """
    Parse "0402,0404 0500-0599" into ordered, de-duplicated ids.

    Ranges are inclusive and expand to the scripts that exist in the range
    (numeric order); without a resolver a range expands to every id.
    """
    ids: List[str] = []
    available = sorted(resolver.scripts()) if resolver is not None else None

    for token in re.split(r"[,\s]+", text.strip()):
        if not token:
            continue
        m = RANGE.match(token)
        if m:
            lo, hi = int(m.group(1)), int(m.group(2))
            if lo > hi:
                raise ConfigurationError(f"Invalid range '{token}'", ref=token)
            if available is None:
                ids.extend(f"{n:04d}" for n in range(lo, hi + 1))
            else:
                ids.extend(i for i in available if lo <= int(i) <= hi)
            continue
        if token.isdigit():
            ids.append(f"{int(token):04d}")
        else:
            ids.append(token)

    seen = set()
    out = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    if not out:
        raise ConfigurationError("Sequence selects no scripts", ref=text)
    return out


def _flag(name: str) -> str:
    return "--" + re.sub(r"[^A-Za-z0-9]+", "-", name).strip("-")


def build_arguments(variables: Mapping[str, Any]) -> List[str]:
    """
    Variables as named inputs:
      key=value  -> --key value
      key=true   -> --key
      key=false  -> (omitted)
      key=[a, b] -> --key a b
    """
    args: List[str] = []
    for name in sorted(variables):
        value = variables[name]
        if value is None or value is False:
            continue
        if value is True:
            args.append(_flag(name))
        elif isinstance(value, (list, tuple)):
            args.append(_flag(name))
            args.extend(str(v) for v in value)
        else:
            args.extend([_flag(name), str(value)])
    return args


def build_env(variables: Mapping[str, Any], output_dir: Path) -> Dict[str, str]:
    env = os.environ.copy()
    for name, value in variables.items():
        key = VAR_ENV_PREFIX + re.sub(r"[^A-Za-z0-9]+", "_", name).upper()
        env[key] = value if isinstance(value, str) else json.dumps(value)
    env["PLAYRUN_OUTPUT_DIR"] = str(output_dir)
    return env


class SubprocessExecutor:
    """
    Runs a script collaborator as an independent process.

    stdout/stderr are always captured to <output_root>/<instance>/stdout.log
    and stderr.log; that directory is the record's output ref.
    """

    def __init__(self, resolver: ScriptResolver, output_root: str | Path):
        self.resolver = resolver
        self.output_root = Path(output_root)

    def validate(self, job: Job) -> None:
        self.resolver.validate(job)

    def execute(
        self,
        instance: JobInstance,
        variables: Mapping[str, Any],
        timeout: Optional[float],
    ) -> ExecutionOutcome:
        script = self.resolver.resolve(instance.job.script_id)
        cmd = self.resolver.command(script) + build_arguments(variables)

        out_dir = (self.output_root / instance.slug).resolve()
        out_dir.mkdir(parents=True, exist_ok=True)

        try:
            with (out_dir / "stdout.log").open("w", encoding="utf-8") as out, \
                    (out_dir / "stderr.log").open("w", encoding="utf-8") as err:
                proc = subprocess.run(
                    cmd,
                    cwd=str(script.parent),
                    env=build_env(variables, out_dir),
                    stdout=out,
                    stderr=err,
                    text=True,
                    timeout=timeout,
                )
        except subprocess.TimeoutExpired as e:
            raise JobTimeout(
                f"timed out after {timeout:g}s",
                ref=instance.key,
                details={"output_ref": str(out_dir)},
            ) from e
        except (FileNotFoundError, PermissionError) as e:
            raise ConfigurationError(
                f"Could not start {script.name}: {e}",
                ref=instance.key,
            ) from e

        return ExecutionOutcome(exit_code=proc.returncode, output_ref=str(out_dir))
