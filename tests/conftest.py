from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

# Ensure tests always import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from playrun.runner import ExecutionOutcome  # noqa: E402
from playrun.ui.console import Console, set_console  # noqa: E402


class ExecutorStub:
    """
    In-process collaborator: exit codes by job id (default 0), records the
    order of calls and the peak number of concurrent executions.
    """

    def __init__(self, exit_codes=None, delay: float = 0.0, errors=None):
        self.exit_codes = dict(exit_codes or {})
        self.errors = dict(errors or {})
        self.delay = delay
        self.calls = []
        self.variables = {}
        self._lock = threading.Lock()
        self._active = 0
        self.peak = 0

    def execute(self, instance, variables, timeout):
        with self._lock:
            self.calls.append(instance.key)
            self.variables[instance.key] = dict(variables)
            self._active += 1
            self.peak = max(self.peak, self._active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if instance.job_id in self.errors:
                raise self.errors[instance.job_id]
            return ExecutionOutcome(exit_code=self.exit_codes.get(instance.job_id, 0))
        finally:
            with self._lock:
                self._active -= 1


@pytest.fixture
def executor_stub():
    return ExecutorStub()


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield


@pytest.fixture
def scripts_dir(tmp_path):
    """A scripts directory with a passing (0001), failing (0002) and echo (0003) script."""
    d = tmp_path / "automation-scripts"
    d.mkdir()
    (d / "0001_Pass.py").write_text("import sys\nsys.exit(0)\n", encoding="utf-8")
    (d / "0002_Fail.py").write_text("import sys\nprint('boom', file=sys.stderr)\nsys.exit(3)\n", encoding="utf-8")
    (d / "0003_Echo.py").write_text(
        "import os, sys\n"
        "print(' '.join(sys.argv[1:]))\n"
        "print(os.environ.get('PLAYRUN_VAR_TARGET', ''))\n",
        encoding="utf-8",
    )
    (d / "0004_Sleep.py").write_text("import time\ntime.sleep(5)\n", encoding="utf-8")
    return d


@pytest.fixture
def make_executor():
    return ExecutorStub
