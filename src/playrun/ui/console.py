"""Console output formatting utilities for playrun."""

from __future__ import annotations

import sys
from typing import Iterable, Optional

from ..model import ExecutionRecord, Status


STATUS_MARKS = {
    Status.SUCCEEDED: "✓",
    Status.FAILED: "✗",
    Status.SKIPPED: "⏭",
    Status.CACHED: "↺",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-instance progress lines
        """
        self.debug = debug
        self.quiet = quiet

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        playbook: str,
        instance_count: int,
        wave_count: int,
        max_concurrency: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Playbook: {playbook}")
        print(f"Job instances: {instance_count}")
        print(f"Waves: {wave_count}")
        print(f"Max concurrency: {max_concurrency}")
        print()

    def print_wave(self, index: int, keys: Iterable[str]) -> None:
        """Print wave start message."""
        if self.quiet:
            return
        print(f"=== Wave {index + 1}: {', '.join(keys)} ===")

    def print_instance_result(self, record: ExecutionRecord) -> None:
        """Print one terminal instance."""
        if self.quiet:
            return
        mark = STATUS_MARKS.get(record.status, "·")
        line = f"{mark} {record.instance.key}: {record.status.value}"
        if record.duration is not None:
            line += f" ({record.duration:.1f}s)"
        if record.status is Status.FAILED:
            code = record.exit_code if record.exit_code is not None else "-"
            line += f" exit={code}"
        print(line)
        if record.status is Status.FAILED and record.message:
            print(f"  Error: {record.message}")
            if record.output_ref:
                print(f"  Output: {record.output_ref}")

    def print_plan(self, waves: Iterable[Iterable[str]]) -> None:
        """Print the wave plan (validate / dry-run)."""
        for n, keys in enumerate(waves):
            print(f"  Wave {n + 1}: {', '.join(keys)}")

    def print_cache_hit(self, key: str, reason: str) -> None:
        """Print cache hit message."""
        print(f"CACHE: hit {key[:12]}... ({reason})")

    def print_cache_miss(self, key: str) -> None:
        """Print cache miss message."""
        print(f"CACHE: miss {key[:12]}...")

    def print_cache_saved(self, key: str) -> None:
        """Print cache save message."""
        short_key = key[:12] + "..." if len(key) > 12 else key
        print(f"CACHE: saved ({short_key})")

    def print_report(self, text: str) -> None:
        print()
        print(text)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
