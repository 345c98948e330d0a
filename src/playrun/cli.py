# cli.py
from __future__ import annotations

import json
import logging
import sys
from datetime import date, datetime
from pathlib import Path

import click
import yaml

from playrun.cache import CacheStore
from playrun.config import ENGINE_VERSION, Settings, load_settings
from playrun.engine import Engine
from playrun.errors import ConfigurationError, OrchestrationError, SchedulingError
from playrun.loader import from_sequence, list_playbooks, load
from playrun.report import render
from playrun.scripts import ScriptResolver, parse_sequence
from playrun.ui.console import Console, get_console, set_console
from playrun.workflow import convert as convert_workflow

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def parse_vars(values: tuple[str, ...]) -> dict:
    """KEY=VALUE pairs; values are YAML scalars so `true`, `3`, `[a, b]` are typed."""
    out = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--var")
        key, raw = item.split("=", 1)
        key = key.strip()
        if not key:
            raise click.BadParameter(f"empty variable name in {item!r}", param_hint="--var")
        try:
            value = yaml.safe_load(raw) if raw.strip() else ""
        except yaml.YAMLError:
            value = raw
        # timestamps stay as the text the operator typed
        out[key] = raw.strip() if isinstance(value, (date, datetime)) else value
    return out


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _report_error(e: OrchestrationError) -> None:
    console = get_console()
    details = [f"{k}: {v}" for k, v in e.details.items()]
    if e.ref:
        details.insert(0, f"ref: {e.ref}")
    suggestion = None
    if isinstance(e, SchedulingError) and e.cycle:
        suggestion = "Break the cycle by removing one of the dependencies above."
    console.print_error(e.kind, e.message, details=details or None, suggestion=suggestion)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--config", "config_path", default=None, help="Config file (defaults to playrun.yaml if present)")
@click.version_option(ENGINE_VERSION, prog_name="playrun")
@click.pass_context
def cli(ctx, debug, config_path):
    """playrun: local playbook orchestration engine."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["settings"] = load_settings(config_path)
    except ConfigurationError as e:
        _report_error(e)
        sys.exit(EXIT_CONFIG)


@cli.command()
@click.argument("playbook", required=False)
@click.option("--sequence", default=None, help="Explicit job ids / ranges, e.g. '0402,0404 0500-0599'")
@click.option("--dry-run", is_flag=True, default=False, help="Schedule and validate without executing")
@click.option("--use-cache/--no-cache", default=False, show_default=True, help="Replay results for an identical run")
@click.option("--summary/--no-summary", default=True, show_default=True, help="Print the run summary")
@click.option("--summary-file", default=None, type=click.Path(dir_okay=False), help="Write summary (.md or .json)")
@click.option("--max-concurrency", default=None, type=int, help="Parallel job instances per wave")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Skip later waves after a failure")
@click.option("--timeout", default=None, type=float, help="Per-instance timeout in seconds")
@click.option("--var", "variables", multiple=True, help="Variable KEY=VALUE (repeatable)")
@click.pass_context
def run(ctx, playbook, sequence, dry_run, use_cache, summary, summary_file,
        max_concurrency, fail_fast, timeout, variables):
    """Run a playbook or an explicit job-id sequence."""
    console = get_console()

    if bool(playbook) == bool(sequence):
        console.print_error(
            "Nothing to run",
            "Give exactly one of PLAYBOOK or --sequence.",
            suggestion="playrun run my-playbook\n  playrun run --sequence 0402,0404",
        )
        sys.exit(EXIT_CONFIG)

    engine = None
    try:
        settings = _settings(ctx).with_overrides(
            max_concurrency=max_concurrency,
            fail_fast=fail_fast,
            timeout_seconds=timeout,
        )
        var_map = parse_vars(variables)
        defaults = settings.default_criteria

        if sequence:
            ids = parse_sequence(sequence, ScriptResolver(settings.scripts_dir))
            pb = from_sequence(ids, defaults=defaults)
        else:
            pb = load(playbook, defaults=defaults, playbooks_dir=settings.playbooks_dir)

        engine = Engine(settings, console=console)
        result = engine.run(pb, var_map, use_cache=use_cache, dry_run=dry_run)
    except OrchestrationError as e:
        _report_error(e)
        if console.debug:
            console.print_exception(e)
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        if engine is not None:
            engine.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)

    report = render(result)
    if summary:
        console.print_report(report.render_text())
    if summary_file:
        path = Path(summary_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix == ".json":
            path.write_text(json.dumps(report.to_dict(), indent=2, default=str), encoding="utf-8")
        else:
            path.write_text(report.render_markdown(), encoding="utf-8")
        console.print_info(f"Summary written to {path}")

    if result.cancelled:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_OK if result.overall_success else EXIT_FAILED)


@cli.command()
@click.argument("playbook")
@click.pass_context
def validate(ctx, playbook):
    """Load a playbook, check its collaborators and print the wave plan."""
    console = get_console()
    settings = _settings(ctx)
    try:
        pb = load(playbook, defaults=settings.default_criteria, playbooks_dir=settings.playbooks_dir)
        waves = Engine(settings, console=console).validate(pb)
    except OrchestrationError as e:
        _report_error(e)
        sys.exit(EXIT_CONFIG)

    console.print_info(f"Playbook '{pb.name}' (format v{pb.schema_version}) is valid")
    console.print_plan(w.keys for w in waves)


@cli.command()
@click.argument("workflow", type=click.Path(exists=True, dir_okay=False))
@click.option("-o", "--output", default=None, type=click.Path(dir_okay=False), help="Write the playbook here")
def convert(workflow, output):
    """Convert a CI workflow file into a job-graph playbook."""
    console = get_console()
    try:
        result = convert_workflow(Path(workflow))
    except OrchestrationError as e:
        _report_error(e)
        sys.exit(EXIT_CONFIG)

    text = result.to_yaml()
    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print_info(f"Playbook written to {output}")
    else:
        console.print_info(text)
    for note in result.notes:
        console.print_info(f"NOTE: {note}")


@cli.command(name="list")
@click.pass_context
def list_cmd(ctx):
    """List available playbooks and scripts."""
    console = get_console()
    settings = _settings(ctx)

    console.print_header(f"Playbooks ({settings.playbooks_dir})")
    for name in list_playbooks(settings.playbooks_dir):
        console.print_info(f"  {name}")

    console.print_header(f"Scripts ({settings.scripts_dir})")
    for script_id, paths in sorted(ScriptResolver(settings.scripts_dir).scripts().items()):
        console.print_info(f"  {script_id}  {', '.join(p.name for p in paths)}")


@cli.group()
def cache():
    """Inspect or clean the result cache."""


@cache.command(name="list")
@click.pass_context
def cache_list(ctx):
    store = CacheStore(_settings(ctx).cache_dir)
    console = get_console()
    entries = store.entries()
    if not entries:
        console.print_info("Cache is empty")
        return
    for meta in entries:
        ts = datetime.fromtimestamp(meta.get("created_at_unix", 0)).isoformat(timespec="seconds")
        count = meta.get("instance_count", "?")
        console.print_info(f"  {meta['fingerprint'][:12]}  {ts}  {count} instance(s)")


@cache.command(name="clear")
@click.pass_context
def cache_clear(ctx):
    CacheStore(_settings(ctx).cache_dir).clear()
    get_console().print_info("Cache cleared")


@cache.command(name="prune")
@click.option("--keep", default=3, show_default=True, type=click.IntRange(min=0), help="Fingerprints to keep")
@click.pass_context
def cache_prune(ctx, keep):
    removed = CacheStore(_settings(ctx).cache_dir).prune(keep=keep)
    get_console().print_info(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}")


if __name__ == "__main__":
    cli()
