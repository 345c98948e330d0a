import pytest

from playrun.cache import CacheStore
from playrun.config import Settings
from playrun.engine import Engine, effective_variables
from playrun.errors import ConfigurationError, SchedulingError
from playrun.loader import load
from playrun.model import Job, Playbook, Stage, Status, SuccessCriteria


@pytest.fixture
def settings(tmp_path):
    return Settings(cache_dir=tmp_path / "cache", output_dir=tmp_path / "out")


def _engine(settings, executor):
    return Engine(settings, executor=executor, cache=CacheStore(settings.cache_dir))


def _three_jobs(criteria=None):
    return load(
        {
            "name": "three",
            "stages": [
                {"name": "build", "jobs": ["A", "B"]},
                {"name": "test", "jobs": ["C"]},
            ],
            "successCriteria": criteria or {},
        }
    )


def _by_key(result):
    return {r.instance.key: r for r in result.records}


def test_failure_in_first_stage_still_runs_second(settings, make_executor):
    stub = make_executor(exit_codes={"B": 2})

    result = _engine(settings, stub).run(_three_jobs({"minimumSuccessPercent": 60}))

    records = _by_key(result)
    assert records["B"].status is Status.FAILED
    assert records["C"].status is Status.SUCCEEDED
    assert stub.calls.index("C") > max(stub.calls.index("A"), stub.calls.index("B"))
    assert result.completed_count == 2 and result.failed_count == 1
    assert result.overall_success


def test_require_all_success_fails_the_run(settings, make_executor):
    stub = make_executor(exit_codes={"B": 2})

    result = _engine(settings, stub).run(_three_jobs({"requireAllSuccess": True}))

    assert not result.overall_success


def test_allowed_failure_keeps_run_green(settings, make_executor):
    stub = make_executor(exit_codes={"B": 2})

    result = _engine(settings, stub).run(_three_jobs({"requireAllSuccess": True, "allowedFailures": ["B"]}))

    assert result.overall_success


def test_fail_fast_from_settings_and_per_run(settings, make_executor):
    stub = make_executor(exit_codes={"A": 1})
    engine = _engine(settings.with_overrides(fail_fast=True), stub)

    assert _by_key(engine.run(_three_jobs()))["C"].status is Status.SKIPPED
    assert _by_key(engine.run(_three_jobs(), fail_fast=False))["C"].status is Status.SUCCEEDED


def test_second_identical_run_is_served_from_cache(settings, make_executor):
    stub = make_executor()
    engine = _engine(settings, stub)
    pb = load({"name": "m", "jobs": {"build": {"strategy": {"matrix": {"os": ["linux", "mac"]}}}}})

    first = engine.run(pb, {"target": "lab"}, use_cache=True)
    calls_after_first = len(stub.calls)
    second = engine.run(pb, {"target": "lab"}, use_cache=True)

    assert calls_after_first == 2
    assert len(stub.calls) == 2
    assert first.fingerprint == second.fingerprint
    assert all(r.status is Status.CACHED and r.cache_hit for r in second.records)
    assert second.completed_count == 2
    assert second.overall_success


def test_changed_variables_miss_the_cache(settings, make_executor):
    stub = make_executor()
    engine = _engine(settings, stub)
    pb = _three_jobs()

    engine.run(pb, {"target": "lab"}, use_cache=True)
    result = engine.run(pb, {"target": "prod"}, use_cache=True)

    assert len(stub.calls) == 6
    assert not any(r.cache_hit for r in result.records)


def test_failed_runs_are_not_cached(settings, make_executor):
    stub = make_executor(exit_codes={"A": 1})
    engine = _engine(settings, stub)

    engine.run(_three_jobs(), use_cache=True)
    engine.run(_three_jobs(), use_cache=True)

    assert len(stub.calls) == 6
    assert engine.cache.entries() == []


def test_dry_run_executes_nothing(settings, executor_stub):
    result = _engine(settings, executor_stub).run(_three_jobs(), dry_run=True)

    assert executor_stub.calls == []
    assert result.dry_run and result.overall_success
    assert all(r.status is Status.PENDING for r in result.records)


def test_dry_run_reports_missing_scripts(tmp_path, scripts_dir):
    settings = Settings(scripts_dir=scripts_dir, output_dir=tmp_path / "out", cache_dir=tmp_path / "cache")
    pb = load({"name": "x", "stages": [{"name": "s", "jobs": ["0001", "0999"]}]})

    with pytest.raises(ConfigurationError) as exc:
        Engine(settings).run(pb, dry_run=True)

    assert exc.value.ref == "0999"


def test_missing_script_during_real_run_is_a_configuration_failure(tmp_path, scripts_dir):
    settings = Settings(scripts_dir=scripts_dir, output_dir=tmp_path / "out", cache_dir=tmp_path / "cache")
    pb = load({"name": "x", "stages": [{"name": "s", "jobs": ["0001", "0999"]}]})

    result = Engine(settings).run(pb)

    records = _by_key(result)
    assert records["0001"].status is Status.SUCCEEDED
    assert records["0999"].status is Status.FAILED
    assert records["0999"].cause == "configuration"


def test_cycle_is_rejected_before_anything_runs(settings, executor_stub):
    pb = Playbook(
        name="cyc",
        stages=(Stage(name="s", jobs=(Job(id="A", depends_on=("B",)), Job(id="B", depends_on=("A",)))),),
    )

    with pytest.raises(SchedulingError):
        _engine(settings, executor_stub).run(pb)

    assert executor_stub.calls == []


def test_operator_variables_override_playbook_variables(settings, executor_stub):
    pb = Playbook(
        name="v",
        stages=(Stage(name="s", jobs=(Job(id="A"),)),),
        variables={"target": "lab", "verbose": False},
        success_criteria=SuccessCriteria(),
    )

    result = _engine(settings, executor_stub).run(pb, {"target": "prod"})

    assert effective_variables(pb, {"target": "prod"}) == {"target": "prod", "verbose": False}
    assert executor_stub.variables["A"] == {"target": "prod", "verbose": False}
    assert result.variables == {"target": "prod", "verbose": False}


@pytest.mark.parametrize("fail_fast, c_status", [(False, Status.SUCCEEDED), (True, Status.SKIPPED)])
def test_dependencies_inside_one_stage(settings, make_executor, fail_fast, c_status):
    stub = make_executor(exit_codes={"A": 1}, delay=0.05)
    pb = load(
        {
            "name": "diamond",
            "stages": [{"name": "all", "jobs": ["A", "B", {"id": "C", "dependsOn": ["A", "B"]}]}],
        }
    )
    engine = _engine(settings, stub)

    waves = engine.plan(pb)
    result = engine.run(pb, max_concurrency=2, fail_fast=fail_fast)

    assert [w.keys for w in waves] == [["A", "B"], ["C"]]
    assert stub.peak <= 2
    assert _by_key(result)["C"].status is c_status


def test_interrupted_run_is_cancelled_and_not_cached(settings, make_executor):
    stub = make_executor(errors={"A": KeyboardInterrupt()})
    engine = _engine(settings, stub)

    result = engine.run(_three_jobs(), use_cache=True)

    records = _by_key(result)
    assert result.cancelled
    assert records["C"].status is Status.SKIPPED
    assert "C" not in stub.calls
    assert result.failed_count == 0
    assert engine.cache.entries() == []


def test_operator_variables_must_be_scalars(settings, executor_stub):
    with pytest.raises(ConfigurationError) as exc:
        _engine(settings, executor_stub).run(_three_jobs(), {"x": {"a": 1}}, dry_run=True)

    assert exc.value.ref == "command line"
    assert executor_stub.calls == []
