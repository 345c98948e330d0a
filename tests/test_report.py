import json
from datetime import datetime, timedelta, timezone

from playrun.matrix import expand
from playrun.model import ExecutionRecord, Job, JobInstance, RunResult, Status, SuccessCriteria
from playrun.report import render


def _run(records, **extra):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return RunResult.from_records("nightly", start, start + timedelta(seconds=12.5), records, **extra)


def _records():
    build = expand(Job(id="0402", matrix={"os": ["linux", "windows"]}))
    return [
        ExecutionRecord(instance=build[0], status=Status.SUCCEEDED, exit_code=0),
        ExecutionRecord(instance=build[1], status=Status.FAILED, exit_code=3, cause="execution",
                        message="exited with code 3", output_ref="/out/0402_os__windows_"),
        ExecutionRecord(instance=JobInstance(Job(id="0500")), status=Status.FAILED, cause="configuration",
                        message="no script matches id '0500'"),
        ExecutionRecord(instance=JobInstance(Job(id="0600")), status=Status.SKIPPED),
        ExecutionRecord(instance=JobInstance(Job(id="0700")), status=Status.CACHED, exit_code=0, cache_hit=True),
    ]


def test_totals_and_rate():
    report = render(_run(_records(), overall_success=False))

    assert report.status == "FAILURE"
    assert report.totals == {"total": 5, "completed": 2, "failed": 2, "skipped": 1, "cached": 1}
    assert report.success_rate == 50
    assert report.duration == 12.5


def test_failures_split_by_cause():
    report = render(_run(_records()))

    assert [f.key for f in report.failures] == ['0402[os="windows"]']
    assert report.failures[0].exit_code == 3
    assert report.failures[0].combination == {"os": "windows"}
    assert [f.job_id for f in report.configuration_failures] == ["0500"]


def test_allowed_failures_are_marked():
    report = render(_run(_records()), SuccessCriteria(allowed_failures=("0402",)))

    assert report.failures[0].allowed
    assert '0402[os="windows"] (allowed)' in report.render_text()


def test_matrix_breakdown_only_lists_matrixed_jobs():
    report = render(_run(_records(), variables={"target": "lab"}))

    assert report.matrix == {"0402": [{"os": "linux"}, {"os": "windows"}]}
    text = report.render_text()
    assert "0402: 2 combination(s)" in text
    assert "target = 'lab'" in text


def test_dry_run_status():
    records = [ExecutionRecord(instance=JobInstance(Job(id="A")))]
    assert render(_run(records, dry_run=True, overall_success=True)).status == "DRY RUN"


def test_markdown_and_dict_outputs():
    report = render(_run(_records(), fingerprint="f" * 64, cancelled=True))

    md = report.render_markdown()
    assert md.startswith("# Run summary: nightly")
    assert "(cancelled)" in md
    assert "| 5 | 2 | 2 | 1 | 1 | 50.0% |" in md
    assert "| 0500 | - | configuration | - |" in md

    data = json.loads(json.dumps(report.to_dict()))
    assert data["totals"]["failed"] == 2
    assert data["failures"][0]["output_ref"] == "/out/0402_os__windows_"
    assert data["cancelled"] is True


def test_success_rate_matches_the_verdict_with_allowed_failures():
    records = [
        ExecutionRecord(instance=JobInstance(Job(id="A")), status=Status.SUCCEEDED, exit_code=0),
        ExecutionRecord(instance=JobInstance(Job(id="B")), status=Status.FAILED, exit_code=1, cause="execution"),
    ]
    criteria = SuccessCriteria(minimum_success_percent=100, allowed_failures=("B",))

    report = render(_run(records, overall_success=True, criteria=criteria))

    assert report.success_rate == 100
    assert report.totals["failed"] == 1
    assert report.failures[0].allowed
