from datetime import datetime, timezone

import pytest

from playrun.cache import CacheStore, compute_fingerprint
from playrun.matrix import expand
from playrun.model import ExecutionRecord, Job, Status


def _instances(vars_=None):
    return expand(Job(id="0001")) + expand(Job(id="0402", matrix={"py": ["3.10", "3.11"]}, variables=vars_ or {}))


def _records(instances, output_root=None):
    now = datetime.now(timezone.utc)
    out = []
    for inst in instances:
        ref = None
        if output_root is not None:
            d = output_root / inst.slug
            d.mkdir(parents=True)
            (d / "stdout.log").write_text(f"ran {inst.key}\n", encoding="utf-8")
            ref = str(d)
        out.append(ExecutionRecord(instance=inst, status=Status.SUCCEEDED, exit_code=0,
                                   started_at=now, ended_at=now, output_ref=ref))
    return out


def test_fingerprint_is_deterministic_and_order_independent():
    a, _ = compute_fingerprint(_instances(), {"b": 2, "a": 1})
    b, _ = compute_fingerprint(list(reversed(_instances())), {"a": 1, "b": 2})
    assert a == b
    assert len(a) == 64


def test_changing_any_variable_changes_the_fingerprint():
    base, _ = compute_fingerprint(_instances(), {"target": "lab"})
    run_var, _ = compute_fingerprint(_instances(), {"target": "prod"})
    job_var, _ = compute_fingerprint(_instances({"mode": "full"}), {"target": "lab"})

    assert len({base, run_var, job_var}) == 3


def test_changing_the_instance_set_changes_the_fingerprint():
    a, _ = compute_fingerprint(_instances(), {})
    b, _ = compute_fingerprint(expand(Job(id="0001")), {})
    assert a != b


def test_store_then_lookup_replays_records_as_cached(tmp_path):
    store = CacheStore(tmp_path / "cache", engine_version="test")
    instances = _instances()
    key, inputs = compute_fingerprint(instances, {})
    store.store(key, _records(instances, tmp_path / "out"), inputs=inputs)

    hit = store.lookup(key, instances, restore_dir=tmp_path / "restored")

    assert hit.hit
    assert [r.instance.key for r in hit.records] == [i.key for i in instances]
    assert all(r.status is Status.CACHED and r.cache_hit and r.exit_code == 0 for r in hit.records)
    restored = tmp_path / "restored" / instances[0].slug / "stdout.log"
    assert restored.read_text(encoding="utf-8") == f"ran {instances[0].key}\n"
    assert hit.records[0].output_ref == str(tmp_path / "restored" / instances[0].slug)
    assert hit.metadata["engine_version"] == "test"
    assert (tmp_path / "cache" / "metadata" / f"{key}.json").exists()


def test_lookup_miss_when_nothing_stored(tmp_path):
    hit = CacheStore(tmp_path).lookup("deadbeef", _instances())
    assert not hit.hit
    assert hit.reason == "cache miss"


def test_corrupt_results_degrade_to_a_miss(tmp_path):
    store = CacheStore(tmp_path)
    instances = _instances()
    key, _ = compute_fingerprint(instances, {})
    store.results_path(key).write_text("{not json", encoding="utf-8")

    hit = store.lookup(key, instances)

    assert not hit.hit
    assert "unreadable" in hit.reason


def test_mismatched_instance_set_degrades_to_a_miss(tmp_path):
    store = CacheStore(tmp_path)
    instances = _instances()
    key, _ = compute_fingerprint(instances, {})
    store.store(key, _records(instances))

    assert not store.lookup(key, instances[:1]).hit


def test_prune_keeps_newest_entries(tmp_path):
    store = CacheStore(tmp_path)
    for n in range(4):
        instances = expand(Job(id=f"{n:04d}"))
        key, inputs = compute_fingerprint(instances, {})
        store.store(key, _records(instances), inputs=inputs)

    removed = store.prune(keep=2)

    assert removed == 2
    assert len(store.entries()) == 2


def test_clear_removes_everything(tmp_path):
    store = CacheStore(tmp_path / "c")
    instances = _instances()
    key, _ = compute_fingerprint(instances, {})
    store.store(key, _records(instances))

    store.clear()

    assert not store.lookup(key, instances).hit


def test_prune_rejects_negative_keep(tmp_path):
    store = CacheStore(tmp_path)
    instances = _instances()
    key, _ = compute_fingerprint(instances, {})
    store.store(key, _records(instances))

    with pytest.raises(ValueError):
        store.prune(keep=-1)
    assert len(store.entries()) == 1
