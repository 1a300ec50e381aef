import json
import threading

import pytest

from retrovault.pipeline.manifest import DuplicateEntryError, ManifestError, ManifestStore
from retrovault.pipeline.storage import KeyedLocks, atomic_write_json, read_json
from retrovault.pipeline.types import ManifestEntry


def make_entry(hash_value, platform="nes", filename=None):
    return ManifestEntry(
        id=f"rom-{hash_value}",
        filename=filename or f"{hash_value}.nes",
        platform=platform,
        hash=hash_value,
        size=32,
        extension=".nes",
        archived_at="2024-01-01T00:00:00+00:00",
    )


@pytest.mark.unit
def test_append_preserves_archival_order(tmp_path):
    store = ManifestStore(tmp_path)

    assert store.append(make_entry("bbb")) == 1
    assert store.append(make_entry("aaa")) == 2

    data = json.loads((tmp_path / "nes.json").read_text())
    assert [item["hash"] for item in data] == ["bbb", "aaa"]
    assert data[0]["archivedAt"] == "2024-01-01T00:00:00+00:00"
    assert [e.hash for e in store.entries("nes")] == ["bbb", "aaa"]


@pytest.mark.unit
def test_duplicate_hash_is_rejected_and_not_appended(tmp_path):
    store = ManifestStore(tmp_path)
    store.append(make_entry("abc"))

    with pytest.raises(DuplicateEntryError, match="already in manifest"):
        store.append(make_entry("abc", filename="other.nes"))

    assert len(store.entries("nes")) == 1


@pytest.mark.unit
def test_same_hash_allowed_on_other_platform(tmp_path):
    store = ManifestStore(tmp_path)
    store.append(make_entry("abc", platform="nes"))
    store.append(make_entry("abc", platform="gba"))

    assert store.contains("abc", "nes")
    assert store.contains("abc", "gba")
    assert store.platforms() == ["gba", "nes"]


@pytest.mark.unit
def test_contains_sees_every_committed_append(tmp_path):
    store = ManifestStore(tmp_path)
    assert store.contains("abc", "nes") is False

    store.append(make_entry("abc"))

    assert store.contains("abc", "nes") is True
    assert store.contains("abc") is True
    assert store.contains("abc", "snes") is False


@pytest.mark.unit
def test_index_reloads_after_external_write(tmp_path):
    store = ManifestStore(tmp_path)
    store.append(make_entry("abc"))
    assert store.contains("zzz", "nes") is False

    # Another process appends to the same manifest
    other = ManifestStore(tmp_path)
    other.append(make_entry("zzz", filename="z-longer-name.nes"))

    assert store.contains("zzz", "nes") is True


@pytest.mark.unit
def test_malformed_manifest_raises(tmp_path):
    (tmp_path / "nes.json").write_text('{"not": "an array"}')
    store = ManifestStore(tmp_path)

    with pytest.raises(ManifestError):
        store.contains("abc", "nes")

    (tmp_path / "nes.json").write_text("[broken")
    with pytest.raises(ManifestError):
        store.append(make_entry("abc"))


@pytest.mark.unit
def test_concurrent_appends_serialize(tmp_path):
    store = ManifestStore(tmp_path)
    errors = []

    def worker(n):
        try:
            store.append(make_entry(f"hash{n:03d}"))
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    hashes = [e.hash for e in store.entries("nes")]
    assert sorted(hashes) == [f"hash{n:03d}" for n in range(20)]


@pytest.mark.unit
def test_keyed_locks_release_on_error():
    locks = KeyedLocks()

    with pytest.raises(RuntimeError):
        with locks.hold("nes"):
            raise RuntimeError("boom")

    assert locks.get("nes").acquire(blocking=False)
    locks.get("nes").release()
    assert locks.get("nes") is locks.get("nes")
    assert locks.get("nes") is not locks.get("snes")


@pytest.mark.unit
def test_atomic_write_leaves_no_temp_files(tmp_path):
    target = tmp_path / "nested" / "data.json"

    atomic_write_json(target, [1, 2, 3])

    assert read_json(target, None) == [1, 2, 3]
    assert [p.name for p in target.parent.iterdir()] == ["data.json"]
    assert read_json(tmp_path / "missing.json", "default") == "default"
