from __future__ import annotations

from pathlib import Path

import pytest

from narrator.errors import JobNotFound
from narrator.store import InMemoryJobStore, JsonFileJobStore, deep_merge


def test_deep_merge_merges_nested_dicts_without_mutating_input() -> None:
    base = {"status": "processing", "stage_errors": {"extracting": [1]}, "progress": 10}
    merged = deep_merge(base, {"stage_errors": {"analyzing": [2]}, "progress": 50})

    assert merged == {"status": "processing", "stage_errors": {"extracting": [1], "analyzing": [2]}, "progress": 50}
    assert base["stage_errors"] == {"extracting": [1]}


@pytest.mark.parametrize("factory", [lambda tmp: InMemoryJobStore(), lambda tmp: JsonFileJobStore(tmp / "jobs")])
def test_store_round_trip_and_merge(tmp_path: Path, factory) -> None:
    store = factory(tmp_path)
    store.put("job1", {"id": "job1", "status": "pending", "progress": 0.0})

    merged = store.merge("job1", {"status": "processing", "progress": 30.0})

    assert merged["status"] == "processing"
    assert store.get("job1") == {"id": "job1", "status": "processing", "progress": 30.0}
    assert store.list_ids() == ["job1"]

    store.delete("job1")
    assert store.get("job1") is None
    with pytest.raises(JobNotFound):
        store.merge("job1", {"status": "failed"})


def test_in_memory_store_returns_copies() -> None:
    store = InMemoryJobStore()
    store.put("job1", {"options": {"voice_id": "Amy"}})

    store.get("job1")["options"]["voice_id"] = "Brian"

    assert store.get("job1") == {"options": {"voice_id": "Amy"}}


def test_json_store_rejects_unsafe_job_ids(tmp_path: Path) -> None:
    store = JsonFileJobStore(tmp_path / "jobs")

    with pytest.raises(JobNotFound):
        store.get("../escape")


def test_json_store_leaves_no_temp_files(tmp_path: Path) -> None:
    store = JsonFileJobStore(tmp_path / "jobs")
    store.put("job1", {"status": "pending"})
    store.merge("job1", {"status": "processing"})

    assert sorted(path.name for path in (tmp_path / "jobs").iterdir()) == ["job1.json"]
