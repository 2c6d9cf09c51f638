from __future__ import annotations

import copy
import json
import os
import re
from pathlib import Path
from typing import Any, Protocol

from narrator.errors import JobNotFound


class JobStore(Protocol):
    def put(self, job_id: str, record: dict[str, Any]) -> None: ...

    def get(self, job_id: str) -> dict[str, Any] | None: ...

    def merge(self, job_id: str, partial: dict[str, Any]) -> dict[str, Any]: ...

    def list_ids(self) -> list[str]: ...

    def delete(self, job_id: str) -> None: ...


def deep_merge(base: dict[str, Any], partial: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in partial.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class InMemoryJobStore:
    """Process-local store, suitable for tests and single-run CLI use."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    def put(self, job_id: str, record: dict[str, Any]) -> None:
        self._records[job_id] = copy.deepcopy(record)

    def get(self, job_id: str) -> dict[str, Any] | None:
        record = self._records.get(job_id)
        return copy.deepcopy(record) if record is not None else None

    def merge(self, job_id: str, partial: dict[str, Any]) -> dict[str, Any]:
        if job_id not in self._records:
            raise JobNotFound(job_id)
        self._records[job_id] = deep_merge(self._records[job_id], partial)
        return copy.deepcopy(self._records[job_id])

    def list_ids(self) -> list[str]:
        return sorted(self._records)

    def delete(self, job_id: str) -> None:
        self._records.pop(job_id, None)


class JsonFileJobStore:
    """One JSON document per job under `root`, replaced atomically on write."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def put(self, job_id: str, record: dict[str, Any]) -> None:
        path = self._path(job_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(record, indent=2, sort_keys=True, default=str), encoding="utf-8")
        os.replace(tmp_path, path)

    def get(self, job_id: str) -> dict[str, Any] | None:
        path = self._path(job_id)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def merge(self, job_id: str, partial: dict[str, Any]) -> dict[str, Any]:
        current = self.get(job_id)
        if current is None:
            raise JobNotFound(job_id)
        merged = deep_merge(current, partial)
        self.put(job_id, merged)
        return merged

    def list_ids(self) -> list[str]:
        return sorted(path.stem for path in self.root.glob("*.json"))

    def delete(self, job_id: str) -> None:
        self._path(job_id).unlink(missing_ok=True)

    def _path(self, job_id: str) -> Path:
        if not re.fullmatch(r"[A-Za-z0-9_-]+", job_id):
            raise JobNotFound(job_id)
        return self.root / f"{job_id}.json"
