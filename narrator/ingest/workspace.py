from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from pathlib import Path
from typing import Callable, Collection
from uuid import uuid4

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "narrator-"


class JobWorkspace:
    """Scratch directory owned by a single job; removed when the job ends."""

    def __init__(self, root: Path) -> None:
        self.root = root

    @classmethod
    def create(cls, base_dir: str | Path, job_id: str) -> JobWorkspace:
        base = Path(base_dir).expanduser().resolve()
        base.mkdir(parents=True, exist_ok=True)
        safe_job_id = re.sub(r"[^A-Za-z0-9_-]", "_", job_id)[:64] or "job"
        root = base / f"{WORKSPACE_PREFIX}{safe_job_id}-{uuid4().hex[:8]}"
        root.mkdir()
        logger.debug("Created workspace %s", root)
        return cls(root)

    def path_for(self, name: str) -> Path:
        return self.root / name

    def release(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def cleanup(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)
            logger.debug("Removed workspace %s", self.root)

    def __enter__(self) -> JobWorkspace:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.cleanup()


def sweep_orphaned_workspaces(
    base_dir: str | Path,
    max_age_seconds: float,
    *,
    exclude: Collection[Path] = (),
    now: float | None = None,
) -> list[Path]:
    """Delete job workspaces older than `max_age_seconds` left behind by crashed runs."""

    base = Path(base_dir).expanduser().resolve()
    if not base.is_dir():
        return []

    current_time = time.time() if now is None else now
    protected = {Path(path).resolve() for path in exclude}
    removed: list[Path] = []

    for entry in sorted(base.iterdir()):
        if not entry.is_dir() or not entry.name.startswith(WORKSPACE_PREFIX):
            continue
        if entry.resolve() in protected:
            continue
        age = current_time - entry.stat().st_mtime
        if age < max_age_seconds:
            continue
        shutil.rmtree(entry, ignore_errors=True)
        removed.append(entry)

    if removed:
        logger.info("Swept %d orphaned workspace(s) under %s", len(removed), base)
    return removed


class WorkspaceSweeper:
    """Background task that periodically runs `sweep_orphaned_workspaces`."""

    def __init__(
        self,
        base_dir: str | Path,
        *,
        max_age_seconds: float,
        interval_seconds: float,
        active_workspaces: Callable[[], Collection[Path]] = lambda: (),
    ) -> None:
        self.base_dir = Path(base_dir)
        self.max_age_seconds = max_age_seconds
        self.interval_seconds = interval_seconds
        self._active_workspaces = active_workspaces
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="workspace-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def sweep_once(self) -> list[Path]:
        return sweep_orphaned_workspaces(
            self.base_dir,
            self.max_age_seconds,
            exclude=self._active_workspaces(),
        )

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.sweep_once)
            except OSError as exc:
                logger.warning("Workspace sweep failed: %s", exc)
            await asyncio.sleep(self.interval_seconds)
