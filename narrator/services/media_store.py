from __future__ import annotations

import shutil
from pathlib import Path
from urllib.parse import unquote, urlparse

from narrator.errors import DependencyError, ServiceRequestError
from narrator.services.http import request_bytes

SERVICE_NAME = "media-store"


class LocalMediaStore:
    """Fetches media from local paths, `file://` URLs, HTTP(S) URLs or a mounted bucket root.

    Object-store locations (`s3://bucket/key`, `gs://bucket/key`) resolve to
    `<bucket_root>/<bucket>/<key>` so a synced or mounted bucket can be used
    without a cloud SDK.
    """

    def __init__(self, *, bucket_root: Path | None = None, timeout_seconds: float = 120.0) -> None:
        self.bucket_root = bucket_root
        self.timeout_seconds = timeout_seconds

    def fetch(self, location: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        parsed = urlparse(location)

        if parsed.scheme in {"http", "https"}:
            destination.write_bytes(
                request_bytes(location, service=SERVICE_NAME, method="GET", timeout_seconds=self.timeout_seconds)
            )
            return destination

        source = self._resolve_path(location)
        if not source.is_file():
            raise ServiceRequestError(f"Media file not found: {source}", service=SERVICE_NAME)
        try:
            shutil.copyfile(source, destination)
        except OSError as exc:
            raise DependencyError(f"Could not copy media from {source}: {exc}", service=SERVICE_NAME) from exc
        return destination

    def _resolve_path(self, location: str) -> Path:
        parsed = urlparse(location)
        if parsed.scheme == "file":
            return Path(unquote(parsed.path))
        if parsed.scheme in {"s3", "gs"}:
            if self.bucket_root is None:
                raise ServiceRequestError(
                    f"No bucket root configured for {parsed.scheme}:// locations.",
                    service=SERVICE_NAME,
                )
            return self.bucket_root / parsed.netloc / parsed.path.lstrip("/")
        return Path(location).expanduser()
