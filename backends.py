# backends.py: where snapshots live: process memory, a local JSON file, or a remote blob URL
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import requests

from errors import FlushError, HydrationError

logger = logging.getLogger(__name__)


class SnapshotBackend(ABC):
    """
    Stores one opaque snapshot blob at a fixed location.
    `get_latest_blob` returns None when nothing was ever written; any other
    failure raises HydrationError. `put_blob` overwrites or raises FlushError.
    """
    name = "abstract"

    @abstractmethod
    def get_latest_blob(self) -> Optional[str]:
        ...

    @abstractmethod
    def put_blob(self, blob: str) -> None:
        ...

    def describe(self) -> str:
        return self.name


# -------------------------
# Memory (tests, throwaway instances)
# -------------------------
class MemoryBackend(SnapshotBackend):
    name = "memory"

    def __init__(self, blob: Optional[str] = None):
        self.blob = blob
        self.writes = 0
        self._lock = threading.Lock()

    def get_latest_blob(self) -> Optional[str]:
        with self._lock:
            return self.blob

    def put_blob(self, blob: str) -> None:
        with self._lock:
            self.blob = blob
            self.writes += 1


# -------------------------
# Local file
# -------------------------
class FileBackend(SnapshotBackend):
    name = "file"

    def __init__(self, path):
        self.path = Path(path)

    def describe(self) -> str:
        return f"file:{self.path}"

    def get_latest_blob(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            return self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise HydrationError(f"Cannot read snapshot {self.path}: {e}") from e

    def put_blob(self, blob: str) -> None:
        # Write to a sibling temp file and rename so readers never see half a snapshot
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(blob)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise FlushError(f"Cannot write snapshot {self.path}: {e}") from e


# -------------------------
# Remote blob over HTTP (GET latest / PUT overwrite)
# -------------------------
class HttpBlobBackend(SnapshotBackend):
    name = "http"

    def __init__(self, url: str, token: str = "", timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers: Dict[str, str] = {}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    def describe(self) -> str:
        return f"http:{self.url}"

    def get_latest_blob(self) -> Optional[str]:
        try:
            resp = self.session.get(self.url, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise HydrationError(f"GET {self.url} failed: {e}") from e

        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise HydrationError(f"GET {self.url} returned {resp.status_code}: {resp.text[:300]}")
        return resp.text

    def put_blob(self, blob: str) -> None:
        headers = dict(self.headers, **{"Content-Type": "application/json"})
        try:
            resp = self.session.put(
                self.url, data=blob.encode("utf-8"), headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise FlushError(f"PUT {self.url} failed: {e}") from e

        if resp.status_code not in (200, 201, 204):
            raise FlushError(f"PUT {self.url} returned {resp.status_code}: {resp.text[:300]}")


def build_backend(settings) -> SnapshotBackend:
    """Picks the backend named by settings.snapshot_backend."""
    if settings.snapshot_backend == "http":
        return HttpBlobBackend(
            settings.snapshot_url, token=settings.snapshot_token, timeout=settings.http_timeout
        )
    if settings.snapshot_backend == "memory":
        logger.warning("⚠️ Using in-memory snapshots: data is lost when the process exits")
        return MemoryBackend()
    return FileBackend(settings.snapshot_path)
