"""Run-status snapshot file: locked, atomic JSON writes keyed by bot id.

The snapshot is advisory (UI display only). Writers merge their own row into
the shared document under an inter-process lock so several bot processes can
share one file.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator

try:  # pragma: no cover - platform specific
    import msvcrt
except ImportError:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except ImportError:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

import config

logger = logging.getLogger(__name__)

E_STATUS_LOCKED = "E_STATUS_LOCKED"

_TRANSIENT_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}
_REPLACE_RETRIES = 8
_REPLACE_BASE_DELAY = 0.03


class StatusFileLockError(RuntimeError):
    """Raised when the snapshot lock cannot be acquired in time."""

    code = E_STATUS_LOCKED


def _try_lock(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
            return
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc


def _unlock(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def status_file_lock(path: str, *, timeout_seconds: float = 2.0, poll_seconds: float = 0.05) -> Iterator[None]:
    """Hold ``<path>.lock`` exclusively for the duration of the block."""
    lock_path = f"{path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    deadline = time.monotonic() + max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))

    handle = open(lock_path, "a+b")
    locked = False
    try:
        handle.seek(0, os.SEEK_END)
        if handle.tell() == 0:
            handle.write(b"0")
            handle.flush()
        handle.seek(0)
        while True:
            try:
                _try_lock(handle)
                locked = True
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StatusFileLockError(f"{E_STATUS_LOCKED}: lock timeout path={path}") from exc
                time.sleep(poll)
        yield
    finally:
        if locked:
            _unlock(handle)
        handle.close()


def atomic_write_json(path: str, payload: Any) -> None:
    """Write JSON via a temp file in the same directory, then ``os.replace``."""
    target_dir = os.path.dirname(path) or "."
    os.makedirs(target_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f"{os.path.basename(path)}.", suffix=".tmp", dir=target_dir, text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        for attempt in range(_REPLACE_RETRIES + 1):
            try:
                os.replace(tmp_path, path)
                break
            except OSError as exc:
                if exc.errno not in _TRANSIENT_REPLACE_ERRNOS or attempt >= _REPLACE_RETRIES:
                    raise
                time.sleep(_REPLACE_BASE_DELAY * (1.5**attempt))
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _read(path: str) -> dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8-sig") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError:
            logger.warning("STATUS_FILE_CORRUPT path=%s; starting fresh", path)
            return {}
    return data if isinstance(data, dict) else {}


class StatusSnapshotWriter:
    """Merges per-bot rows into the shared snapshot file."""

    def __init__(self, path: str | None = None, *, timeout_seconds: float = 2.0) -> None:
        self.path = str(path or getattr(config, "STATUS_SNAPSHOT_FILE", "")).strip()
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.path)

    def update(self, bot_id: str, row: dict[str, Any]) -> None:
        if not self.enabled:
            return
        with self._lock, status_file_lock(self.path, timeout_seconds=self.timeout_seconds):
            data = _read(self.path)
            data[str(bot_id)] = row
            atomic_write_json(self.path, data)

    def remove(self, bot_id: str) -> None:
        if not self.enabled:
            return
        with self._lock, status_file_lock(self.path, timeout_seconds=self.timeout_seconds):
            data = _read(self.path)
            if data.pop(str(bot_id), None) is not None:
                atomic_write_json(self.path, data)

    def read(self) -> dict[str, Any]:
        if not self.enabled:
            return {}
        with status_file_lock(self.path, timeout_seconds=self.timeout_seconds):
            return _read(self.path)
