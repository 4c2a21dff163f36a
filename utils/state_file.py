"""Locked, atomic JSON state files."""

from __future__ import annotations

import errno
import json
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

try:  # pragma: no cover - platform specific
    import msvcrt
except Exception:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except Exception:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

E_STATE_LOCKED = "E_STATE_LOCKED"
E_JSON_CORRUPT = "E_JSON_CORRUPT"
E_STATE_IO = "E_STATE_IO"
E_STATE_MISSING = "E_STATE_MISSING"

_TRANSIENT_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}
_REPLACE_RETRIES = 5
_REPLACE_BASE_DELAY_SECONDS = 0.03


class StateFileLockError(RuntimeError):
    """Raised when the state-file lock cannot be acquired in time."""

    code = E_STATE_LOCKED


@dataclass
class StateRead:
    """Outcome of reading one state document; `error` is one of the E_* codes."""

    data: Any = None
    error: str = ""
    detail: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


def _lock_handle(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc


def _unlock_handle(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    """Hold an inter-process lock on `<target_path>.lock` for the block."""

    lock_path = f"{target_path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    deadline = time.monotonic() + max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))

    with open(lock_path, "a+b") as handle:
        # msvcrt locks byte ranges, so the file needs at least one byte.
        handle.seek(0, os.SEEK_END)
        if handle.tell() == 0:
            handle.write(b"0")
            handle.flush()
        while True:
            try:
                _lock_handle(handle)
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(f"{E_STATE_LOCKED}: state lock timeout path={target_path}") from exc
                time.sleep(poll)
        try:
            yield
        finally:
            try:
                _unlock_handle(handle)
            except OSError:
                pass


def atomic_write_json(path: str, payload: Any, *, indent: int = 2, sort_keys: bool = False) -> None:
    """Write JSON via a temp file in the same directory, then replace."""

    state_dir = os.path.dirname(path) or "."
    os.makedirs(state_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f"{os.path.basename(path)}.", suffix=".tmp", dir=state_dir, text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=indent, sort_keys=sort_keys)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError:
                pass
        for attempt in range(_REPLACE_RETRIES + 1):
            try:
                os.replace(tmp_path, path)
                break
            except OSError as exc:
                # Windows readers briefly hold the target open.
                if exc.errno not in _TRANSIENT_REPLACE_ERRNOS or attempt >= _REPLACE_RETRIES:
                    raise
                time.sleep(_REPLACE_BASE_DELAY_SECONDS * (1.5**attempt))
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def write_json_atomic_locked(path: str, payload: Any, *, timeout_seconds: float = 2.0, poll_seconds: float = 0.05) -> None:
    with state_file_lock(path, timeout_seconds=timeout_seconds, poll_seconds=poll_seconds):
        atomic_write_json(path, payload)


def read_json_locked(path: str, *, timeout_seconds: float = 2.0, poll_seconds: float = 0.05) -> StateRead:
    """Read one JSON document under its lock, classifying failures instead of raising."""

    if not os.path.exists(path):
        return StateRead(error=E_STATE_MISSING, detail=path)
    try:
        with state_file_lock(path, timeout_seconds=timeout_seconds, poll_seconds=poll_seconds):
            with open(path, "r", encoding="utf-8-sig") as f:
                return StateRead(data=json.load(f))
    except StateFileLockError as exc:
        return StateRead(error=E_STATE_LOCKED, detail=str(exc))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        return StateRead(error=E_JSON_CORRUPT, detail=str(exc))
    except OSError as exc:
        return StateRead(error=E_STATE_IO, detail=str(exc))
