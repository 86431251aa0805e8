"""Session snapshot persistence.

Snapshots live at SESSIONS_DIR/<session_id>/session.json and are written
atomically (temp file, then rename). Loading validates the snapshot
against its JSON Schema; a corrupt file raises SessionLoadError.

Saves from the conversation path go through PersistenceQueue: they run in
the background with retry and backoff, never block a turn, and leave a
warning for the session when every attempt fails.
"""

import json
import logging
import os
import re
import shutil
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from functools import partial
from pathlib import Path

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import (
    PERSIST_BACKOFF_MAX_SECONDS,
    PERSIST_MAX_ATTEMPTS,
    PERSIST_WORKERS,
    SESSIONS_DIR,
)
from execution.schema_validator import get_snapshot_validation_errors
from execution.session import SessionLoadError

logger = logging.getLogger(__name__)

_SESSION_ID = re.compile(r"^[A-Za-z0-9_-]+$")

PERSISTENCE_WARNING = "Your latest progress could not be saved. It is kept in memory for now."


def _check_id(session_id: str) -> str:
    if not isinstance(session_id, str) or not _SESSION_ID.match(session_id):
        raise ValueError(f"Invalid session id: {session_id!r}")
    return session_id


def _session_path(session_id: str) -> Path:
    """Return the path to a session's snapshot file."""
    return SESSIONS_DIR / _check_id(session_id) / "session.json"


def save(session_id: str, snapshot: dict) -> None:
    """Write a snapshot with atomic write (write to temp, then rename).

    Args:
        session_id: The session identifier.
        snapshot: Plain serializable snapshot dict.

    Raises:
        OSError: If the file cannot be written.
    """
    path = _session_path(session_id)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix="session_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, str(path))
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def load(session_id: str) -> dict | None:
    """Load and validate a snapshot.

    Args:
        session_id: The session identifier.

    Returns:
        The snapshot dict, or None if no snapshot exists.

    Raises:
        SessionLoadError: If the file is not valid JSON or fails schema
            validation.
    """
    path = _session_path(session_id)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            snapshot = json.load(f)
    except json.JSONDecodeError as e:
        raise SessionLoadError(f"Snapshot for '{session_id}' is not valid JSON: {e}") from e

    errors = get_snapshot_validation_errors(snapshot)
    if errors:
        raise SessionLoadError(f"Snapshot for '{session_id}' is invalid: {errors[0]}")
    return snapshot


def delete(session_id: str) -> bool:
    """Remove a session's snapshot directory. Returns True if it existed."""
    directory = _session_path(session_id).parent
    if not directory.exists():
        return False
    shutil.rmtree(directory)
    return True


def list_session_ids() -> list[str]:
    """Return ids of all sessions with a snapshot on disk."""
    if not SESSIONS_DIR.exists():
        return []
    return sorted(
        d.name for d in SESSIONS_DIR.iterdir()
        if d.is_dir() and (d / "session.json").exists()
    )


def save_with_retry(session_id: str, snapshot: dict) -> None:
    """Save a snapshot, retrying transient OS errors with exponential backoff.

    Raises:
        OSError: If every attempt fails.
    """
    retrying = Retrying(
        stop=stop_after_attempt(PERSIST_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.25, min=0, max=PERSIST_BACKOFF_MAX_SECONDS),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            save(session_id, snapshot)


class PersistenceQueue:
    """Best-effort background snapshot writer.

    Saves for one session are applied in submission order; a save that
    is older than one already written is dropped. Failures are logged and
    turned into a pending warning for that session.
    """

    def __init__(self, max_workers: int = PERSIST_WORKERS):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="persist")
        self._lock = threading.Lock()
        self._session_locks: dict[str, threading.Lock] = {}
        self._submitted: dict[str, int] = {}
        self._written: dict[str, int] = {}
        self._warnings: dict[str, list[str]] = {}
        self._pending: dict[str, set[Future]] = {}

    def submit(self, session_id: str, snapshot: dict) -> Future:
        """Queue a snapshot save and return immediately."""
        with self._lock:
            seq = self._submitted.get(session_id, 0) + 1
            self._submitted[session_id] = seq
            session_lock = self._session_locks.setdefault(session_id, threading.Lock())
        future = self._executor.submit(self._write, session_id, snapshot, seq, session_lock)
        with self._lock:
            self._pending.setdefault(session_id, set()).add(future)
        future.add_done_callback(partial(self._finished, session_id))
        return future

    def _write(self, session_id: str, snapshot: dict, seq: int, session_lock: threading.Lock) -> bool:
        try:
            with session_lock:
                if seq < self._written.get(session_id, 0):
                    return False
                save_with_retry(session_id, snapshot)
                self._written[session_id] = seq
                return True
        except (OSError, TypeError, ValueError) as e:
            logger.error("Saving session %s failed after retries: %s", session_id, e)
            with self._lock:
                self._warnings.setdefault(session_id, []).append(PERSISTENCE_WARNING)
            return False

    def _finished(self, session_id: str, future: Future) -> None:
        with self._lock:
            pending = self._pending.get(session_id)
            if pending is not None:
                pending.discard(future)
                if not pending:
                    del self._pending[session_id]

    def pop_warnings(self, session_id: str) -> list[str]:
        """Return and clear pending warnings for a session."""
        with self._lock:
            return self._warnings.pop(session_id, [])

    def flush(self, session_id: str | None = None, timeout: float | None = None) -> None:
        """Block until queued saves have finished.

        Args:
            session_id: Only wait for this session's saves. Waits for every
                session when omitted (tests and shutdown).
            timeout: Seconds to wait at most.
        """
        with self._lock:
            if session_id is None:
                pending = [f for futures in self._pending.values() for f in futures]
            else:
                pending = list(self._pending.get(session_id, ()))
        wait(pending, timeout=timeout)

    def forget(self, session_id: str) -> None:
        with self._lock:
            for table in (self._session_locks, self._submitted, self._written, self._warnings):
                table.pop(session_id, None)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
