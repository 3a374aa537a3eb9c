"""Persistent coordination state for issue orchestration.

The whole coordination document lives in one JSON file. Every mutation is a
read-modify-write cycle; ``CoordinationStore.transaction`` wraps that cycle in
the configured lock so overlapping invocations cannot lose each other's writes.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import threading
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from .data_types import CoordinationState, LockStrategy
from .utils import logs_root, utc_now_iso

logger = logging.getLogger(__name__)

STATE_FILENAME = "coordination-state.json"
LOCK_SUFFIX = ".lock"


def state_path(root: Path | None = None) -> Path:
    """Path to the coordination state file."""

    return (root or logs_root()) / STATE_FILENAME


class PersistenceError(OSError):
    """Raised internally when the state file cannot be read or written."""


class NullLock:
    """No locking; the single-process convention is the only protection."""

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        yield


class ThreadLock:
    """Serialises transactions within one process."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        with self._lock:
            yield


class FileLock:
    """Advisory ``flock`` on a sibling lock file, shared across processes.

    Re-entrant within one thread so nested transactions do not deadlock.
    """

    def __init__(self, lock_file: Path) -> None:
        self.lock_file = lock_file
        self._local = threading.local()
        self._thread_lock = threading.Lock()

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return

        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file.touch(exist_ok=True)
        with self._thread_lock, self.lock_file.open("r+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            self._local.depth = 1
            try:
                yield
            finally:
                self._local.depth = 0
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def make_lock(strategy: LockStrategy | str, path: Path) -> NullLock | ThreadLock | FileLock:
    strategy = LockStrategy(strategy)
    if strategy == LockStrategy.FILE:
        return FileLock(path.with_name(path.name + LOCK_SUFFIX))
    if strategy == LockStrategy.THREAD:
        return ThreadLock()
    return NullLock()


class CoordinationStore:
    """JSON-backed load/save for ``CoordinationState``.

    Disk failures are logged and remembered in ``last_error`` rather than
    raised; a failed load starts from an empty document.
    """

    def __init__(
        self,
        path: Path | None = None,
        lock: NullLock | ThreadLock | FileLock | None = None,
    ) -> None:
        self.path = path or state_path()
        self.lock = lock if lock is not None else make_lock(LockStrategy.FILE, self.path)
        self.last_error: Optional[str] = None
        self._depth = 0
        self._current: Optional[CoordinationState] = None

    def initialize(self) -> CoordinationState:
        """Write an empty document if none exists yet."""

        if self.path.exists():
            return self.load()
        state = CoordinationState(last_update=utc_now_iso())
        self.save(state)
        return state

    def _read(self) -> CoordinationState:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return CoordinationState(last_update=utc_now_iso())
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Unable to read coordination state at {self.path}: {exc}") from exc
        try:
            return CoordinationState.model_validate(data)
        except ValidationError as exc:
            raise PersistenceError(f"Coordination state at {self.path} is malformed: {exc}") from exc

    def load(self) -> CoordinationState:
        try:
            return self._read()
        except PersistenceError as exc:
            logger.error(f"Error loading coordination state: {exc}")
            self.last_error = str(exc)
            state = CoordinationState(last_update=utc_now_iso())
            self.save(state)
            return state

    def save(self, state: CoordinationState) -> bool:
        state.last_update = utc_now_iso()
        payload = state.model_dump(mode="json", by_alias=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            tmp_path.replace(self.path)
        except OSError as exc:
            logger.error(f"Error saving coordination state: {exc}")
            self.last_error = f"Unable to write coordination state at {self.path}: {exc}"
            return False
        return True

    @contextlib.contextmanager
    def transaction(self) -> Iterator[CoordinationState]:
        """Hold the lock across load → mutate → save.

        Nested transactions share the outer document and only the outermost
        one writes it back.
        """
        with self.lock.hold():
            if self._depth:
                self._depth += 1
                try:
                    yield self._current  # type: ignore[misc]
                finally:
                    self._depth -= 1
                return

            self._current = self.load()
            self._depth = 1
            try:
                yield self._current
                self.save(self._current)
            finally:
                self._depth = 0
                self._current = None


__all__ = [
    "CoordinationStore",
    "FileLock",
    "LOCK_SUFFIX",
    "NullLock",
    "PersistenceError",
    "STATE_FILENAME",
    "ThreadLock",
    "make_lock",
    "state_path",
]
