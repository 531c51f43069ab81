"""Concurrency primitives shared by the engine.

A repository is always single-writer: every mutating entry point takes the
per-repository lock returned by :func:`repository_lock`. Long operations
accept a :class:`CancellationToken` and check it only at safe points.
"""

import threading
import weakref
from concurrent.futures import Future
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from notesync.exceptions import OperationCancelledError

# Uses WeakValueDictionary so locks are garbage collected once no handle,
# engine or index holds them any more.
_repo_locks: "weakref.WeakValueDictionary[str, threading.RLock]" = (
    weakref.WeakValueDictionary()
)
_repo_locks_lock = threading.Lock()


def _root_key(repo_path: Union[str, Path]) -> str:
    return str(Path(repo_path).resolve())


def repository_lock(repo_path: Union[str, Path]) -> threading.RLock:
    """Get or create the mutual-exclusion token for a repository root.

    Every caller asking for the same resolved root gets the same reentrant
    lock, so the handle, sync engine and index of one repository serialize
    against each other.
    """
    key = _root_key(repo_path)
    with _repo_locks_lock:
        lock = _repo_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _repo_locks[key] = lock
        return lock


class CancellationToken:
    """Cooperative cancellation flag for a single operation."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str, stage: Optional[str] = None) -> None:
        """Raise OperationCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelledError(operation, stage)



class InFlightRegistry:
    """The one running background cycle for each repository root.

    Callers on the same resolved root, whichever ``StorageManager`` they
    come through, share a single ``Future`` while a cycle is running.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._flights: Dict[str, Tuple[Future, CancellationToken]] = {}

    def claim(
        self, repo_path: Union[str, Path], token: CancellationToken
    ) -> Tuple[Future, CancellationToken, bool]:
        """Join the running cycle for ``repo_path`` or register a new one.

        Returns:
            ``(future, token, owner)``. ``owner`` is True when the caller
            must run the cycle and resolve ``future``.
        """
        key = _root_key(repo_path)
        with self._lock:
            flight = self._flights.get(key)
            if flight is not None and not flight[0].done():
                return flight[0], flight[1], False
            future: Future = Future()
            self._flights[key] = (future, token)
            return future, token, True

    def release(self, repo_path: Union[str, Path], future: Future) -> None:
        key = _root_key(repo_path)
        with self._lock:
            flight = self._flights.get(key)
            if flight is not None and flight[0] is future:
                del self._flights[key]

    def running(self, repo_path: Union[str, Path]) -> Optional[Future]:
        with self._lock:
            flight = self._flights.get(_root_key(repo_path))
            if flight is None or flight[0].done():
                return None
            return flight[0]


background_flights = InFlightRegistry()


def check_cancelled(
    token: Optional[CancellationToken], operation: str, stage: Optional[str] = None
) -> None:
    """Checkpoint helper that accepts a missing token."""
    if token is not None:
        token.raise_if_cancelled(operation, stage)
