import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List

from ..errors import InternalError


class KeyedLock:
    """Per-key exclusive sections.

    Unrelated keys never contend. Keys are acquired in sorted order so two
    callers locking overlapping key sets cannot deadlock. Entries are
    reference counted and dropped once no caller holds or waits on them.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _release(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Hold the exclusive section of every given key."""
        ordered = sorted(set(keys))
        acquired: List[str] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                if not lock.acquire(timeout=self.timeout):
                    self._release(key)
                    raise InternalError(
                        f"Timed out waiting for lock on '{key}'",
                        details={"key": key, "timeout": self.timeout},
                    )
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                with self._guard:
                    lock = self._locks[key][0]
                lock.release()
                self._release(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
