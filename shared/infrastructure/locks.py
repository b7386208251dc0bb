"""
Keyed in-process locks

Serializes work on the same key (for example an item id) inside one
process while letting unrelated keys proceed in parallel. Cross-process
exclusion is provided by row locks in the datastore; this lock only stops
threads of the same worker from racing each other before they reach it.
"""

from contextlib import contextmanager
from typing import Dict, Hashable, Iterator
import logging
import threading

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """
    Lock registry keyed by arbitrary hashable values

    Entries are reference counted and dropped once no thread holds or waits
    for them, so the registry does not grow with the number of keys seen.

    Usage:
        locks = KeyedLock()
        with locks.hold(('item', item_id)):
            ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
