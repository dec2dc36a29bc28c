"""
Purpose: Per-request serialization.
What it does:
Hands out one lock per key (e.g. "ride_<id>") so every accept, reject,
cancel and expiry on the same request runs one at a time, while different
requests proceed in parallel. Entries are reference counted and dropped as
soon as nobody holds or waits on them.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class RequestLockManager:
    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._mutex:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _LockEntry()
            entry.users += 1

        try:
            with entry.lock:
                yield
        finally:
            with self._mutex:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._mutex:
            return len(self._entries)
