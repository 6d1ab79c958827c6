from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional, Set, Tuple

Key = Tuple[int, int]  # (chat_id, user_id)


class MemberRegistry:
    """Users currently cleared per chat.

    A user listed here for a chat is not challenged again while listed. The
    entry is consumed when the deadline fires or the user leaves the chat.
    """

    def __init__(self) -> None:
        self._passed: Dict[int, Set[int]] = {}

    def add(self, chat_id: int, user_id: int) -> None:
        self._passed.setdefault(chat_id, set()).add(user_id)

    def contains(self, chat_id: int, user_id: int) -> bool:
        return user_id in self._passed.get(chat_id, ())

    def discard(self, chat_id: int, user_id: int) -> bool:
        users = self._passed.get(chat_id)
        if not users or user_id not in users:
            return False
        users.discard(user_id)
        if not users:
            del self._passed[chat_id]
        return True

    def count(self) -> int:
        return sum(len(u) for u in self._passed.values())


@dataclass
class PendingChallenge:
    chat_id: int
    user_id: int
    message_id: Optional[int] = None
    deadline: Optional[asyncio.Task] = None
    created_at: float = field(default_factory=time.time)

    @property
    def key(self) -> Key:
        return (self.chat_id, self.user_id)

    def cancel_deadline(self) -> None:
        task = self.deadline
        self.deadline = None
        cancel_task(task)


def cancel_task(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    # never cancel the task we are running in (expiry cleans up after itself)
    if task is asyncio.current_task():
        return
    task.cancel()


class PendingTable:
    """Outstanding challenges keyed by (chat_id, user_id); at most one per key."""

    def __init__(self) -> None:
        self._items: Dict[Key, PendingChallenge] = {}

    def get(self, chat_id: int, user_id: int) -> Optional[PendingChallenge]:
        return self._items.get((chat_id, user_id))

    def __len__(self) -> int:
        return len(self._items)

    def add(self, pc: PendingChallenge) -> None:
        if pc.key in self._items:
            raise KeyError(f"challenge already pending for chat={pc.chat_id} uid={pc.user_id}")
        self._items[pc.key] = pc

    def pop(self, chat_id: int, user_id: int, *, keep_deadline: bool = False) -> Optional[PendingChallenge]:
        """Remove the entry. Its deadline task is cancelled unless keep_deadline is set."""
        pc = self._items.pop((chat_id, user_id), None)
        if pc is not None and not keep_deadline:
            pc.cancel_deadline()
        return pc

    def clear(self) -> int:
        n = 0
        for key in list(self._items):
            self.pop(*key)
            n += 1
        return n


class KeyedLocks:
    """One asyncio.Lock per (chat_id, user_id), dropped once nobody uses it."""

    def __init__(self) -> None:
        self._locks: Dict[Key, asyncio.Lock] = {}
        self._users: Dict[Key, int] = {}

    @asynccontextmanager
    async def hold(self, chat_id: int, user_id: int) -> AsyncIterator[None]:
        key = (chat_id, user_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
