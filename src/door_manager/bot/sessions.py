"""
In-memory store for chat conversations waiting on user input.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

PENDING_TTL_SECONDS = 5 * 60


@dataclass
class PendingInput:
    chat_id: int
    member_id: int
    action: str
    started_at: datetime


class PendingInputStore:
    """Pending input keyed by chat id.

    Entries expire lazily: an entry older than the TTL is discarded the next
    time it is looked up. Nothing is persisted across restarts.
    """

    def __init__(
        self,
        ttl_seconds: int = PENDING_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or self._now
        self._pending: Dict[int, PendingInput] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def begin(self, chat_id: int, member_id: int, action: str) -> PendingInput:
        entry = PendingInput(
            chat_id=chat_id,
            member_id=member_id,
            action=action,
            started_at=self._clock(),
        )
        async with self._lock:
            self._pending[chat_id] = entry
        return entry

    async def get(self, chat_id: int) -> Optional[PendingInput]:
        async with self._lock:
            entry = self._pending.get(chat_id)
            if not entry:
                return None
            if self._clock() - entry.started_at > self._ttl:
                self._pending.pop(chat_id, None)
                return None
            return entry

    async def clear(self, chat_id: int) -> None:
        async with self._lock:
            self._pending.pop(chat_id, None)

    def __len__(self) -> int:
        return len(self._pending)
