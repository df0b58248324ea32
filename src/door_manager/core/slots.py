"""Slot allocation for day codes and permanent PINs."""

from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from door_manager.db.models import DayCode, FullMember


def first_free_slot(used: Iterable[int], min_slot: int, max_slot: int) -> Optional[int]:
    """Return the lowest slot in [min_slot, max_slot] not in ``used``, or None."""
    used_slots = set(used)
    for slot in range(min_slot, max_slot + 1):
        if slot not in used_slots:
            return slot
    return None


class SlotAllocator:
    """Finds free day pass slots by scanning active codes for gaps.

    A slot is held while an active DayCode references it. Released slots are
    immediately eligible again and low numbers are reused first.
    """

    def __init__(self, min_slot: int, max_slot: int):
        self.min_slot = min_slot
        self.max_slot = max_slot

    @property
    def total_slots(self) -> int:
        return self.max_slot - self.min_slot + 1

    def in_range(self, slot: int) -> bool:
        return self.min_slot <= slot <= self.max_slot

    async def _used_slots(self, session: AsyncSession) -> set[int]:
        result = await session.execute(
            select(DayCode.pin_slot).where(DayCode.is_active.is_(True))
        )
        return set(result.scalars().all())

    async def find_available_slot(self, session: AsyncSession) -> Optional[int]:
        """Find the next available slot.

        Returns:
            The lowest free slot, or None if every slot holds an active code
        """
        used = await self._used_slots(session)
        return first_free_slot(used, self.min_slot, self.max_slot)

    async def is_slot_available(self, session: AsyncSession, slot: int) -> bool:
        """Check whether a specific slot is in range and not held by an active code."""
        if not self.in_range(slot):
            return False
        result = await session.execute(
            select(DayCode.id)
            .where(DayCode.pin_slot == slot, DayCode.is_active.is_(True))
            .limit(1)
        )
        return result.scalar_one_or_none() is None

    async def available_slot_count(self, session: AsyncSession) -> int:
        """Count free slots in the range."""
        result = await session.execute(
            select(func.count(DayCode.id)).where(
                DayCode.is_active.is_(True),
                DayCode.pin_slot >= self.min_slot,
                DayCode.pin_slot <= self.max_slot,
            )
        )
        return self.total_slots - (result.scalar_one() or 0)


class PermanentSlotAllocator:
    """Permanent PIN slots: 1 up to the ceiling, excluding the day pass range."""

    def __init__(self, ceiling: int, day_min: int, day_max: int):
        self.ceiling = ceiling
        self.day_min = day_min
        self.day_max = day_max

    def in_range(self, slot: int) -> bool:
        if slot < 1 or slot >= self.ceiling:
            return False
        return not (self.day_min <= slot <= self.day_max)

    async def find_available_slot(self, session: AsyncSession) -> Optional[int]:
        result = await session.execute(
            select(FullMember.pin_code_slot).where(FullMember.pin_code_slot.is_not(None))
        )
        used = set(result.scalars().all())
        for slot in range(1, self.ceiling):
            if self.in_range(slot) and slot not in used:
                return slot
        return None
