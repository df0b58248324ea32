"""Tests for day pass and permanent slot allocation."""

from datetime import datetime

import pytest

from door_manager.core.slots import PermanentSlotAllocator, SlotAllocator, first_free_slot
from door_manager.db.database import get_session_context
from door_manager.db.models import DayCode, DayPass, DayPassMember


def test_first_free_slot_returns_lowest_gap():
    assert first_free_slot([], 125, 249) == 125
    assert first_free_slot([125, 126, 128], 125, 249) == 127
    assert first_free_slot({126}, 125, 127) == 125


def test_first_free_slot_none_when_full():
    assert first_free_slot(range(125, 128), 125, 127) is None


async def _add_codes(slots: dict[int, bool]) -> None:
    """Create one code per slot; the value says whether it is active."""
    async with get_session_context() as session:
        member = DayPassMember(name="Slot Holder")
        day_pass = DayPass(member=member, allowed_uses=10, used_count=0)
        session.add_all([member, day_pass])
        await session.flush()
        for slot, active in slots.items():
            session.add(DayCode(
                day_pass_id=day_pass.id,
                member_id=member.id,
                code="12345",
                pin_slot=slot,
                expires_at=datetime(2026, 10, 18, 9, 0),
                is_active=active,
            ))


async def test_find_available_slot_on_empty_range():
    allocator = SlotAllocator(125, 249)
    async with get_session_context() as session:
        assert await allocator.find_available_slot(session) == 125


async def test_find_available_slot_skips_active_and_reuses_inactive():
    await _add_codes({125: True, 126: False, 127: True})
    allocator = SlotAllocator(125, 249)
    async with get_session_context() as session:
        assert await allocator.find_available_slot(session) == 126
        assert await allocator.is_slot_available(session, 126)
        assert not await allocator.is_slot_available(session, 125)
        assert not await allocator.is_slot_available(session, 127)
        assert await allocator.available_slot_count(session) == 123


async def test_find_available_slot_returns_none_when_full():
    await _add_codes({125: True, 126: True, 127: True})
    allocator = SlotAllocator(125, 127)
    async with get_session_context() as session:
        assert await allocator.find_available_slot(session) is None
        assert await allocator.available_slot_count(session) == 0


@pytest.mark.parametrize("slot", [0, 124, 250, 1000])
async def test_out_of_range_slot_is_never_available(slot):
    allocator = SlotAllocator(125, 249)
    async with get_session_context() as session:
        assert not await allocator.is_slot_available(session, slot)


async def test_availability_matches_active_codes_for_every_slot():
    held = {130: True, 131: True, 140: False}
    await _add_codes(held)
    allocator = SlotAllocator(125, 145)
    async with get_session_context() as session:
        for slot in range(125, 146):
            expected = not held.get(slot, False)
            assert await allocator.is_slot_available(session, slot) is expected


def test_permanent_range_excludes_day_pass_slots():
    allocator = PermanentSlotAllocator(250, 125, 249)
    assert allocator.in_range(1)
    assert allocator.in_range(124)
    assert not allocator.in_range(0)
    assert not allocator.in_range(125)
    assert not allocator.in_range(249)
    assert not allocator.in_range(250)
