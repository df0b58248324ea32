"""Shared fixtures: a temporary database, a fake lock gateway and a fixed clock."""

import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

_TEST_DIR = Path(tempfile.mkdtemp(prefix="door_manager_tests_"))
os.environ["DOOR_DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR / 'test.db'}"
os.environ["DOOR_TIMEZONE"] = "America/Denver"
os.environ["DOOR_BASIC_AUTH_USER"] = "admin"
os.environ["DOOR_BASIC_AUTH_PASS"] = "password"
os.environ["DOOR_TELEGRAM_BOT_TOKEN"] = ""

import pytest  # noqa: E402

from door_manager.config import Settings  # noqa: E402
from door_manager.core.errors import GatewayError  # noqa: E402
from door_manager.core.manager import DoorManager  # noqa: E402
from door_manager.db.database import drop_db, engine, init_db  # noqa: E402


class FakeGateway:
    """In-memory stand-in for the Home Assistant lock scripts."""

    def __init__(self):
        self.codes: dict[int, str] = {}
        self.calls: list[tuple] = []
        self.fail_set = False
        self.fail_clear_slots: set[int] = set()
        self.healthy = True

    async def set_user_code(self, slot: int, code: str) -> None:
        self.calls.append(("set", slot, code))
        if self.fail_set:
            raise GatewayError("Lock gateway returned 500 for set_user_code")
        self.codes[slot] = code

    async def clear_user_code(self, slot: int) -> None:
        self.calls.append(("clear", slot))
        if slot in self.fail_clear_slots:
            raise GatewayError("Lock gateway returned 500 for clear_user_code")
        self.codes.pop(slot, None)

    def cleared_slots(self) -> list[int]:
        return [call[1] for call in self.calls if call[0] == "clear"]

    async def health_check(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        pass


class Clock:
    """Settable clock returning naive UTC datetimes."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = {
        "ha_url": "http://ha.local/api",
        "ha_token": "token",
        "timezone": "America/Denver",
        "day_pass_slot_min": 125,
        "day_pass_slot_max": 249,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
async def database():
    await init_db()
    yield
    await drop_db()
    await engine.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> Clock:
    # 2026-10-17 14:00 in Denver (MDT, UTC-6)
    return Clock(datetime(2026, 10, 17, 20, 0))


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def manager(settings, gateway, clock) -> DoorManager:
    return DoorManager(settings, ha_client=gateway, clock=clock)


@pytest.fixture
def make_member(manager):
    async def _make(name: str = "Dana", member_type: str = "daypass", **fields) -> dict:
        return await manager.create_member(name=name, member_type=member_type, **fields)

    return _make


@pytest.fixture
def make_daypass_member(manager, make_member):
    async def _make(
        name: str = "Dana",
        allowed_uses: int = 2,
        expires_at: Optional[datetime] = None,
        **fields,
    ) -> tuple[dict, dict]:
        member = await make_member(name=name, member_type="daypass", **fields)
        day_pass = await manager.add_day_pass(member["id"], allowed_uses, expires_at)
        return member, day_pass

    return _make
