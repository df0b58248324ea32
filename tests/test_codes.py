"""Tests for code generation and the 3 AM expiry rule."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from door_manager.core.codes import (
    calculate_day_code_expiry,
    generate_day_code,
    generate_pin_code,
    to_local,
    to_storage,
    validate_pin_code,
)
from door_manager.core.errors import ValidationError

DENVER = ZoneInfo("America/Denver")


def local(*args) -> datetime:
    return datetime(*args, tzinfo=DENVER)


def test_expiry_before_cutoff_is_same_day():
    expiry = calculate_day_code_expiry(local(2026, 10, 17, 2, 59), DENVER)
    assert expiry == local(2026, 10, 17, 3, 0)


def test_expiry_exactly_at_cutoff_is_next_day():
    expiry = calculate_day_code_expiry(local(2026, 10, 17, 3, 0), DENVER)
    assert expiry == local(2026, 10, 18, 3, 0)


def test_expiry_in_afternoon_is_next_day():
    expiry = calculate_day_code_expiry(local(2026, 10, 17, 14, 0), DENVER)
    assert expiry == local(2026, 10, 18, 3, 0)


def test_expiry_just_before_midnight():
    expiry = calculate_day_code_expiry(local(2026, 10, 17, 23, 59, 59), DENVER)
    assert expiry == local(2026, 10, 18, 3, 0)


def test_naive_now_is_treated_as_utc():
    # 08:30 UTC is 02:30 MDT
    expiry = calculate_day_code_expiry(datetime(2026, 10, 17, 8, 30), DENVER)
    assert expiry == local(2026, 10, 17, 3, 0)
    assert to_storage(expiry) == datetime(2026, 10, 17, 9, 0)


def test_expiry_across_dst_change_uses_standard_time_offset():
    # Evening before the November fall-back: expiry lands on MST (UTC-7)
    expiry = calculate_day_code_expiry(local(2026, 10, 31, 22, 0), DENVER)
    assert expiry == local(2026, 11, 1, 3, 0)
    assert to_storage(expiry) == datetime(2026, 11, 1, 10, 0)


def test_custom_expiry_hour():
    expiry = calculate_day_code_expiry(local(2026, 10, 17, 4, 0), DENVER, expiry_hour=5)
    assert expiry == local(2026, 10, 17, 5, 0)


def test_to_local_round_trips_storage():
    stored = datetime(2026, 10, 18, 9, 0)
    assert to_local(stored, DENVER) == local(2026, 10, 18, 3, 0)
    assert to_local(stored, DENVER).astimezone(timezone.utc).hour == 9


def test_day_code_is_five_digits():
    for _ in range(200):
        code = generate_day_code()
        assert len(code) == 5
        assert code.isdigit()
        assert 10000 <= int(code) <= 99999


def test_pin_code_is_six_digits():
    code = generate_pin_code()
    assert len(code) == 6 and code.isdigit()


@pytest.mark.parametrize("code", ["1234", " 5678 ", "1234567890"])
def test_validate_pin_code_accepts(code):
    assert validate_pin_code(code) == code.strip()


@pytest.mark.parametrize("code", [None, "", "123", "12345678901", "12a4", "-1234"])
def test_validate_pin_code_rejects(code):
    with pytest.raises(ValidationError) as exc_info:
        validate_pin_code(code)
    assert exc_info.value.code == "INVALID_FORMAT"
