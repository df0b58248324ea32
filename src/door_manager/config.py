"""Configuration for the door manager."""

import re
from enum import Enum
from zoneinfo import ZoneInfo

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MemberType(str, Enum):
    """Access class of a member."""

    FULL = "full"
    DAYPASS = "daypass"


# Permanent (full member) slots must be strictly below this value.
PERMANENT_SLOT_CEILING = 250

# Code formats
PIN_CODE_PATTERN = re.compile(r"^\d{4,10}$")
CHAT_PIN_PATTERN = re.compile(r"^\d{4,6}$")
ETHEREUM_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
TELEGRAM_USERNAME_PATTERN = re.compile(r"^@[a-zA-Z0-9_]{5,32}$")

# Home Assistant scripts that program the keypad
SET_CODE_SCRIPT = "script.set_user_code"
CLEAR_CODE_SCRIPT = "script.clear_user_code"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DOOR_",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./door_manager.db"

    # Home Assistant connection
    ha_url: str = ""
    ha_token: str = ""
    gateway_timeout_seconds: float = 10.0

    # Day pass slots (inclusive range)
    day_pass_slot_min: int = 125
    day_pass_slot_max: int = 249

    # Day codes expire at this local hour
    timezone: str = "America/Denver"
    expiry_hour: int = 3

    # How often the catch-up sweep checks for missed expirations
    catchup_interval_minutes: int = 5

    # Telegram bot (disabled when the token is empty)
    telegram_bot_token: str = ""
    telegram_poll_timeout: int = 30
    pending_input_ttl_seconds: int = 300

    # Admin API basic auth
    basic_auth_user: str = "admin"
    basic_auth_pass: str = "password"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False

    @field_validator("expiry_hour")
    @classmethod
    def _check_expiry_hour(cls, value: int) -> int:
        if not 0 <= value <= 23:
            raise ValueError("expiry_hour must be between 0 and 23")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        ZoneInfo(value)  # raises for unknown zones
        return value

    @model_validator(mode="after")
    def _check_slot_range(self) -> "Settings":
        if self.day_pass_slot_min < 1 or self.day_pass_slot_min > self.day_pass_slot_max:
            raise ValueError(
                f"Invalid day pass slot range {self.day_pass_slot_min}-{self.day_pass_slot_max}"
            )
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# Global settings instance
settings = Settings()
