"""Errors raised by door manager operations.

Every error carries a stable ``code`` so the HTTP API and the chat bot can
report it without parsing messages. None of them are fatal to the process.
"""

from typing import Optional


class DoorManagerError(Exception):
    """Base class for all door manager errors."""

    code = "ERROR"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(DoorManagerError):
    """Malformed input, rejected before any remote call."""

    code = "INVALID_FORMAT"


class SlotOutOfRangeError(ValidationError):
    code = "SLOT_OUT_OF_RANGE"


class NotFoundError(DoorManagerError):
    code = "NOT_FOUND"


class NotRegisteredError(NotFoundError):
    code = "NOT_REGISTERED"


class WrongMemberClassError(DoorManagerError):
    code = "WRONG_MEMBER_CLASS"


class NoValidPassError(DoorManagerError):
    code = "NO_VALID_PASS"


class SlotsExhaustedError(DoorManagerError):
    """Every day pass slot holds an active code. Try again later."""

    code = "SLOTS_EXHAUSTED"


class SlotTakenError(DoorManagerError):
    """Another issuance claimed the slot first. Safe to re-allocate."""

    code = "SLOT_TAKEN"


class GatewayError(DoorManagerError):
    """The lock gateway call failed. Local state was left unchanged."""

    code = "GATEWAY_ERROR"


class GatewayTimeoutError(GatewayError):
    code = "GATEWAY_TIMEOUT"
