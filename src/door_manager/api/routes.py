"""API routes for the door manager admin console."""

from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from door_manager.api.auth import require_admin
from door_manager.config import MemberType
from door_manager.core.errors import (
    DoorManagerError,
    GatewayError,
    GatewayTimeoutError,
    NoValidPassError,
    NotFoundError,
    SlotsExhaustedError,
    SlotTakenError,
    ValidationError,
    WrongMemberClassError,
)
from door_manager.core.manager import DoorManager

router = APIRouter(dependencies=[Depends(require_admin)])

# Dependency to get the manager instance
_manager: Optional[DoorManager] = None


def get_manager() -> DoorManager:
    if _manager is None:
        raise HTTPException(status_code=500, detail="Manager not initialized")
    return _manager


def set_manager(manager: Optional[DoorManager]) -> None:
    global _manager
    _manager = manager


def _status_for(error: DoorManagerError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (WrongMemberClassError, NoValidPassError, SlotTakenError)):
        return 409
    if isinstance(error, SlotsExhaustedError):
        return 503
    if isinstance(error, GatewayTimeoutError):
        return 504
    if isinstance(error, GatewayError):
        return 502
    return 500


def _http_error(error: DoorManagerError) -> HTTPException:
    return HTTPException(
        status_code=_status_for(error),
        detail={"error": error.code, "message": error.message},
    )


# Request/Response models


class MemberCreateRequest(BaseModel):
    name: str
    member_type: MemberType = MemberType.FULL
    pin_code: Optional[str] = None
    pin_code_slot: Optional[int] = None
    email: Optional[str] = None
    ethereum_address: Optional[str] = None
    nfc_key_address: Optional[str] = None
    telegram_username: Optional[str] = None


class MemberUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    ethereum_address: Optional[str] = None
    nfc_key_address: Optional[str] = None
    telegram_username: Optional[str] = None
    disabled: Optional[bool] = None
    pin_code: Optional[str] = None


class PinCodeRequest(BaseModel):
    code: str
    slot: Optional[int] = None


class DayPassRequest(BaseModel):
    allowed_uses: int = Field(default=1, ge=1)
    expires_at: Optional[datetime] = None


# Health and status endpoints


@router.get("/health")
async def health_check(manager: DoorManager = Depends(get_manager)):
    """Check the health of the gateway and the database."""
    return await manager.health_check()


@router.get("/slots")
async def slot_status(manager: DoorManager = Depends(get_manager)):
    """Day pass slot usage."""
    return await manager.get_slot_status()


# Member endpoints


@router.get("/members")
async def list_members(manager: DoorManager = Depends(get_manager)):
    """List all members."""
    return await manager.list_members()


@router.post("/members", status_code=201)
async def create_member(
    request: MemberCreateRequest,
    manager: DoorManager = Depends(get_manager),
):
    """Create a member. A full member's PIN is pushed to the door first."""
    try:
        return await manager.create_member(**request.model_dump())
    except DoorManagerError as e:
        raise _http_error(e)


@router.get("/members/next-slot")
async def next_permanent_slot(manager: DoorManager = Depends(get_manager)):
    """Suggest the lowest free permanent slot."""
    return {"slot": await manager.next_permanent_slot()}


@router.get("/members/by-nfc/{address}")
async def lookup_member_by_nfc(
    address: str,
    manager: DoorManager = Depends(get_manager),
):
    """Look up a member ID by NFC key address."""
    try:
        return {"member_id": await manager.lookup_member_by_nfc(address)}
    except DoorManagerError as e:
        raise _http_error(e)


@router.get("/members/{member_id}")
async def get_member(
    member_id: int,
    manager: DoorManager = Depends(get_manager),
):
    try:
        return await manager.get_member(member_id)
    except DoorManagerError as e:
        raise _http_error(e)


@router.patch("/members/{member_id}")
async def update_member(
    member_id: int,
    request: MemberUpdateRequest,
    manager: DoorManager = Depends(get_manager),
):
    """Update a member. A new PIN is pushed to the door once every field is valid."""
    fields = request.model_dump(exclude_unset=True)
    try:
        return await manager.update_member(member_id, **fields)
    except DoorManagerError as e:
        raise _http_error(e)


@router.delete("/members/{member_id}")
async def delete_member(
    member_id: int,
    manager: DoorManager = Depends(get_manager),
):
    """Remove a member, clearing their codes from the door."""
    try:
        return await manager.delete_member(member_id)
    except DoorManagerError as e:
        raise _http_error(e)


# Permanent code endpoints


@router.post("/members/{member_id}/pin")
async def set_permanent_code(
    member_id: int,
    request: PinCodeRequest,
    manager: DoorManager = Depends(get_manager),
):
    """Set or reset a full member's PIN."""
    try:
        result = await manager.set_permanent_code(member_id, request.code, request.slot)
    except DoorManagerError as e:
        raise _http_error(e)
    return {"member_id": result.member_id, "slot": result.slot}


@router.delete("/members/{member_id}/pin")
async def clear_permanent_code(
    member_id: int,
    manager: DoorManager = Depends(get_manager),
):
    """Remove a full member's PIN from the door, keeping the slot."""
    try:
        return await manager.clear_permanent_code(member_id)
    except DoorManagerError as e:
        raise _http_error(e)


@router.post("/members/{member_id}/pin/resend")
async def resend_permanent_code(
    member_id: int,
    manager: DoorManager = Depends(get_manager),
):
    """Re-send a full member's stored PIN to the door."""
    try:
        return await manager.resend_permanent_code(member_id)
    except DoorManagerError as e:
        raise _http_error(e)


# Day pass endpoints


@router.get("/members/{member_id}/passes")
async def list_day_passes(
    member_id: int,
    manager: DoorManager = Depends(get_manager),
):
    return await manager.list_day_passes(member_id)


@router.post("/members/{member_id}/passes", status_code=201)
async def add_day_pass(
    member_id: int,
    request: DayPassRequest,
    manager: DoorManager = Depends(get_manager),
):
    """Give a day pass member a new pass."""
    try:
        return await manager.add_day_pass(member_id, request.allowed_uses, request.expires_at)
    except DoorManagerError as e:
        raise _http_error(e)


@router.delete("/passes/{pass_id}")
async def delete_day_pass(
    pass_id: int,
    manager: DoorManager = Depends(get_manager),
):
    """Delete a pass after clearing its active codes from the door."""
    try:
        return await manager.delete_day_pass(pass_id)
    except DoorManagerError as e:
        raise _http_error(e)


# Day code endpoints


@router.post("/members/{member_id}/day-code")
async def issue_day_code(
    member_id: int,
    manager: DoorManager = Depends(get_manager),
):
    """Issue a day code, or return the member's active one."""
    try:
        issued = await manager.issue_day_code(member_id)
    except DoorManagerError as e:
        raise _http_error(e)
    result = asdict(issued)
    result["expires_at"] = issued.expires_at.isoformat()
    return result


@router.get("/codes")
async def list_codes(
    active: bool = Query(True, description="Only active codes"),
    manager: DoorManager = Depends(get_manager),
):
    return await manager.list_codes(active_only=active)


@router.post("/codes/sweep")
async def sweep_expired(manager: DoorManager = Depends(get_manager)):
    """Expire every code past its expiry now."""
    return asdict(await manager.expire_sweep())


@router.post("/codes/{code_id}/revoke")
async def revoke_code(
    code_id: int,
    manager: DoorManager = Depends(get_manager),
):
    """Revoke a day code. Revoking an inactive code is a no-op."""
    try:
        revoked = await manager.revoke_code(code_id)
    except DoorManagerError as e:
        raise _http_error(e)
    return {"code_id": code_id, "revoked": revoked}
