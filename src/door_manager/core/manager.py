"""Door manager: day code lifecycle, permanent PINs and membership records."""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from door_manager.config import (
    ETHEREUM_ADDRESS_PATTERN,
    PERMANENT_SLOT_CEILING,
    TELEGRAM_USERNAME_PATTERN,
    MemberType,
    Settings,
)
from door_manager.core.codes import (
    calculate_day_code_expiry,
    generate_day_code,
    to_local,
    to_storage,
    validate_pin_code,
)
from door_manager.core.errors import (
    GatewayError,
    NoValidPassError,
    NotFoundError,
    NotRegisteredError,
    SlotOutOfRangeError,
    SlotsExhaustedError,
    SlotTakenError,
    ValidationError,
    WrongMemberClassError,
)
from door_manager.core.slots import PermanentSlotAllocator, SlotAllocator
from door_manager.db.database import get_session_context
from door_manager.db.models import (
    AuditLog,
    DayCode,
    DayPass,
    DayPassMember,
    FullMember,
    Member,
    utcnow,
)
from door_manager.ha.client import HomeAssistantClient

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class IssuedCode:
    """A day code handed to a member."""

    code_id: int
    code: str
    slot: int
    expires_at: datetime  # local time
    remaining_uses: int
    is_new: bool = True


@dataclass
class SweepResult:
    """Outcome of an expiry sweep."""

    expired_count: int
    error_count: int


@dataclass
class PermanentCode:
    """A permanent PIN programmed for a full member."""

    member_id: int
    slot: int
    code: str


class DoorManager:
    """Coordinates the lock gateway, slot allocation and the database.

    Every operation that changes keypad state pushes to the gateway first and
    persists second, so a failed gateway call leaves the records untouched.
    """

    # Attempts at finding a free slot when a concurrent writer claims ours
    MAX_SLOT_ATTEMPTS = 3

    def __init__(
        self,
        settings: Settings,
        ha_client: Optional[HomeAssistantClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self._ha_client = ha_client or HomeAssistantClient(
            settings.ha_url,
            settings.ha_token,
            timeout=settings.gateway_timeout_seconds,
        )
        self._clock = clock or utcnow
        self._slot_allocator = SlotAllocator(
            settings.day_pass_slot_min, settings.day_pass_slot_max
        )
        self._permanent_slots = PermanentSlotAllocator(
            PERMANENT_SLOT_CEILING,
            settings.day_pass_slot_min,
            settings.day_pass_slot_max,
        )
        # Serializes every keypad change so allocation, push and persist
        # cannot interleave between two requests in this process
        self._gateway_lock = asyncio.Lock()

    @property
    def slot_allocator(self) -> SlotAllocator:
        return self._slot_allocator

    async def close(self) -> None:
        await self._ha_client.close()

    async def _audit(self, action: str, **fields) -> None:
        """Record an audit entry in its own session.

        Used for failures, whose main transaction is rolled back.
        """
        async with get_session_context() as session:
            session.add(AuditLog(action=action, **fields))

    # Day codes

    async def issue_day_code(self, member_id: int) -> IssuedCode:
        """Issue a day code for a day pass member.

        If the member already holds an active, unexpired code, that code is
        returned with ``is_new=False`` and nothing is debited.

        Raises:
            NotRegisteredError: Unknown or disabled member
            WrongMemberClassError: Member is not a day pass member
            NoValidPassError: No pass with remaining uses that has not expired
            SlotsExhaustedError: Every day pass slot is in use
            GatewayError: The keypad could not be programmed
        """
        async with self._gateway_lock:
            for attempt in range(1, self.MAX_SLOT_ATTEMPTS + 1):
                try:
                    return await self._issue_day_code(member_id)
                except SlotTakenError:
                    logger.warning(
                        "Slot claimed concurrently for member %d (attempt %d/%d)",
                        member_id, attempt, self.MAX_SLOT_ATTEMPTS,
                    )
            raise SlotTakenError("Could not claim a free slot, please try again")

    async def _issue_day_code(self, member_id: int) -> IssuedCode:
        now = self._clock()
        tz = self.settings.tz

        async with get_session_context() as session:
            member = await session.get(Member, member_id)
            if member is None or member.disabled:
                raise NotRegisteredError(f"Member {member_id} is not registered")
            if not isinstance(member, DayPassMember):
                raise WrongMemberClassError("Day codes are only for day pass members")

            existing = await self._find_active_code(session, member.id, now)
            if existing is not None:
                day_pass = await session.get(DayPass, existing.day_pass_id)
                return IssuedCode(
                    code_id=existing.id,
                    code=existing.code,
                    slot=existing.pin_slot,
                    expires_at=to_local(existing.expires_at, tz),
                    remaining_uses=day_pass.remaining_uses if day_pass else 0,
                    is_new=False,
                )

            day_pass = await self._select_valid_pass(session, member.id, now)
            if day_pass is None:
                raise NoValidPassError("No day passes remaining")

            slot = await self._slot_allocator.find_available_slot(session)
            if slot is None:
                raise SlotsExhaustedError("All door code slots are currently in use")

            code = generate_day_code()
            expires_at = calculate_day_code_expiry(now, tz, self.settings.expiry_hour)

            day_code = DayCode(
                day_pass_id=day_pass.id,
                member_id=member.id,
                code=code,
                pin_slot=slot,
                issued_at=now,
                expires_at=to_storage(expires_at),
                is_active=True,
            )
            session.add(day_code)
            try:
                # Claims the slot; the partial unique index rejects a second
                # active code on the same slot
                await session.flush()
            except IntegrityError as e:
                raise SlotTakenError(f"Slot {slot} was claimed by another code") from e

            try:
                await self._ha_client.set_user_code(slot, code)
            except GatewayError as e:
                logger.error("Failed to set day code on slot %d: %s", slot, e)
                await session.rollback()
                await self._audit(
                    "day_code_issued",
                    member_id=member_id,
                    slot_number=slot,
                    success=False,
                    error_message=str(e),
                )
                raise

            day_pass.used_count += 1
            session.add(AuditLog(
                action="day_code_issued",
                member_id=member.id,
                slot_number=slot,
                details=f"pass={day_pass.id} expires={expires_at.isoformat()}",
            ))

            try:
                await session.commit()
            except Exception:
                logger.error(
                    "Day code on slot %d was set but could not be saved, clearing it", slot
                )
                await self._clear_quietly(slot)
                raise

            logger.info(
                "Issued day code for member %d on slot %d (expires %s)",
                member.id, slot, expires_at.isoformat(),
            )
            return IssuedCode(
                code_id=day_code.id,
                code=code,
                slot=slot,
                expires_at=expires_at,
                remaining_uses=day_pass.remaining_uses,
            )

    async def _clear_quietly(self, slot: int) -> None:
        try:
            await self._ha_client.clear_user_code(slot)
        except GatewayError as e:
            logger.error("Failed to clear orphaned code on slot %d: %s", slot, e)

    @staticmethod
    async def _find_active_code(
        session: AsyncSession, member_id: int, now: datetime
    ) -> Optional[DayCode]:
        result = await session.execute(
            select(DayCode)
            .where(
                DayCode.member_id == member_id,
                DayCode.is_active.is_(True),
                DayCode.expires_at > now,
            )
            .order_by(DayCode.expires_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _select_valid_pass(
        session: AsyncSession, member_id: int, now: datetime
    ) -> Optional[DayPass]:
        """Pick the valid pass that expires soonest; passes without expiry go last."""
        result = await session.execute(
            select(DayPass)
            .where(
                DayPass.member_id == member_id,
                DayPass.used_count < DayPass.allowed_uses,
                (DayPass.expires_at.is_(None)) | (DayPass.expires_at >= now),
            )
            .order_by(DayPass.expires_at.is_(None), DayPass.expires_at, DayPass.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_expired(self) -> int:
        """Count active codes whose expiry has passed."""
        now = self._clock()
        async with get_session_context() as session:
            result = await session.execute(
                select(func.count(DayCode.id)).where(
                    DayCode.is_active.is_(True),
                    DayCode.expires_at <= now,
                )
            )
            return result.scalar_one() or 0

    async def expire_sweep(self) -> SweepResult:
        """Clear and deactivate every active code past its expiry.

        A code whose clear fails stays active and is picked up by the next
        sweep. Running the sweep twice in a row finds nothing the second time.
        """
        now = self._clock()
        async with get_session_context() as session:
            result = await session.execute(
                select(DayCode.id)
                .where(DayCode.is_active.is_(True), DayCode.expires_at <= now)
                .order_by(DayCode.pin_slot)
            )
            code_ids = list(result.scalars().all())

        if not code_ids:
            logger.info("No expired codes found")
            return SweepResult(expired_count=0, error_count=0)

        logger.info("Found %d expired code(s) to revoke", len(code_ids))

        expired = 0
        errors = 0
        for code_id in code_ids:
            try:
                async with self._gateway_lock:
                    if await self._deactivate_code(
                        code_id, "day_code_expired", now, only_if_expired=True
                    ):
                        expired += 1
            except NotFoundError:
                continue
            except Exception as e:
                errors += 1
                logger.error(f"Failed to expire day code {code_id}: {e}")

        logger.info("Expiration complete. Expired: %d, Errors: %d", expired, errors)
        return SweepResult(expired_count=expired, error_count=errors)

    async def revoke_code(self, code_id: int) -> bool:
        """Revoke a day code before its expiry.

        Returns:
            True if the code was deactivated, False if it already was inactive

        Raises:
            NotFoundError: Unknown code
            GatewayError: The keypad could not be cleared; the code stays active
        """
        async with self._gateway_lock:
            return await self._deactivate_code(code_id, "day_code_revoked", self._clock())

    async def _deactivate_code(
        self,
        code_id: int,
        action: str,
        now: datetime,
        only_if_expired: bool = False,
    ) -> bool:
        """Clear a code from the keypad, then mark it inactive.

        Must be called with the gateway lock held.
        """
        async with get_session_context() as session:
            day_code = await session.get(DayCode, code_id)
            if day_code is None:
                raise NotFoundError(f"Day code {code_id} not found")
            if not day_code.is_active:
                return False
            if only_if_expired and day_code.expires_at > now:
                return False

            slot = day_code.pin_slot
            member_id = day_code.member_id
            try:
                await self._ha_client.clear_user_code(slot)
            except GatewayError as e:
                await self._audit(
                    action,
                    member_id=member_id,
                    slot_number=slot,
                    success=False,
                    error_message=str(e),
                )
                raise

            result = await session.execute(
                update(DayCode)
                .where(DayCode.id == code_id, DayCode.is_active.is_(True))
                .values(is_active=False, revoked_at=now)
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount != 1:
                return False

            session.add(AuditLog(
                action=action,
                member_id=member_id,
                slot_number=slot,
                details=f"code={code_id}",
            ))

        logger.info("Deactivated day code %d (slot %d, %s)", code_id, slot, action)
        return True

    async def list_codes(self, active_only: bool = True) -> list[dict]:
        """List day codes, newest first."""
        async with get_session_context() as session:
            query = select(DayCode).options(selectinload(DayCode.member))
            if active_only:
                query = query.where(DayCode.is_active.is_(True))
            result = await session.execute(query.order_by(DayCode.issued_at.desc()))
            return [self._code_info(code) for code in result.scalars().all()]

    def _code_info(self, day_code: DayCode) -> dict:
        tz = self.settings.tz
        return {
            "id": day_code.id,
            "member_id": day_code.member_id,
            "member_name": day_code.member.name if day_code.member else None,
            "day_pass_id": day_code.day_pass_id,
            "code": day_code.code,
            "slot": day_code.pin_slot,
            "issued_at": to_local(day_code.issued_at, tz).isoformat(),
            "expires_at": to_local(day_code.expires_at, tz).isoformat(),
            "revoked_at": (
                to_local(day_code.revoked_at, tz).isoformat() if day_code.revoked_at else None
            ),
            "is_active": day_code.is_active,
        }

    async def get_slot_status(self) -> dict:
        """Day pass slot usage."""
        async with get_session_context() as session:
            available = await self._slot_allocator.available_slot_count(session)
            next_slot = await self._slot_allocator.find_available_slot(session)
        return {
            "min_slot": self._slot_allocator.min_slot,
            "max_slot": self._slot_allocator.max_slot,
            "total": self._slot_allocator.total_slots,
            "available": available,
            "next_slot": next_slot,
        }

    # Day passes

    async def add_day_pass(
        self,
        member_id: int,
        allowed_uses: int = 1,
        expires_at: Optional[datetime] = None,
    ) -> dict:
        """Give a day pass member a new pass.

        A naive ``expires_at`` is local time at the door.
        """
        if allowed_uses < 1:
            raise ValidationError("A pass must allow at least one use")
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=self.settings.tz)

        async with get_session_context() as session:
            member = await session.get(Member, member_id)
            if member is None:
                raise NotFoundError(f"Member {member_id} not found")
            if not isinstance(member, DayPassMember):
                raise WrongMemberClassError("Passes are only for day pass members")

            day_pass = DayPass(
                member_id=member.id,
                allowed_uses=allowed_uses,
                used_count=0,
                expires_at=to_storage(expires_at) if expires_at else None,
            )
            session.add(day_pass)
            await session.flush()
            logger.info(
                "Added pass %d (%d uses) for member %d", day_pass.id, allowed_uses, member.id
            )
            return self._pass_info(day_pass)

    async def list_day_passes(self, member_id: int) -> list[dict]:
        async with get_session_context() as session:
            result = await session.execute(
                select(DayPass).where(DayPass.member_id == member_id).order_by(DayPass.id)
            )
            return [self._pass_info(p) for p in result.scalars().all()]

    def _pass_info(self, day_pass: DayPass) -> dict:
        now = self._clock()
        return {
            "id": day_pass.id,
            "member_id": day_pass.member_id,
            "allowed_uses": day_pass.allowed_uses,
            "used_count": day_pass.used_count,
            "remaining_uses": day_pass.remaining_uses,
            "expires_at": (
                to_local(day_pass.expires_at, self.settings.tz).isoformat()
                if day_pass.expires_at else None
            ),
            "is_valid": day_pass.is_valid(now),
        }

    async def delete_day_pass(self, pass_id: int) -> dict:
        """Delete a pass after clearing every active code issued against it.

        If any clear fails the pass is kept, so no active code is orphaned.
        """
        async with self._gateway_lock:
            async with get_session_context() as session:
                day_pass = await session.get(DayPass, pass_id)
                if day_pass is None:
                    raise NotFoundError(f"Day pass {pass_id} not found")
                result = await session.execute(
                    select(DayCode.id).where(
                        DayCode.day_pass_id == pass_id, DayCode.is_active.is_(True)
                    )
                )
                active_ids = list(result.scalars().all())

            now = self._clock()
            revoked = 0
            for code_id in active_ids:
                if await self._deactivate_code(code_id, "day_code_revoked", now):
                    revoked += 1

            async with get_session_context() as session:
                result = await session.execute(
                    select(DayPass)
                    .options(selectinload(DayPass.day_codes))
                    .where(DayPass.id == pass_id)
                )
                day_pass = result.scalar_one()
                member_id = day_pass.member_id
                await session.delete(day_pass)
                session.add(AuditLog(
                    action="day_pass_deleted",
                    member_id=member_id,
                    details=f"pass={pass_id} revoked_codes={revoked}",
                ))

        logger.info("Deleted pass %d (revoked %d active code(s))", pass_id, revoked)
        return {"pass_id": pass_id, "revoked_codes": revoked}

    # Permanent codes

    async def set_permanent_code(
        self, member_id: int, code: str, slot: Optional[int] = None
    ) -> PermanentCode:
        """Set or reset a full member's permanent PIN.

        Args:
            member_id: Member ID
            code: New PIN (4-10 digits)
            slot: New slot, defaults to the member's current slot

        Raises:
            ValidationError: Malformed PIN
            SlotOutOfRangeError: Slot missing or outside the permanent range
            GatewayError: The keypad could not be programmed; nothing was saved
        """
        code = validate_pin_code(code)

        async with self._gateway_lock:
            async with get_session_context() as session:
                member = await session.get(Member, member_id)
                if member is None:
                    raise NotRegisteredError(f"Member {member_id} is not registered")
                if not isinstance(member, FullMember):
                    raise WrongMemberClassError("Permanent codes are only for full members")

                target_slot = slot if slot is not None else member.pin_code_slot
                await self._check_permanent_slot(session, target_slot, member.id)

                old_slot = member.pin_code_slot if member.pin_code else None
                await self._program_permanent_code(member, target_slot, code)
                member.pin_code_slot = target_slot
                session.add(AuditLog(
                    action="pin_code_set", member_id=member.id, slot_number=target_slot
                ))

            # Only once the new slot is saved
            if old_slot is not None and old_slot != target_slot:
                await self._clear_quietly(old_slot)

        logger.info("Set permanent code for member %d on slot %d", member_id, target_slot)
        return PermanentCode(member_id=member_id, slot=target_slot, code=code)

    async def _program_permanent_code(
        self, member: FullMember, slot: int, code: str
    ) -> None:
        """Push a PIN to the keypad and set it on the (unsaved) member.

        Must be called with the gateway lock held.
        """
        try:
            await self._ha_client.set_user_code(slot, code)
        except GatewayError as e:
            await self._audit(
                "pin_code_set",
                member_id=member.id,
                slot_number=slot,
                success=False,
                error_message=str(e),
            )
            raise
        member.pin_code = code

    async def _restore_permanent_code(self, slot: int, previous: Optional[str]) -> None:
        """Put back the PIN a failed save replaced on the keypad."""
        try:
            if previous:
                await self._ha_client.set_user_code(slot, previous)
            else:
                await self._ha_client.clear_user_code(slot)
        except GatewayError as e:
            logger.error("Failed to restore permanent code on slot %d: %s", slot, e)

    async def _check_permanent_slot(
        self, session: AsyncSession, slot: Optional[int], member_id: Optional[int]
    ) -> None:
        if slot is None:
            raise SlotOutOfRangeError("Member has no door slot assigned")
        if not self._permanent_slots.in_range(slot):
            raise SlotOutOfRangeError(
                f"Pin Code Slot must be less than {PERMANENT_SLOT_CEILING} and outside "
                f"the day pass range {self.settings.day_pass_slot_min}-"
                f"{self.settings.day_pass_slot_max}"
            )
        result = await session.execute(
            select(FullMember.id).where(FullMember.pin_code_slot == slot)
        )
        holder = result.scalar_one_or_none()
        if holder is not None and holder != member_id:
            raise SlotTakenError(f"Slot {slot} is already assigned to member {holder}")

    async def clear_permanent_code(self, member_id: int) -> dict:
        """Remove a full member's PIN from the keypad, keeping their slot."""
        async with self._gateway_lock:
            async with get_session_context() as session:
                member = await session.get(Member, member_id)
                if member is None:
                    raise NotFoundError(f"Member {member_id} not found")
                if not isinstance(member, FullMember):
                    raise WrongMemberClassError("Permanent codes are only for full members")
                if member.pin_code_slot is None:
                    raise SlotOutOfRangeError("Member has no door slot assigned")

                await self._ha_client.clear_user_code(member.pin_code_slot)
                member.pin_code = None
                session.add(AuditLog(
                    action="pin_code_cleared",
                    member_id=member.id,
                    slot_number=member.pin_code_slot,
                ))
                return {"member_id": member.id, "slot": member.pin_code_slot}

    async def resend_permanent_code(self, member_id: int) -> dict:
        """Push a full member's stored PIN to the keypad again."""
        async with self._gateway_lock:
            async with get_session_context() as session:
                member = await session.get(Member, member_id)
                if member is None:
                    raise NotFoundError(f"Member {member_id} not found")
                if not isinstance(member, FullMember) or not member.pin_code:
                    raise ValidationError("Member has no permanent code to send")
                if member.pin_code_slot is None:
                    raise SlotOutOfRangeError("Member has no door slot assigned")

                await self._ha_client.set_user_code(member.pin_code_slot, member.pin_code)
                return {"member_id": member.id, "slot": member.pin_code_slot}

    async def next_permanent_slot(self) -> Optional[int]:
        async with get_session_context() as session:
            return await self._permanent_slots.find_available_slot(session)

    # Members

    @staticmethod
    def _normalize_fields(fields: dict) -> dict:
        """Validate contact fields; blank strings become None."""
        cleaned = {}
        for key, value in fields.items():
            if isinstance(value, str):
                value = value.strip() or None
            cleaned[key] = value

        email = cleaned.get("email")
        if email and not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address.")
        eth = cleaned.get("ethereum_address")
        if eth and not ETHEREUM_ADDRESS_PATTERN.match(eth):
            raise ValidationError("Invalid Ethereum Address.")
        username = cleaned.get("telegram_username")
        if username:
            if not username.startswith("@"):
                username = f"@{username}"
            if not TELEGRAM_USERNAME_PATTERN.match(username):
                raise ValidationError(
                    "Telegram username must start with @ and be 5-32 characters "
                    "(letters, numbers, underscores)."
                )
            cleaned["telegram_username"] = username
        if "name" in cleaned and not cleaned["name"]:
            raise ValidationError("Name is required.")
        return cleaned

    async def _check_unique(
        self, session: AsyncSession, fields: dict, member_id: Optional[int] = None
    ) -> None:
        for column, label in (
            (Member.nfc_key_address, "NFC Key Address"),
            (Member.telegram_username, "Telegram username"),
        ):
            value = fields.get(column.key)
            if not value:
                continue
            query = select(Member.id).where(column == value)
            if member_id is not None:
                query = query.where(Member.id != member_id)
            result = await session.execute(query)
            if result.first() is not None:
                raise ValidationError(f"This {label} is already in use.")

    async def create_member(
        self,
        name: str,
        member_type: MemberType = MemberType.FULL,
        pin_code: Optional[str] = None,
        pin_code_slot: Optional[int] = None,
        **fields,
    ) -> dict:
        """Create a member.

        A full member with a PIN gets it pushed to the keypad before the
        record is saved; a gateway failure means no member is created.
        """
        member_type = MemberType(member_type)
        fields = self._normalize_fields({"name": name, **fields})

        if member_type == MemberType.DAYPASS and (pin_code or pin_code_slot is not None):
            raise ValidationError("Day pass members cannot have a permanent code or slot")
        if pin_code:
            pin_code = validate_pin_code(pin_code)

        async with self._gateway_lock:
            async with get_session_context() as session:
                await self._check_unique(session, fields)

                if member_type == MemberType.DAYPASS:
                    member = DayPassMember(**fields)
                else:
                    if pin_code and pin_code_slot is None:
                        pin_code_slot = await self._permanent_slots.find_available_slot(session)
                        if pin_code_slot is None:
                            raise SlotsExhaustedError("No permanent slots available")
                    if pin_code_slot is not None:
                        await self._check_permanent_slot(session, pin_code_slot, None)
                    if pin_code:
                        await self._ha_client.set_user_code(pin_code_slot, pin_code)
                    member = FullMember(
                        pin_code=pin_code or None, pin_code_slot=pin_code_slot, **fields
                    )

                session.add(member)
                try:
                    await session.flush()
                except IntegrityError as e:
                    if pin_code:
                        await self._clear_quietly(pin_code_slot)
                    raise ValidationError("Member conflicts with an existing record") from e
                session.add(AuditLog(
                    action="member_created",
                    member_id=member.id,
                    slot_number=pin_code_slot,
                    details=member_type.value,
                ))
                logger.info("Created %s member %d (%s)", member_type.value, member.id, member.name)
                return self._member_info(member)

    async def update_member(
        self, member_id: int, pin_code: Optional[str] = None, **fields
    ) -> dict:
        """Update a member's name, contact fields, disabled flag or PIN.

        Every field is validated before a new PIN reaches the keypad, and the
        PIN is saved in the same transaction as the other fields.
        """
        allowed = {"name", "email", "ethereum_address", "nfc_key_address",
                   "telegram_username", "disabled"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        fields = self._normalize_fields(fields)
        if pin_code:
            pin_code = validate_pin_code(pin_code)

        async with self._gateway_lock:
            async with get_session_context() as session:
                member = await session.get(Member, member_id)
                if member is None:
                    raise NotFoundError(f"Member {member_id} not found")
                await self._check_unique(session, fields, member.id)

                previous_pin = None
                if pin_code:
                    if not isinstance(member, FullMember):
                        raise WrongMemberClassError("Permanent codes are only for full members")
                    await self._check_permanent_slot(session, member.pin_code_slot, member.id)
                    previous_pin = member.pin_code
                    await self._program_permanent_code(member, member.pin_code_slot, pin_code)
                    session.add(AuditLog(
                        action="pin_code_set",
                        member_id=member.id,
                        slot_number=member.pin_code_slot,
                    ))

                for key, value in fields.items():
                    if key == "disabled":
                        value = bool(value)
                    setattr(member, key, value)
                try:
                    await session.flush()
                except IntegrityError as e:
                    if pin_code:
                        await self._restore_permanent_code(member.pin_code_slot, previous_pin)
                    raise ValidationError("Member conflicts with an existing record") from e
                return self._member_info(member)

    async def delete_member(self, member_id: int) -> dict:
        """Remove a member, clearing their codes from the keypad first."""
        async with self._gateway_lock:
            async with get_session_context() as session:
                member = await session.get(Member, member_id)
                if member is None:
                    raise NotFoundError(f"Member {member_id} not found")
                result = await session.execute(
                    select(DayCode.id).where(
                        DayCode.member_id == member_id, DayCode.is_active.is_(True)
                    )
                )
                active_ids = list(result.scalars().all())
                pin_slot = member.pin_code_slot if isinstance(member, FullMember) else None

            if pin_slot is not None:
                await self._ha_client.clear_user_code(pin_slot)

            now = self._clock()
            for code_id in active_ids:
                await self._deactivate_code(code_id, "day_code_revoked", now)

            async with get_session_context() as session:
                result = await session.execute(
                    select(Member).where(Member.id == member_id)
                )
                member = result.scalar_one()
                if isinstance(member, DayPassMember):
                    passes = await session.execute(
                        select(DayPass)
                        .options(selectinload(DayPass.day_codes))
                        .where(DayPass.member_id == member_id)
                    )
                    for day_pass in passes.scalars().all():
                        await session.delete(day_pass)
                    await session.flush()
                await session.delete(member)
                session.add(AuditLog(
                    action="member_deleted", member_id=member_id, slot_number=pin_slot
                ))

        logger.info("Deleted member %d", member_id)
        return {"member_id": member_id, "revoked_codes": len(active_ids)}

    async def get_member(self, member_id: int) -> dict:
        async with get_session_context() as session:
            member = await session.get(Member, member_id)
            if member is None:
                raise NotFoundError(f"Member {member_id} not found")
            info = self._member_info(member)
            if isinstance(member, DayPassMember):
                info["day_passes"] = await self.list_day_passes(member.id)
            return info

    async def list_members(self) -> list[dict]:
        async with get_session_context() as session:
            result = await session.execute(select(Member).order_by(Member.name, Member.id))
            return [self._member_info(m) for m in result.scalars().all()]

    @staticmethod
    def _member_info(member: Member) -> dict:
        info = {
            "id": member.id,
            "name": member.name,
            "member_type": member.member_type,
            "email": member.email,
            "ethereum_address": member.ethereum_address,
            "nfc_key_address": member.nfc_key_address,
            "telegram_username": member.telegram_username,
            "disabled": member.disabled,
        }
        if isinstance(member, FullMember):
            info["pin_code_slot"] = member.pin_code_slot
            info["has_pin_code"] = bool(member.pin_code)
        return info

    async def lookup_member_by_nfc(self, address: str) -> int:
        """Find a member ID by NFC key address.

        Raises:
            ValidationError: Blank address
            NotFoundError: No member holds that address
        """
        address = (address or "").strip()
        if not address:
            raise ValidationError("NFC key address is required")
        async with get_session_context() as session:
            result = await session.execute(
                select(Member.id).where(Member.nfc_key_address == address)
            )
            member_id = result.scalar_one_or_none()
        if member_id is None:
            raise NotFoundError("No member with that NFC key address")
        return member_id

    async def find_member_by_telegram(self, username: Optional[str]) -> Optional[Member]:
        """Find a member by Telegram username, with or without the leading @."""
        if not username:
            return None
        handle = username if username.startswith("@") else f"@{username}"
        async with get_session_context() as session:
            result = await session.execute(
                select(Member).where(Member.telegram_username == handle)
            )
            return result.scalar_one_or_none()

    async def get_member_record(self, member_id: int) -> Optional[Member]:
        async with get_session_context() as session:
            return await session.get(Member, member_id)

    async def health_check(self) -> dict:
        """Check the health of the gateway and the database."""
        gateway_ok = await self._ha_client.health_check()
        try:
            async with get_session_context() as session:
                await session.execute(select(func.count(Member.id)))
            db_ok = True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            db_ok = False
        return {
            "status": "ok" if gateway_ok and db_ok else "degraded",
            "gateway": gateway_ok,
            "database": db_ok,
        }
