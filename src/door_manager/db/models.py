"""Database models for the door manager."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from door_manager.config import MemberType


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Member(Base):
    """A person with door access.

    Rows are loaded as FullMember or DayPassMember depending on member_type.
    """

    __tablename__ = "members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    member_type: Mapped[str] = mapped_column(String(10))
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ethereum_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    nfc_key_address: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    telegram_username: Mapped[Optional[str]] = mapped_column(
        String(33), nullable=True, unique=True
    )
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {
        "polymorphic_on": "member_type",
        "with_polymorphic": "*",
    }

    __table_args__ = (
        CheckConstraint(
            "member_type = 'full' OR (pin_code IS NULL AND pin_code_slot IS NULL)",
            name="ck_member_daypass_no_pin",
        ),
    )

    @property
    def is_full_member(self) -> bool:
        return self.member_type == MemberType.FULL.value

    def __repr__(self) -> str:
        return f"<Member {self.id} {self.name} ({self.member_type})>"


class FullMember(Member):
    """A member with a permanent PIN in a fixed slot."""

    pin_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    pin_code_slot: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, unique=True
    )

    __mapper_args__ = {"polymorphic_identity": MemberType.FULL.value}


class DayPassMember(Member):
    """A member who redeems passes for temporary day codes."""

    day_passes: Mapped[list["DayPass"]] = relationship(
        "DayPass",
        back_populates="member",
        cascade="all, delete-orphan",
        order_by="DayPass.id",
    )

    __mapper_args__ = {"polymorphic_identity": MemberType.DAYPASS.value}


class DayPass(Base):
    """An entitlement to a bounded number of day code issuances."""

    __tablename__ = "day_passes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    member_id: Mapped[int] = mapped_column(ForeignKey("members.id"))
    allowed_uses: Mapped[int] = mapped_column(Integer, default=1)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Relationships
    member: Mapped["DayPassMember"] = relationship(
        "DayPassMember", back_populates="day_passes"
    )
    day_codes: Mapped[list["DayCode"]] = relationship(
        "DayCode", back_populates="day_pass", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("allowed_uses >= 1", name="ck_day_pass_allowed_uses"),
        CheckConstraint("used_count >= 0", name="ck_day_pass_used_count"),
    )

    @property
    def remaining_uses(self) -> int:
        return max(self.allowed_uses - self.used_count, 0)

    def has_remaining_uses(self) -> bool:
        return self.used_count < self.allowed_uses

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.has_remaining_uses() and not self.is_expired(now)

    def __repr__(self) -> str:
        return f"<DayPass {self.id} {self.used_count}/{self.allowed_uses}>"


class DayCode(Base):
    """A temporary code issued against a day pass."""

    __tablename__ = "day_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    day_pass_id: Mapped[int] = mapped_column(ForeignKey("day_passes.id"))
    member_id: Mapped[int] = mapped_column(ForeignKey("members.id"))
    code: Mapped[str] = mapped_column(String(6))
    pin_slot: Mapped[int] = mapped_column(Integer)
    issued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Relationships
    day_pass: Mapped["DayPass"] = relationship("DayPass", back_populates="day_codes")
    member: Mapped["Member"] = relationship("Member")

    __table_args__ = (
        # At most one active code per slot
        Index(
            "uq_day_codes_active_slot",
            "pin_slot",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_day_codes_active_expiry", "is_active", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<DayCode {self.id} slot={self.pin_slot} active={self.is_active}>"


class AuditLog(Base):
    """Audit log for code changes on the door."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    action: Mapped[str] = mapped_column(String(50))  # day_code_issued, day_code_expired, ...
    member_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    slot_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog {self.timestamp} {self.action}>"
