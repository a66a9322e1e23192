from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


ENDORSEMENT_TIER1 = "tier1"
ENDORSEMENT_TIER2 = "tier2"

ENDORSEMENT_ACTIVE = "active"
ENDORSEMENT_WARNED = "warned"
ENDORSEMENT_REMOVED = "removed"
# States still subject to activity sync and removal evaluation.
ENDORSEMENT_LIVE_STATES = (ENDORSEMENT_ACTIVE, ENDORSEMENT_WARNED)

ENTRY_WAITING = "waiting"
ENTRY_CLAIMED = "claimed"
ENTRY_IN_TRAINING = "in_training"
ENTRY_LEFT = "left"
ENTRY_OPEN_STATES = (ENTRY_WAITING, ENTRY_CLAIMED, ENTRY_IN_TRAINING)


class UTCDateTime(TypeDecorator):
    # Store UTC and always hand back aware datetimes, including on SQLite which drops tzinfo.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


_JSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Endorsement(Base):
    __tablename__ = "endorsements"
    __table_args__ = (
        Index("ix_endorsements_state_granted", "state", "granted_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Controller CID on the remote network.
    controller_id: Mapped[int] = mapped_column(Integer, index=True)
    position: Mapped[str] = mapped_column(String(32))
    tier: Mapped[str] = mapped_column(String(8), default=ENDORSEMENT_TIER1)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime())
    state: Mapped[str] = mapped_column(String(16), default=ENDORSEMENT_ACTIVE)
    # Start of the current grace period while warned; kept as history after reactivation.
    last_warned_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    removed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())

    activity: Mapped[ActivityRecord] = relationship(
        back_populates="endorsement",
        uselist=False,
        lazy="joined",
        cascade="all, delete-orphan",
    )


class ActivityRecord(Base):
    __tablename__ = "activity_records"

    endorsement_id: Mapped[int] = mapped_column(ForeignKey("endorsements.id"), primary_key=True)
    total_minutes: Mapped[float] = mapped_column(Float, default=0.0)
    # Null until the first successful fetch; never-synced records sort first.
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    endorsement: Mapped[Endorsement] = relationship(back_populates="activity")


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100))
    position: Mapped[str | None] = mapped_column(String(8), nullable=True)
    # Concurrent trainees in training; null means unlimited.
    max_trainees: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class WaitingListEntry(Base):
    __tablename__ = "waiting_list_entries"
    __table_args__ = (
        # One open entry per trainee and course; left entries stay as history.
        Index(
            "uq_waiting_list_open_entry",
            "trainee_id",
            "course_id",
            unique=True,
            sqlite_where=text("state != 'left'"),
            postgresql_where=text("state != 'left'"),
        ),
        Index("ix_waiting_list_course_joined", "course_id", "joined_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainee_id: Mapped[int] = mapped_column(Integer, index=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"))
    state: Mapped[str] = mapped_column(String(16), default=ENTRY_WAITING)
    claimant_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    remarks: Mapped[str] = mapped_column(Text, default="")
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime())
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    training_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    left_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime())


class AuditLogEntry(Base):
    __tablename__ = "audit_log_entries"
    __table_args__ = (
        Index("ix_audit_log_subject", "subject_kind", "subject_id"),
    )

    # Monotonic id breaks ties between entries written in the same instant.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    # Null actor means the system (scheduled jobs).
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    actor_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    action: Mapped[str] = mapped_column(String(64), index=True)
    # Weak reference: stays meaningful after the subject is logically removed.
    subject_kind: Mapped[str] = mapped_column(String(32))
    subject_id: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict[str, Any] | None] = mapped_column(_JSON, default=dict)
    description: Mapped[str] = mapped_column(Text)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
