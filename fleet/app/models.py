from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Sequence,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


# Device liveness states.
WAITING = "waiting"
ONLINE = "online"
OFFLINE = "offline"

# Command states.
PENDING = "pending"
CONFIRMED = "confirmed"

# Project states.
ACTIVE = "active"
ARCHIVED = "archived"

SLOT_MIN = 1
SLOT_MAX = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


def json_type() -> JSON:
    # Keep PostgreSQL JSONB in production while remaining portable for SQLite-based demos/tests.
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


# Native sequence backing project public ids on PostgreSQL. create_all() skips
# it on dialects without sequences, where IdentityCounter is used instead.
project_public_id_seq = Sequence("project_public_id_seq", start=1, increment=1, metadata=Base.metadata)


class IdentityCounter(Base):
    """Store-side counter row for databases without native sequences."""

    __tablename__ = "identity_counters"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    public_id: Mapped[str] = mapped_column(String(8), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    owner: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ACTIVE)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    devices: Mapped[list["Device"]] = relationship(back_populates="project", passive_deletes=True)

    __table_args__ = (
        # Uniqueness is only ever enforced here, never by a read-then-insert.
        UniqueConstraint("public_id", name="uq_projects_public_id"),
        UniqueConstraint("name", name="uq_projects_name"),
        CheckConstraint("status IN ('active', 'archived')", name="ck_projects_status"),
        Index("ix_projects_owner", "owner"),
    )


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    slot: Mapped[int] = mapped_column(Integer, nullable=False)
    composite_id: Mapped[str] = mapped_column(String(32), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)

    # Device secret: PBKDF2 hash only. NULL until a credential is issued.
    secret_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    secret_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    state: Mapped[str] = mapped_column(String(16), nullable=False, default=WAITING)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Latest telemetry snapshot (history lives in heartbeat_events).
    firmware_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hostname: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rssi: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    project: Mapped["Project"] = relationship(back_populates="devices")
    heartbeat_events: Mapped[list["HeartbeatEvent"]] = relationship(
        back_populates="device", passive_deletes=True
    )
    commands: Mapped[list["Command"]] = relationship(back_populates="device", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("project_id", "slot", name="uq_devices_project_slot"),
        UniqueConstraint("composite_id", name="uq_devices_composite_id"),
        CheckConstraint(f"slot >= {SLOT_MIN} AND slot <= {SLOT_MAX}", name="ck_devices_slot_range"),
        CheckConstraint("state IN ('waiting', 'online', 'offline')", name="ck_devices_state"),
        # The liveness sweep scans online devices by last_seen_at.
        Index("ix_devices_state_last_seen", "state", "last_seen_at"),
    )


class HeartbeatEvent(Base):
    __tablename__ = "heartbeat_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    device_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False
    )
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    rssi: Mapped[int | None] = mapped_column(Integer, nullable=True)
    firmware_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hostname: Mapped[str | None] = mapped_column(String(128), nullable=True)
    telemetry: Mapped[dict] = mapped_column(json_type(), nullable=False, default=dict)

    device: Mapped["Device"] = relationship(back_populates="heartbeat_events")

    __table_args__ = (Index("ix_heartbeat_events_device_received", "device_id", "received_at"),)


class Command(Base):
    __tablename__ = "commands"

    # Store-assigned enqueue order; FIFO per device is defined by this column.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), nullable=False, default=new_uuid)
    device_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False
    )

    actuator_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)

    state: Mapped[str] = mapped_column(String(16), nullable=False, default=PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    device: Mapped["Device"] = relationship(back_populates="commands")

    __table_args__ = (
        UniqueConstraint("id", name="uq_commands_id"),
        CheckConstraint("state IN ('pending', 'confirmed')", name="ck_commands_state"),
        Index("ix_commands_device_state_seq", "device_id", "state", "seq"),
    )
