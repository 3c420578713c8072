"""Identity allocation: project public ids and per-project device slots.

Public ids come from a store-side monotonic counter so that any number of
processes can allocate concurrently:

- PostgreSQL: the native ``project_public_id_seq`` sequence (``nextval`` is
  non-transactional, so aborted creations leave gaps).
- Other dialects (SQLite for dev/tests): an ``identity_counters`` row bumped
  with a single ``UPDATE ... RETURNING``; the write lock serializes callers.

Slot claims are plain inserts. Collisions surface as ``IntegrityError`` from the
``(project_id, slot)`` unique constraint at flush time and are translated here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import CapacityExhausted, ProjectArchived, SlotConflict, SlotOutOfRange
from ..models import (
    ARCHIVED,
    SLOT_MAX,
    SLOT_MIN,
    Device,
    IdentityCounter,
    Project,
    WAITING,
    project_public_id_seq,
    utcnow,
)


logger = logging.getLogger("fleet.identity")


PROJECT_COUNTER = "project_public_id"
SHORT_FORM_MAX = 999
PUBLIC_ID_CEILING = 9999


def format_project_public_id(value: int) -> str:
    """1..999 -> PROJ<n>, 1000..9999 -> P<n>."""
    if value < 1:
        raise ValueError(f"project sequence values start at 1 (got {value})")
    if value > PUBLIC_ID_CEILING:
        raise CapacityExhausted(
            f"Project ID sequence overflow at {value}. Maximum {PUBLIC_ID_CEILING} projects allowed.",
            ceiling=PUBLIC_ID_CEILING,
        )
    if value <= SHORT_FORM_MAX:
        return f"PROJ{value}"
    return f"P{value}"


def slot_tag(slot: int) -> str:
    return f"ESP{slot}"


def format_composite_id(public_id: str, slot: int) -> str:
    return f"{public_id}-{slot_tag(slot)}"


def validate_slot(slot: int) -> int:
    if isinstance(slot, bool) or not isinstance(slot, int) or not SLOT_MIN <= slot <= SLOT_MAX:
        raise SlotOutOfRange(
            f"Device number must be between {SLOT_MIN} and {SLOT_MAX}",
            slot=slot,
        )
    return slot


def _next_counter_value(session: Session, name: str) -> int:
    # Make sure the row exists, then bump it atomically. Both statements are
    # idempotent under concurrent callers.
    session.execute(
        sqlite_insert(IdentityCounter)
        .values(name=name, value=0)
        .on_conflict_do_nothing(index_elements=["name"])
    )
    value = session.execute(
        update(IdentityCounter)
        .where(IdentityCounter.name == name)
        .values(value=IdentityCounter.value + 1)
        .returning(IdentityCounter.value)
        .execution_options(synchronize_session=False)
    ).scalar_one()
    return int(value)


def next_project_sequence_value(session: Session) -> int:
    if session.get_bind().dialect.name == "postgresql":
        return int(session.execute(select(project_public_id_seq.next_value())).scalar_one())
    return _next_counter_value(session, PROJECT_COUNTER)


def allocate_project_id(session: Session) -> str:
    """Return the next unused project public id, e.g. ``PROJ1``."""
    value = next_project_sequence_value(session)
    public_id = format_project_public_id(value)
    logger.debug("project_id_allocated", extra={"fields": {"public_id": public_id, "sequence": value}})
    return public_id


@dataclass(frozen=True)
class SlotStatus:
    slot: int
    slot_tag: str
    available: bool


def list_slots(session: Session, project: Project) -> list[SlotStatus]:
    taken = {
        int(s)
        for (s,) in session.query(Device.slot).filter(Device.project_id == project.id).all()
    }
    return [
        SlotStatus(slot=n, slot_tag=slot_tag(n), available=n not in taken)
        for n in range(SLOT_MIN, SLOT_MAX + 1)
    ]


def allocate_device_slot(
    session: Session,
    project: Project,
    slot: int,
    *,
    display_name: str,
    now: datetime | None = None,
) -> Device:
    """Claim ``slot`` inside ``project`` and return the new (flushed) device row.

    No pre-check: the unique constraint decides at flush time.
    """

    validate_slot(slot)
    if project.status == ARCHIVED:
        raise ProjectArchived(f"Project '{project.public_id}' is archived", project_id=project.public_id)

    ts = now or utcnow()
    # A failed flush expires the project; only the locals are safe afterwards.
    public_id = project.public_id
    composite_id = format_composite_id(public_id, slot)
    device = Device(
        project_id=project.id,
        slot=slot,
        composite_id=composite_id,
        display_name=display_name,
        state=WAITING,
        created_at=ts,
        updated_at=ts,
    )
    session.add(device)
    try:
        session.flush()
    except IntegrityError as exc:
        raise SlotConflict(
            f"Device {slot_tag(slot)} is already registered in project \"{public_id}\"",
            project_id=public_id,
            slot=slot,
        ) from exc

    logger.info(
        "slot_claimed",
        extra={"fields": {"project_id": public_id, "slot": slot, "composite_id": composite_id}},
    )
    return device
