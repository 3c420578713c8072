"""Per-device command queue.

Commands are appended as ``pending`` and handed out on every poll until the
device confirms them (at-least-once delivery). Order within a device is the
store-assigned ``seq``. Confirmation and cancellation are single conditional
statements on ``state = 'pending'``, so whichever commits first wins and the
other affects zero rows.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ..models import CONFIRMED, PENDING, Command, Device, utcnow
from ..observability import record_command_transition_metric


logger = logging.getLogger("fleet.commands")

COMMAND_STATES = (PENDING, CONFIRMED)


def _normalize_opt_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _clean_ref(value: str | None, *, what: str) -> str:
    ref = (value or "").strip()
    if not ref:
        raise ValueError(f"{what} cannot be empty")
    return ref


def enqueue(
    session: Session,
    *,
    device: Device,
    actuator_ref: str,
    kind: str,
    value: float | None = None,
    now: datetime | None = None,
) -> Command:
    """Append a pending command. Identical commands are not collapsed."""

    ts = _normalize_opt_utc(now) or utcnow()
    command = Command(
        device_id=device.id,
        actuator_ref=_clean_ref(actuator_ref, what="actuator_id"),
        kind=_clean_ref(kind, what="command_type"),
        value=value,
        state=PENDING,
        created_at=ts,
    )
    session.add(command)
    session.flush()

    logger.info(
        "command_enqueued",
        extra={
            "fields": {
                "command_id": command.id,
                "composite_id": device.composite_id,
                "actuator_ref": command.actuator_ref,
                "kind": command.kind,
            }
        },
    )
    record_command_transition_metric(transition="enqueued")
    return command


def poll_pending(session: Session, *, device_id: str) -> list[Command]:
    """Every still-pending command for the device, oldest first."""

    return list(
        session.scalars(
            select(Command)
            .where(Command.device_id == device_id, Command.state == PENDING)
            .order_by(Command.seq.asc())
        )
    )


def confirm(
    session: Session,
    *,
    command_id: str,
    device_id: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Move a command from pending to confirmed.

    Returns True only for the call that performed the transition. Unknown,
    already-confirmed, cancelled, or other-device ids return False and change
    nothing.
    """

    ts = _normalize_opt_utc(now) or utcnow()
    stmt = update(Command).where(Command.id == command_id, Command.state == PENDING)
    if device_id is not None:
        stmt = stmt.where(Command.device_id == device_id)
    result = session.execute(
        stmt.values(state=CONFIRMED, confirmed_at=ts).execution_options(synchronize_session="evaluate")
    )
    changed = result.rowcount == 1
    if changed:
        logger.info("command_confirmed", extra={"fields": {"command_id": command_id}})
        record_command_transition_metric(transition="confirmed")
    else:
        logger.debug("command_confirm_noop", extra={"fields": {"command_id": command_id}})
    return changed


def cancel(session: Session, *, command_id: str) -> bool:
    """Drop a command that is still pending. Confirmed history is kept."""

    result = session.execute(
        delete(Command)
        .where(Command.id == command_id, Command.state == PENDING)
        .execution_options(synchronize_session="evaluate")
    )
    cancelled = result.rowcount == 1
    if cancelled:
        logger.info("command_cancelled", extra={"fields": {"command_id": command_id}})
        record_command_transition_metric(transition="cancelled")
    return cancelled


def cancel_pending(session: Session, *, device_id: str) -> int:
    result = session.execute(
        delete(Command)
        .where(Command.device_id == device_id, Command.state == PENDING)
        .execution_options(synchronize_session="evaluate")
    )
    count = int(result.rowcount or 0)
    if count:
        logger.info(
            "commands_cancelled",
            extra={"fields": {"device_id": device_id, "count": count}},
        )
        record_command_transition_metric(transition="cancelled", count=count)
    return count


def list_commands(session: Session, *, device_id: str, state: str | None = None) -> list[Command]:
    if state is not None and state not in COMMAND_STATES:
        raise ValueError(f"state must be one of: {', '.join(COMMAND_STATES)}")
    stmt = select(Command).where(Command.device_id == device_id)
    if state is not None:
        stmt = stmt.where(Command.state == state)
    return list(session.scalars(stmt.order_by(Command.seq.asc())))


def pending_count(session: Session, *, device_id: str) -> int:
    return int(
        session.scalar(
            select(func.count(Command.seq)).where(
                Command.device_id == device_id, Command.state == PENDING
            )
        )
        or 0
    )
