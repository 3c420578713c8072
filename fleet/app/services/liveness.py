from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case, or_, select, update
from sqlalchemy.orm import Session

from ..config import settings
from ..models import Device, HeartbeatEvent, OFFLINE, ONLINE, WAITING, utcnow
from ..observability import record_heartbeat_metric


logger = logging.getLogger("fleet.liveness")


# waiting -> online -> offline -> online; never waiting -> offline.
_TRANSITIONS: dict[str, frozenset[str]] = {
    WAITING: frozenset({ONLINE}),
    ONLINE: frozenset({ONLINE, OFFLINE}),
    OFFLINE: frozenset({ONLINE}),
}


def _normalize_opt_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_valid_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def state_after_heartbeat(current: str) -> str:
    if current not in _TRANSITIONS:
        raise ValueError(f"unknown device state: {current!r}")
    return ONLINE


def is_stale(last_seen_at: datetime | None, now: datetime, offline_after_s: int) -> bool:
    seen = _normalize_opt_utc(last_seen_at)
    if seen is None:
        return False
    return (now - seen).total_seconds() > offline_after_s


def state_after_sweep(
    current: str, last_seen_at: datetime | None, now: datetime, offline_after_s: int
) -> str:
    """Only online devices can be demoted; waiting/offline are left alone."""
    if current == ONLINE and is_stale(last_seen_at, now, offline_after_s):
        return OFFLINE
    return current


def seconds_since_last_seen(device: Device, now: datetime | None = None) -> int | None:
    seen = _normalize_opt_utc(device.last_seen_at)
    if seen is None:
        return None
    ts = _normalize_opt_utc(now) or utcnow()
    return int((ts - seen).total_seconds())


@dataclass(frozen=True)
class HeartbeatTelemetry:
    rssi: int | None = None
    firmware_version: str | None = None
    ip_address: str | None = None
    hostname: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def record_heartbeat(
    session: Session,
    *,
    device: Device,
    telemetry: HeartbeatTelemetry | None = None,
    now: datetime | None = None,
) -> HeartbeatEvent:
    """Apply an accepted heartbeat: append the event and mark the device online.

    Receipt time is the server clock. ``last_seen_at`` only moves forward, so a
    late retry cannot replace a fresher observation.
    """

    ts = _normalize_opt_utc(now) or utcnow()
    tm = telemetry or HeartbeatTelemetry()
    previous = device.state

    event = HeartbeatEvent(
        device_id=device.id,
        received_at=ts,
        rssi=tm.rssi,
        firmware_version=tm.firmware_version,
        ip_address=tm.ip_address,
        hostname=tm.hostname,
        telemetry=dict(tm.extra),
    )
    session.add(event)

    fresher = or_(Device.last_seen_at.is_(None), Device.last_seen_at <= ts)
    values: dict[str, Any] = {
        "state": state_after_heartbeat(previous),
        "last_seen_at": case((fresher, ts), else_=Device.last_seen_at),
        "updated_at": ts,
    }
    if tm.rssi is not None:
        values["rssi"] = case((fresher, tm.rssi), else_=Device.rssi)
    if tm.firmware_version:
        values["firmware_version"] = tm.firmware_version
    if tm.ip_address:
        values["ip_address"] = tm.ip_address
    if tm.hostname:
        values["hostname"] = tm.hostname

    session.execute(
        update(Device).where(Device.id == device.id).values(**values).execution_options(synchronize_session=False)
    )
    session.flush()
    session.refresh(device)

    if previous != ONLINE:
        logger.info(
            "device_online",
            extra={"fields": {"composite_id": device.composite_id, "previous_state": previous}},
        )
    record_heartbeat_metric(previous_state=previous)
    return event


def sweep_offline_devices(
    session: Session,
    *,
    now: datetime | None = None,
    offline_after_s: int | None = None,
) -> list[str]:
    """Demote every online device whose last heartbeat is older than the threshold.

    One batch pass; running it twice in a row changes nothing the second time.
    Returns the composite ids that were flipped.
    """

    ts = _normalize_opt_utc(now) or utcnow()
    threshold = int(offline_after_s if offline_after_s is not None else settings.offline_after_s)
    cutoff = ts - timedelta(seconds=threshold)

    stale = (
        Device.state == ONLINE,
        Device.last_seen_at.is_not(None),
        Device.last_seen_at < cutoff,
    )
    ids = list(session.scalars(select(Device.id).where(*stale)))
    if not ids:
        return []

    # Re-check staleness in the UPDATE so a heartbeat landing between the
    # select and the update keeps its device online.
    flipped = list(
        session.scalars(
            update(Device)
            .where(Device.id.in_(ids), *stale)
            .values(state=OFFLINE, updated_at=ts)
            .returning(Device.composite_id)
            .execution_options(synchronize_session=False)
        )
    )
    if not flipped:
        return []
    logger.info(
        "devices_offline",
        extra={"fields": {"count": len(flipped), "threshold_s": threshold, "composite_ids": flipped[:50]}},
    )
    return flipped
