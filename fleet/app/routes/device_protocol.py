from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Body, Depends

from ..db import db_session
from ..errors import UnknownEntity
from ..models import Device, utcnow
from ..schemas import ConfirmIn, ConfirmOut, HeartbeatIn, HeartbeatOut, PendingCommandOut
from ..security import require_device
from ..services.device_commands import confirm, poll_pending
from ..services.liveness import HeartbeatTelemetry, record_heartbeat


router = APIRouter(prefix="/api/v1", tags=["device-protocol"])


def _telemetry_from(req: Optional[HeartbeatIn]) -> HeartbeatTelemetry:
    if req is None:
        return HeartbeatTelemetry()
    return HeartbeatTelemetry(
        rssi=req.rssi,
        firmware_version=req.fw_version,
        ip_address=req.ip_address,
        hostname=req.device_hostname,
        extra=dict(req.model_extra or {}),
    )


@router.post("/heartbeat", response_model=HeartbeatOut)
def heartbeat(
    req: Optional[HeartbeatIn] = Body(default=None),
    device: Device = Depends(require_device),
) -> HeartbeatOut:
    """Accept a heartbeat from an authenticated device and mark it online."""

    now = utcnow()
    with db_session() as session:
        row = session.get(Device, device.id)
        if row is None:
            raise UnknownEntity(f"Device {device.composite_id} is not registered")
        record_heartbeat(session, device=row, telemetry=_telemetry_from(req), now=now)
        return HeartbeatOut(device_id=row.composite_id, status=row.state, timestamp=now)


@router.post("/commands/pending", response_model=List[PendingCommandOut])
def pending_commands(device: Device = Depends(require_device)) -> List[PendingCommandOut]:
    """Every unconfirmed command for the device, oldest first.

    Commands keep showing up here until confirmed.
    """

    with db_session() as session:
        rows = poll_pending(session, device_id=device.id)
        return [
            PendingCommandOut(
                id=r.id,
                actuator_id=r.actuator_ref,
                command_type=r.kind,
                value=r.value,
            )
            for r in rows
        ]


@router.post("/commands/confirm", response_model=ConfirmOut)
def confirm_command(req: ConfirmIn, device: Device = Depends(require_device)) -> ConfirmOut:
    # Unknown and already-confirmed ids are acknowledged too, so a device
    # retrying after a lost response does not loop.
    with db_session() as session:
        confirm(session, command_id=req.command_id, device_id=device.id)
    return ConfirmOut(command_id=req.command_id)
