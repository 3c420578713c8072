from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select

from ..db import db_session
from ..models import Command, Device, Project, utcnow
from ..schemas import (
    CancelOut,
    CommandCreateIn,
    CommandOut,
    DeleteOut,
    DeviceOut,
    DeviceRegisterIn,
    DeviceRegisterOut,
    ProjectCreateIn,
    ProjectCreateOut,
    ProjectOut,
    ProjectUpdateIn,
    SecretRotateOut,
    SlotOut,
)
from ..security import require_admin
from ..services import credentials, device_commands, projects
from ..services.device_identity import safe_display_name
from ..services.identity import list_slots
from ..services.liveness import seconds_since_last_seen

router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _unprocessable(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


def _device_counts(session, project_ids: List[str]) -> Dict[str, int]:
    if not project_ids:
        return {}
    rows = session.execute(
        select(Device.project_id, func.count(Device.id))
        .where(Device.project_id.in_(project_ids))
        .group_by(Device.project_id)
    ).all()
    return {pid: int(n) for pid, n in rows}


def _project_out(row: Project, *, device_count: int) -> ProjectOut:
    return ProjectOut(
        project_id=row.public_id,
        id=row.id,
        name=row.name,
        description=row.description,
        owner=row.owner,
        status=row.status,
        device_count=device_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _device_out(session, row: Device, *, project_public_id: str, now: datetime) -> DeviceOut:
    return DeviceOut(
        composite_device_id=row.composite_id,
        id=row.id,
        project_id=project_public_id,
        slot=row.slot,
        name=safe_display_name(row.composite_id, row.display_name),
        status=row.state,
        last_seen_at=row.last_seen_at,
        seconds_since_last_seen=seconds_since_last_seen(row, now),
        firmware_version=row.firmware_version,
        ip_address=row.ip_address,
        hostname=row.hostname,
        rssi=row.rssi,
        has_credential=bool(row.secret_hash),
        pending_commands=device_commands.pending_count(session, device_id=row.id),
        created_at=row.created_at,
    )


def _command_out(row: Command, *, composite_id: str) -> CommandOut:
    return CommandOut(
        id=row.id,
        composite_device_id=composite_id,
        actuator_id=row.actuator_ref,
        command_type=row.kind,
        value=row.value,
        status=row.state,
        created_at=row.created_at,
        confirmed_at=row.confirmed_at,
    )


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@router.post("/projects", response_model=ProjectCreateOut, status_code=status.HTTP_201_CREATED)
def create_project(req: ProjectCreateIn, actor: str = Depends(require_admin)) -> ProjectCreateOut:
    try:
        with db_session() as session:
            row = projects.create_project(
                session,
                name=req.name,
                owner=actor,
                description=req.description,
            )
            return ProjectCreateOut(project_id=row.public_id, id=row.id, created_at=row.created_at)
    except ValueError as exc:
        raise _unprocessable(exc) from exc


@router.get("/projects", response_model=List[ProjectOut])
def list_projects(owner: Optional[str] = Query(default=None)) -> List[ProjectOut]:
    with db_session() as session:
        rows = projects.list_projects(session, owner=owner)
        counts = _device_counts(session, [r.id for r in rows])
        return [_project_out(r, device_count=counts.get(r.id, 0)) for r in rows]


@router.get("/projects/{public_id}", response_model=ProjectOut)
def get_project(public_id: str) -> ProjectOut:
    with db_session() as session:
        row = projects.get_project(session, public_id)
        counts = _device_counts(session, [row.id])
        return _project_out(row, device_count=counts.get(row.id, 0))


@router.patch("/projects/{public_id}", response_model=ProjectOut)
def update_project(public_id: str, req: ProjectUpdateIn) -> ProjectOut:
    try:
        with db_session() as session:
            row = projects.update_project(
                session,
                public_id,
                status=req.status,
                description=req.description,
            )
            session.flush()
            counts = _device_counts(session, [row.id])
            return _project_out(row, device_count=counts.get(row.id, 0))
    except ValueError as exc:
        raise _unprocessable(exc) from exc


@router.delete("/projects/{public_id}", response_model=DeleteOut)
def delete_project(public_id: str) -> DeleteOut:
    with db_session() as session:
        projects.delete_project(session, public_id)
    return DeleteOut()


@router.get("/projects/{public_id}/slots", response_model=List[SlotOut])
def get_slots(public_id: str) -> List[SlotOut]:
    with db_session() as session:
        project = projects.get_project(session, public_id)
        return [
            SlotOut(slot=s.slot, slot_tag=s.slot_tag, available=s.available)
            for s in list_slots(session, project)
        ]


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


@router.post(
    "/projects/{public_id}/devices",
    response_model=DeviceRegisterOut,
    status_code=status.HTTP_201_CREATED,
)
def register_device(public_id: str, req: DeviceRegisterIn) -> DeviceRegisterOut:
    try:
        with db_session() as session:
            registered = projects.register_device(session, public_id, slot=req.slot, name=req.name)
            return DeviceRegisterOut(
                composite_device_id=registered.device.composite_id,
                id=registered.device.id,
                secret=registered.secret,
                created_at=registered.device.created_at,
            )
    except ValueError as exc:
        raise _unprocessable(exc) from exc


@router.get("/projects/{public_id}/devices", response_model=List[DeviceOut])
def list_devices(public_id: str) -> List[DeviceOut]:
    now = utcnow()
    with db_session() as session:
        rows = projects.list_devices(session, public_id)
        return [_device_out(session, r, project_public_id=public_id, now=now) for r in rows]


@router.get("/devices/{composite_id}", response_model=DeviceOut)
def get_device(composite_id: str) -> DeviceOut:
    with db_session() as session:
        row = projects.get_device_by_composite_id(session, composite_id)
        return _device_out(session, row, project_public_id=row.project.public_id, now=utcnow())


@router.delete("/devices/{composite_id}", response_model=DeleteOut)
def delete_device(composite_id: str) -> DeleteOut:
    with db_session() as session:
        projects.delete_device(session, composite_id)
    return DeleteOut()


@router.post("/devices/{composite_id}/secret/rotate", response_model=SecretRotateOut)
def rotate_secret(composite_id: str) -> SecretRotateOut:
    now = utcnow()
    with db_session() as session:
        row = projects.get_device_by_composite_id(session, composite_id)
        secret = credentials.rotate(session, row.id, now=now)
    return SecretRotateOut(composite_device_id=composite_id, secret=secret, issued_at=now)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@router.post(
    "/devices/{composite_id}/commands",
    response_model=CommandOut,
    status_code=status.HTTP_201_CREATED,
)
def enqueue_command(composite_id: str, req: CommandCreateIn) -> CommandOut:
    try:
        with db_session() as session:
            device = projects.get_device_by_composite_id(session, composite_id)
            row = device_commands.enqueue(
                session,
                device=device,
                actuator_ref=req.actuator_id,
                kind=req.command_type,
                value=req.value,
            )
            return _command_out(row, composite_id=composite_id)
    except ValueError as exc:
        raise _unprocessable(exc) from exc


@router.get("/devices/{composite_id}/commands", response_model=List[CommandOut])
def list_commands(
    composite_id: str,
    state: Optional[Literal["pending", "confirmed"]] = Query(default=None),
) -> List[CommandOut]:
    with db_session() as session:
        device = projects.get_device_by_composite_id(session, composite_id)
        rows = device_commands.list_commands(session, device_id=device.id, state=state)
        return [_command_out(r, composite_id=composite_id) for r in rows]


@router.delete("/devices/{composite_id}/commands", response_model=CancelOut)
def cancel_pending_commands(composite_id: str) -> CancelOut:
    with db_session() as session:
        device = projects.get_device_by_composite_id(session, composite_id)
        count = device_commands.cancel_pending(session, device_id=device.id)
    return CancelOut(cancelled=count)


@router.delete("/commands/{command_id}", response_model=CancelOut)
def cancel_command(command_id: str) -> CancelOut:
    with db_session() as session:
        cancelled = device_commands.cancel(session, command_id=command_id)
    return CancelOut(cancelled=1 if cancelled else 0)
