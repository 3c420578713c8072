"""Project and device lifecycle on top of the identity allocator.

Registration claims a slot and issues the device credential in the same
transaction. Deletes remove devices, heartbeat history and commands
explicitly; project public ids are never handed out again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import NameConflict, UnknownEntity
from ..models import ACTIVE, ARCHIVED, Command, Device, HeartbeatEvent, Project, utcnow
from . import credentials
from .identity import allocate_device_slot, allocate_project_id


logger = logging.getLogger("fleet.identity")

_PROJECT_STATUSES = {ACTIVE, ARCHIVED}


def _normalize_name(value: str | None, *, what: str) -> str:
    name = (value or "").strip()
    if not name:
        raise ValueError(f"{what} name cannot be empty")
    return name


def _is_violation(exc: IntegrityError, *markers: str) -> bool:
    text = str(getattr(exc, "orig", exc))
    return any(m in text for m in markers)


def create_project(
    session: Session,
    *,
    name: str,
    owner: str,
    description: str | None = None,
    now: datetime | None = None,
) -> Project:
    ts = now or utcnow()
    clean_name = _normalize_name(name, what="Project")
    public_id = allocate_project_id(session)

    project = Project(
        public_id=public_id,
        name=clean_name,
        description=(description or "").strip() or None,
        owner=owner,
        status=ACTIVE,
        created_at=ts,
        updated_at=ts,
    )
    session.add(project)
    try:
        session.flush()
    except IntegrityError as exc:
        if _is_violation(exc, "uq_projects_public_id", "projects.public_id"):
            # The counter is the only writer of public ids; a collision here
            # means the store was edited by hand.
            raise
        raise NameConflict(
            f'Project name "{clean_name}" already exists. Please choose a different name.',
            name=clean_name,
        ) from exc

    logger.info(
        "project_created",
        extra={"fields": {"project_id": public_id, "owner": owner}},
    )
    return project


def get_project(session: Session, public_id: str) -> Project:
    project = session.query(Project).filter(Project.public_id == public_id).one_or_none()
    if project is None:
        raise UnknownEntity(f'Project "{public_id}" not found')
    return project


def list_projects(session: Session, *, owner: str | None = None) -> list[Project]:
    q = session.query(Project)
    if owner:
        q = q.filter(Project.owner == owner)
    return q.order_by(Project.created_at.asc(), Project.public_id.asc()).all()


def update_project(
    session: Session,
    public_id: str,
    *,
    status: str | None = None,
    description: str | None = None,
    now: datetime | None = None,
) -> Project:
    project = get_project(session, public_id)
    if status is not None:
        if status not in _PROJECT_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(sorted(_PROJECT_STATUSES))}")
        project.status = status
    if description is not None:
        project.description = description.strip() or None
    project.updated_at = now or utcnow()
    return project


def _delete_devices(session: Session, device_ids: list[str]) -> None:
    if not device_ids:
        return
    session.execute(delete(HeartbeatEvent).where(HeartbeatEvent.device_id.in_(device_ids)))
    session.execute(delete(Command).where(Command.device_id.in_(device_ids)))
    session.execute(delete(Device).where(Device.id.in_(device_ids)))


def delete_project(session: Session, public_id: str) -> None:
    """Delete a project with its devices, heartbeat history and commands.

    The public id is not returned to the counter.
    """

    project = get_project(session, public_id)
    device_ids = list(session.scalars(select(Device.id).where(Device.project_id == project.id)))
    _delete_devices(session, device_ids)
    session.execute(delete(Project).where(Project.id == project.id))
    logger.info(
        "project_deleted",
        extra={"fields": {"project_id": public_id, "devices_deleted": len(device_ids)}},
    )


@dataclass(frozen=True)
class RegisteredDevice:
    device: Device
    secret: str


def register_device(
    session: Session,
    public_id: str,
    *,
    slot: int,
    name: str,
    now: datetime | None = None,
) -> RegisteredDevice:
    """Claim a slot and issue its credential in one transaction.

    The plaintext secret exists only in the returned value.
    """

    ts = now or utcnow()
    display_name = _normalize_name(name, what="Device")
    project = get_project(session, public_id)
    device = allocate_device_slot(session, project, slot, display_name=display_name, now=ts)

    secret = credentials.issue(session, device.id, now=ts)
    session.refresh(device)
    return RegisteredDevice(device=device, secret=secret)


def list_devices(session: Session, public_id: str) -> list[Device]:
    project = get_project(session, public_id)
    return (
        session.query(Device)
        .filter(Device.project_id == project.id)
        .order_by(Device.slot.asc())
        .all()
    )


def get_device_by_composite_id(session: Session, composite_id: str) -> Device:
    device = session.query(Device).filter(Device.composite_id == composite_id).one_or_none()
    if device is None:
        raise UnknownEntity(f"Device {composite_id} is not registered")
    return device


def delete_device(session: Session, composite_id: str) -> None:
    device = get_device_by_composite_id(session, composite_id)
    _delete_devices(session, [device.id])
    logger.info("device_deleted", extra={"fields": {"composite_id": composite_id}})
