from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Union

from sqlalchemy.orm import Session

from ..errors import CredentialMismatch, MalformedIdentifier, UnknownEntity
from ..models import Device
from .credentials import verify_device_secret


# PROJ1-ESP5, P1000-ESP20. Besides the 4-5 character prefixes, PROJ10..PROJ999
# are accepted because the allocator emits them.
COMPOSITE_ID_RE = re.compile(r"^(?:[A-Z0-9]{4,5}|PROJ[1-9][0-9]{1,2})-ESP(1[0-9]|20|[1-9])$")


@dataclass(frozen=True)
class InternalId:
    value: str


@dataclass(frozen=True)
class CompositeId:
    value: str


DeviceRef = Union[InternalId, CompositeId]


def parse_device_ref(*, device_uuid: str | None, composite_id: str | None) -> DeviceRef:
    """Turn the two identity headers into one reference.

    Validation happens here, before any store access. When both headers are
    sent the composite id wins.
    """

    composite = (composite_id or "").strip()
    internal = (device_uuid or "").strip()

    if composite:
        if not COMPOSITE_ID_RE.match(composite):
            raise MalformedIdentifier(
                "Invalid composite device ID format",
                expected="PROJ1-ESP5 (project ID + device number 1-20)",
            )
        return CompositeId(composite)

    if internal:
        try:
            parsed = uuid.UUID(internal)
        except ValueError:
            raise MalformedIdentifier("Invalid device UUID") from None
        return InternalId(str(parsed))

    raise MalformedIdentifier(
        "Missing device identifier",
        expected="x-device-uuid or x-composite-device-id header",
    )


def resolve_device(session: Session, ref: DeviceRef) -> Device | None:
    if isinstance(ref, CompositeId):
        return session.query(Device).filter(Device.composite_id == ref.value).one_or_none()
    return session.get(Device, ref.value)


def authenticate_device(session: Session, ref: DeviceRef, presented_secret: str) -> Device:
    device = resolve_device(session, ref)
    ok = verify_device_secret(device, presented_secret)
    if device is None:
        raise UnknownEntity(f"Device {ref.value} is not registered")
    if not ok:
        raise CredentialMismatch("Device key does not match stored hash")
    return device


def safe_display_name(device_id: str, display_name: str | None) -> str:
    """Return a UI-safe display name even for legacy/null rows."""
    candidate = (display_name or "").strip()
    if candidate:
        return candidate
    return device_id
