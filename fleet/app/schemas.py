from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Operator API
# ---------------------------------------------------------------------------


class ProjectCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = Field(None, max_length=1024)


class ProjectCreateOut(BaseModel):
    success: bool = True
    project_id: str
    id: str
    created_at: datetime


class ProjectOut(BaseModel):
    project_id: str
    id: str
    name: str
    description: Optional[str]
    owner: str
    status: str
    device_count: int = 0
    created_at: datetime
    updated_at: datetime


class ProjectUpdateIn(BaseModel):
    status: Optional[Literal["active", "archived"]] = None
    description: Optional[str] = Field(None, max_length=1024)


class SlotOut(BaseModel):
    slot: int
    slot_tag: str
    available: bool


class DeviceRegisterIn(BaseModel):
    slot: int = Field(..., description="Operator-chosen device number (1-20)")
    name: str = Field(..., min_length=1, max_length=256)


class DeviceOut(BaseModel):
    composite_device_id: str
    id: str
    project_id: str
    slot: int
    name: str
    status: str
    last_seen_at: Optional[datetime]
    seconds_since_last_seen: Optional[int]
    firmware_version: Optional[str]
    ip_address: Optional[str]
    hostname: Optional[str]
    rssi: Optional[int]
    has_credential: bool
    pending_commands: int = 0
    created_at: datetime


class DeviceRegisterOut(BaseModel):
    """Registration result. ``secret`` is shown exactly once."""

    success: bool = True
    composite_device_id: str
    id: str
    secret: str
    created_at: datetime


class SecretRotateOut(BaseModel):
    success: bool = True
    composite_device_id: str
    secret: str
    issued_at: datetime


class CommandCreateIn(BaseModel):
    actuator_id: str = Field(..., min_length=1, max_length=64)
    command_type: str = Field(..., pattern=r"^[a-z][a-z0-9_]{0,63}$")
    value: Optional[float] = None


class CommandOut(BaseModel):
    id: str
    composite_device_id: str
    actuator_id: str
    command_type: str
    value: Optional[float]
    status: str
    created_at: datetime
    confirmed_at: Optional[datetime]


class CancelOut(BaseModel):
    success: bool = True
    cancelled: int


class DeleteOut(BaseModel):
    success: bool = True


# ---------------------------------------------------------------------------
# Device protocol
# ---------------------------------------------------------------------------


class HeartbeatIn(BaseModel):
    """Heartbeat telemetry. Every field is optional; unknown keys are kept."""

    model_config = ConfigDict(extra="allow")

    rssi: Optional[int] = Field(None, ge=-150, le=0)
    fw_version: Optional[str] = Field(None, max_length=64)
    ip_address: Optional[str] = Field(None, max_length=64)
    device_hostname: Optional[str] = Field(None, max_length=128)


class HeartbeatOut(BaseModel):
    success: bool = True
    device_id: str
    status: str
    timestamp: datetime


class PendingCommandOut(BaseModel):
    id: str
    actuator_id: str
    command_type: str
    value: Optional[float]


class ConfirmIn(BaseModel):
    command_id: str = Field(..., min_length=1, max_length=64)


class ConfirmOut(BaseModel):
    success: bool = True
    command_id: str
