from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException, status

from .config import settings
from .db import db_session
from .errors import CredentialMismatch, RateLimited
from .models import Device
from .rate_limit import device_request_limiter
from .services.device_identity import authenticate_device, parse_device_ref


logger = logging.getLogger("fleet.auth")


# -----------------------------------------------------------------------------
# Auth dependencies
# -----------------------------------------------------------------------------


def require_admin(
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
    x_operator: str | None = Header(default=None, alias="X-Operator"),
) -> str:
    """Operator authorization gate. Returns the acting operator.

    Modes
    - ADMIN_AUTH_MODE=key  (default): require X-Admin-Key and compare with ADMIN_API_KEY
    - ADMIN_AUTH_MODE=none           : trust the perimeter (VPN / reverse proxy)

    The operator name comes from X-Operator and falls back to
    DEFAULT_PROJECT_OWNER. It is recorded as the owner of created projects.
    """

    mode = getattr(settings, "admin_auth_mode", "key")
    if mode != "none":
        if (
            not x_admin_key
            or not settings.admin_api_key
            or not hmac.compare_digest(x_admin_key, settings.admin_api_key)
        ):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")

    actor = (x_operator or "").strip().lower()
    return actor or settings.default_project_owner


def require_device(
    x_device_uuid: str | None = Header(default=None, alias="x-device-uuid"),
    x_composite_device_id: str | None = Header(default=None, alias="x-composite-device-id"),
    x_device_key: str | None = Header(default=None, alias="x-device-key"),
) -> Device:
    """Resolve and authenticate the calling device from its protocol headers.

    Identifier format is checked before the store is touched (400). A missing or
    wrong key is 401 and an unknown device is 404. Only authenticated requests
    are rate limited (429).
    """

    ref = parse_device_ref(device_uuid=x_device_uuid, composite_id=x_composite_device_id)

    key = (x_device_key or "").strip()
    if not key:
        raise CredentialMismatch("Missing device key")

    with db_session() as session:
        device = authenticate_device(session, ref, key)

    # Spent after authentication; one bucket per device across both id forms.
    allowed, retry_after_s = device_request_limiter.allow(key=device.id)
    if not allowed:
        logger.warning(
            "device_rate_limited",
            extra={"fields": {"composite_id": device.composite_id, "retry_after_s": retry_after_s}},
        )
        raise RateLimited("Too many requests from this device", retry_after_s=retry_after_s)
    return device
