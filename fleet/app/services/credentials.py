from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone
from functools import lru_cache

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import CredentialAlreadyIssued, UnknownEntity
from ..models import Device, utcnow


logger = logging.getLogger("fleet.credentials")


SECRET_BYTES = 32


# -----------------------------------------------------------------------------
# Device secret hashing
#
# PBKDF2-HMAC-SHA256 with an explicit iteration count.
# Format:
#   pbkdf2_sha256$<iterations>$<salt_b64>$<hash_b64>
# -----------------------------------------------------------------------------


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def generate_secret() -> str:
    """64 hex chars; short enough to type into a device captive portal."""
    return secrets.token_hex(SECRET_BYTES)


def hash_secret(secret: str, *, iterations: int | None = None) -> str:
    salt = secrets.token_bytes(16)
    rounds = int(iterations if iterations is not None else settings.token_pbkdf2_iterations)
    dk = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt, rounds)
    return f"pbkdf2_sha256${rounds}${_b64url(salt)}${_b64url(dk)}"


def verify_secret(secret: str, secret_hash: str) -> bool:
    try:
        parts = secret_hash.split("$")
        if len(parts) != 4:
            return False
        scheme, iterations_s, salt_b64, dk_b64 = parts
        if scheme != "pbkdf2_sha256":
            return False
        iterations = int(iterations_s)
        salt = _b64url_decode(salt_b64)
        expected = _b64url_decode(dk_b64)
        got = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt, iterations)
        return hmac.compare_digest(got, expected)
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=4)
def _dummy_hash(iterations: int) -> str:
    return hash_secret(secrets.token_hex(SECRET_BYTES), iterations=iterations)


def verify_device_secret(device: Device | None, presented: str) -> bool:
    """Verify a presented secret against a device row.

    Unknown devices and devices without an issued credential are checked
    against a throwaway hash with the configured cost, so the time spent does
    not reveal which of "unknown device" or "wrong secret" applies.
    """

    stored = device.secret_hash if device is not None else None
    if not stored:
        verify_secret(presented, _dummy_hash(int(settings.token_pbkdf2_iterations)))
        return False
    return verify_secret(presented, stored)


def verify(session: Session, device_id: str, presented: str) -> bool:
    device = session.get(Device, device_id)
    return verify_device_secret(device, presented)


def _normalize_opt_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def issue(session: Session, device_id: str, *, now: datetime | None = None) -> str:
    """Issue the first credential for a device and return the plaintext once.

    Re-issuing is rejected with CredentialAlreadyIssued. Replacing a secret is
    the explicit ``rotate`` operation.
    """

    ts = _normalize_opt_utc(now) or utcnow()
    secret = generate_secret()
    result = session.execute(
        update(Device)
        .where(Device.id == device_id, Device.secret_hash.is_(None))
        .values(secret_hash=hash_secret(secret), secret_issued_at=ts, updated_at=ts)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount != 1:
        if session.get(Device, device_id) is None:
            raise UnknownEntity(f"Device '{device_id}' not found")
        raise CredentialAlreadyIssued(
            f"Device '{device_id}' already holds a credential; rotate it explicitly instead"
        )
    logger.info("credential_issued", extra={"fields": {"device_id": device_id}})
    return secret


def rotate(session: Session, device_id: str, *, now: datetime | None = None) -> str:
    """Replace a device secret. The previous secret stops verifying immediately."""

    ts = _normalize_opt_utc(now) or utcnow()
    secret = generate_secret()
    result = session.execute(
        update(Device)
        .where(Device.id == device_id)
        .values(secret_hash=hash_secret(secret), secret_issued_at=ts, updated_at=ts)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount != 1:
        raise UnknownEntity(f"Device '{device_id}' not found")
    logger.info("credential_rotated", extra={"fields": {"device_id": device_id}})
    return secret
