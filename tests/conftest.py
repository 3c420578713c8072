from __future__ import annotations

import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from types import SimpleNamespace
from typing import Iterator

import pytest

# Settings and the engine are built at import time; point them at SQLite and a
# cheap hash cost before any fleet.app module is imported.
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+pysqlite:///{Path(tempfile.gettempdir()) / 'fleet-tests-default.sqlite3'}",
)
os.environ.setdefault("ADMIN_API_KEY", "test-admin")
os.environ.setdefault("TOKEN_PBKDF2_ITERATIONS", "1000")
os.environ.setdefault("AUTO_MIGRATE", "0")
os.environ.setdefault("ENABLE_SCHEDULER", "0")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from fleet.app.db import Base  # noqa: E402
import fleet.app.models  # noqa: F401,E402


def _db_override(tmp_path: Path):
    db_path = tmp_path / "fleet.sqlite3"
    engine = create_engine(f"sqlite+pysqlite:///{db_path}")
    Base.metadata.create_all(engine)
    session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    @contextmanager
    def _db_session():
        session = session_local()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return engine, session_local, _db_session


@pytest.fixture()
def fleet_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[SimpleNamespace]:
    """Per-test SQLite store wired into every module that opens sessions."""

    from fleet.app.jobs import liveness_sweep as liveness_sweep_job
    from fleet.app.rate_limit import device_request_limiter
    from fleet.app.routes import admin as admin_routes
    from fleet.app.routes import device_protocol as device_routes
    from fleet.app import security

    engine, session_local, db_session = _db_override(tmp_path)
    for module in (admin_routes, device_routes, security, liveness_sweep_job):
        monkeypatch.setattr(module, "db_session", db_session)
    device_request_limiter.reset()

    yield SimpleNamespace(engine=engine, session_local=session_local, db_session=db_session)
    engine.dispose()
