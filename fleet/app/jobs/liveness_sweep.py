from __future__ import annotations

import logging
import time

from ..config import settings
from ..db import engine, db_session
from ..migrations import maybe_run_startup_migrations
from ..observability import configure_logging, record_liveness_sweep_metric
from ..services.liveness import sweep_offline_devices


logger = logging.getLogger("fleet.job.liveness_sweep")


def run_sweep() -> list[str]:
    """One sweep pass in its own transaction. Returns the devices marked offline."""

    start = time.perf_counter()
    success = False
    flipped: list[str] = []
    try:
        with db_session() as session:
            flipped = sweep_offline_devices(session, offline_after_s=settings.offline_after_s)
        success = True
        return flipped
    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0
        record_liveness_sweep_metric(duration_ms=duration_ms, success=success, flipped=len(flipped))


def main() -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    # For job runners, it's convenient to ensure schema exists.
    maybe_run_startup_migrations(engine=engine)

    flipped = run_sweep()
    logger.info("liveness_sweep complete", extra={"fields": {"offline": len(flipped)}})


if __name__ == "__main__":
    main()
