from __future__ import annotations

import argparse
import logging

from sqlalchemy import create_engine

from ..config import settings
from ..db import engine
from ..migrations import upgrade_head
from ..observability import configure_logging


logger = logging.getLogger("fleet.job.migrate")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Apply fleet database migrations (alembic upgrade head).")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for this run (e.g. a staging database).",
    )
    args = parser.parse_args(argv)

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    if args.database_url:
        target = create_engine(args.database_url, pool_pre_ping=True)
        try:
            upgrade_head(engine=target, database_url=args.database_url)
            dialect = target.dialect.name
        finally:
            target.dispose()
    else:
        upgrade_head(engine=engine)
        dialect = engine.dialect.name

    logger.info("migrate complete", extra={"fields": {"dialect": dialect}})


if __name__ == "__main__":
    main()
