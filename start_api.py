#!/usr/bin/env python3
"""Wait for the DB, run migrations, seed the demo catalog, then exec uvicorn."""
import logging
import os
import sys

from alembic import command
from alembic.config import Config

import wait_for_db

logger = logging.getLogger("start_api")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="[start_api] %(message)s")
    from hotelbooking.core.config import settings

    wait_for_db.wait(settings.DATABASE_URL)

    alembic_cfg = Config(os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
    command.upgrade(alembic_cfg, "head")
    logger.info("migrations applied")

    if os.getenv("SKIP_SEED", "").lower() not in ("1", "true", "yes"):
        from hotelbooking.db.session import SessionLocal
        from hotelbooking.seed import run as run_seed
        db = SessionLocal()
        try:
            run_seed(db)
        finally:
            db.close()

    port = os.getenv("PORT", "8000")
    os.execv(
        sys.executable,
        [sys.executable, "-m", "uvicorn", "hotelbooking.main:app", "--host", "0.0.0.0", "--port", port],
    )


if __name__ == "__main__":
    main()
