"""Block until the Postgres behind DATABASE_URL accepts connections."""
import logging
import os
import time
from urllib.parse import urlparse

import psycopg2

logger = logging.getLogger("wait_for_db")


def _dsn_parts(database_url: str) -> dict:
    # SQLAlchemy URLs carry a driver suffix psycopg2 does not understand
    url = database_url.replace("postgresql+psycopg2://", "postgresql://").replace("postgres://", "postgresql://")
    p = urlparse(url)
    return {
        "host": p.hostname or "db",
        "port": p.port or 5432,
        "user": p.username or "hotelbooking",
        "password": p.password or "hotelbooking",
        "dbname": (p.path or "/hotelbooking").lstrip("/") or "hotelbooking",
    }


def wait(database_url: str | None = None, timeout_s: int | None = None) -> None:
    database_url = database_url or os.getenv("DATABASE_URL")
    if not database_url:
        raise SystemExit("DATABASE_URL is not set")
    if not database_url.startswith(("postgres://", "postgresql")):
        return
    timeout_s = timeout_s if timeout_s is not None else int(os.getenv("DB_WAIT_TIMEOUT", "60"))
    parts = _dsn_parts(database_url)
    deadline = time.time() + timeout_s
    logger.info("waiting for Postgres at %s:%s db=%s (timeout=%ss)", parts["host"], parts["port"], parts["dbname"], timeout_s)
    while True:
        try:
            psycopg2.connect(**parts).close()
            logger.info("Postgres is ready")
            return
        except psycopg2.OperationalError:
            if time.time() > deadline:
                logger.error("timed out waiting for Postgres")
                raise
            time.sleep(1)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="[wait_for_db] %(message)s")
    wait()
