"""Bring the learning calendar schema up to date before the services start.

The runner waits for the configured database, upgrades it with Alembic and
then confirms the database reports the requested revision. At head it also
checks that every table mapped by the calendar ORM exists.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from alembic.util import CommandError
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from learning_calendar.config import get_settings
from learning_calendar.db import models  # noqa: F401  registers tables on Base.metadata
from learning_calendar.db.base import Base
from learning_calendar.logging_config import configure_logging

logger = logging.getLogger("learning_calendar.migrations")

BACKEND_ROOT = Path(__file__).resolve().parent.parent
ALEMBIC_INI = BACKEND_ROOT / "alembic.ini"


class SchemaNotReadyError(RuntimeError):
    """Raised when the calendar database is unreachable or not at the expected schema."""


def calendar_config(database_url: Optional[str] = None, ini_path: Path = ALEMBIC_INI) -> Config:
    """Alembic config bound to the calendar revisions and the configured database."""
    url = database_url or get_settings().database_url
    if not url:
        raise SchemaNotReadyError("LEARNING_CALENDAR_DATABASE_URL must be set before running migrations.")
    config = Config(str(ini_path))
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    # configparser interpolates '%', which URL-encoded passwords contain.
    config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return config


def wait_until_reachable(engine: Engine, *, timeout: float, poll_interval: float) -> int:
    """Probe with ``SELECT 1`` until the database answers; returns the attempts used."""
    deadline = time.monotonic() + timeout
    attempts = 0
    while True:
        attempts += 1
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return attempts
        except OperationalError as exc:
            if time.monotonic() >= deadline:
                raise SchemaNotReadyError(
                    f"Calendar database unreachable after {attempts} attempt(s)."
                ) from exc
            logger.warning("Calendar database not reachable yet (attempt %d): %s", attempts, exc)
            time.sleep(poll_interval)


def missing_calendar_tables(engine: Engine) -> List[str]:
    present = set(inspect(engine).get_table_names())
    return sorted(name for name in Base.metadata.tables if name not in present)


def verify_schema(engine: Engine, config: Config, revision: str = "head") -> str:
    """Return the database revision, or raise when it is not the one requested."""
    scripts = ScriptDirectory.from_config(config)
    head = scripts.get_current_head()
    target = head if revision == "head" else scripts.get_revision(revision).revision

    with engine.connect() as connection:
        current = MigrationContext.configure(connection).get_current_revision()
    if current != target:
        raise SchemaNotReadyError(f"Calendar schema is at {current or 'base'}, expected {target}.")

    if target == head:
        missing = missing_calendar_tables(engine)
        if missing:
            raise SchemaNotReadyError(f"Calendar tables missing at {target}: {', '.join(missing)}")
    return current


def run_migrations(
    revision: str = "head",
    *,
    timeout: float = 60.0,
    poll_interval: float = 3.0,
    config: Optional[Config] = None,
) -> str:
    config = config or calendar_config()
    engine = create_engine(config.get_main_option("sqlalchemy.url"), pool_pre_ping=True)
    try:
        attempts = wait_until_reachable(engine, timeout=timeout, poll_interval=poll_interval)
        logger.info("Calendar database reachable after %d attempt(s); upgrading to %s", attempts, revision)
        command.upgrade(config, revision)
        current = verify_schema(engine, config, revision)
    finally:
        engine.dispose()
    logger.info("Calendar schema verified at %s", current)
    return current


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Upgrade and verify the learning calendar schema.")
    parser.add_argument("revision", nargs="?", default="head", help="Target revision (default: head).")
    parser.add_argument("--timeout", type=float, default=60.0, help="Seconds to wait for the database.")
    parser.add_argument("--poll-interval", type=float, default=3.0, help="Seconds between probes.")
    args = parser.parse_args(argv)

    configure_logging()
    try:
        run_migrations(args.revision, timeout=args.timeout, poll_interval=args.poll_interval)
    except (SchemaNotReadyError, CommandError, SQLAlchemyError) as exc:
        logger.error("Calendar migration failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
