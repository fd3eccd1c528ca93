"""
AccountDirectory Service Entry Point.

Bootstraps the dependency graph via constructor injection, initialises
the local SQLite cache schema, and runs the ingestion consumer until the
process is interrupted.

Usage::

    python main.py
"""

from __future__ import annotations

import atexit
import signal
import sys
import threading
from pathlib import Path
from types import FrameType
from typing import Optional

from accountdir.config import get_config
from accountdir.database import DatabaseManager
from accountdir.logger import StructuredLogger, get_logger
from accountdir.schema import initialize_schema
from accountdir.services import create_services


def main() -> None:
    """Wire dependencies and run the ingestion consumer."""
    logger: StructuredLogger = get_logger("main")
    logger.info("Starting AccountDirectory...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Database Manager (Supabase optional, SQLite cache always)
    # ------------------------------------------------------------------
    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
        sqlite_path=Path(config.SQLITE_PATH),
        logger=StructuredLogger(name="database"),
    )
    # close() is idempotent; this covers exits that skip the finally below.
    atexit.register(db.close)

    # ------------------------------------------------------------------
    # 3. SQLite cache schema (idempotent)
    # ------------------------------------------------------------------
    initialize_schema(db.sqlite, StructuredLogger(name="schema"))

    # ------------------------------------------------------------------
    # 4. Service Container
    # ------------------------------------------------------------------
    services = create_services(config=config, db=db)
    consumer = services["ingestion_consumer"]

    # ------------------------------------------------------------------
    # 5. Run until SIGINT / SIGTERM
    # ------------------------------------------------------------------
    shutdown = threading.Event()

    def _request_shutdown(signum: int, _frame: Optional[FrameType]) -> None:
        logger.info("Received signal %d, shutting down.", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)

    consumer.start()
    try:
        while not shutdown.wait(timeout=1.0):
            if not consumer.is_running:
                logger.error("Ingestion consumer stopped unexpectedly.")
                break
    finally:
        consumer.stop()
        publisher = services["confirmation_publisher"]
        if publisher is not None:
            publisher.close()
        db.close()
        logger.info("AccountDirectory shut down. Ingestion totals: %s", consumer.status())


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n")
        sys.exit(1)
