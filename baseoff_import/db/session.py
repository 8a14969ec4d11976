import logging
import os
import socket
from contextlib import closing
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from baseoff_import.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the application cannot reach the database."""
    logger.warning("Could not connect to database: %s", exc)
    logger.warning("The application will start but database operations will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    if url.get_backend_name() == "sqlite":
        return

    logger.warning(
        "Database connection settings: dialect=%s driver=%s host=%s port=%s database=%s user=%s SKIP_DB_INIT=%r",
        url.get_backend_name(),
        url.get_driver_name() or "default",
        url.host or "localhost",
        url.port or "(default)",
        url.database,
        url.username,
        os.getenv("SKIP_DB_INIT"),
    )

    host = url.host or "localhost"
    port = url.port or 5432

    try:
        with closing(socket.create_connection((host, port), timeout=2)):
            logger.warning("Socket check: able to reach %s:%s", host, port)
    except OSError as socket_err:
        logger.warning("Socket check: unable to reach %s:%s (%s)", host, port, socket_err)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        try:
            _engine = create_engine(settings.database_url, pool_pre_ping=True)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            # Create the engine anyway so callers can proceed (may still fail later).
            _engine = create_engine(settings.database_url, pool_pre_ping=True)
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    """Swap the process-wide engine (used by scripts and tests)."""
    global _engine
    _engine = engine
