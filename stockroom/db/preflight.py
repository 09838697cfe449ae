"""
Startup connectivity check for the stockroom database.
"""
import time

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError

from stockroom.core.config import settings
from stockroom.core.logging import get_logger

logger = get_logger(__name__)

_AUTH_FAILURE_MARKERS = ("password authentication failed", "access denied")


def _describe_target(url: str) -> str:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        return f"sqlite:{parsed.database or 'memory'}"
    return f"{parsed.get_backend_name()}://{parsed.host}:{parsed.port}/{parsed.database}"


def run_db_preflight(retries: int = 5, delay: float = 2) -> bool:
    """
    Run ``SELECT 1`` until it succeeds or ``retries`` is exhausted.

    Authentication errors stop immediately. Exits the process on failure so
    the container orchestrator can restart it.
    """
    from stockroom.db.session import engine

    target = _describe_target(settings.DATABASE_URL)
    logger.info(f"DB preflight against {target}")

    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError as e:
            reason = str(e.orig) if e.orig is not None else str(e)
            if any(marker in reason.lower() for marker in _AUTH_FAILURE_MARKERS):
                logger.error(f"DB authentication failed for user {settings.POSTGRES_USER} on {target}")
                raise SystemExit(1)
            if attempt == retries:
                logger.error(f"DB unreachable after {retries} attempts: {reason}")
                raise SystemExit(1)
            logger.warning(f"DB preflight attempt {attempt}/{retries} failed, retrying in {delay}s")
            time.sleep(delay)
        else:
            logger.info("DB preflight passed")
            return True
    return False


if __name__ == "__main__":
    run_db_preflight()
