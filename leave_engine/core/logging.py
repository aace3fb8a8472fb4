"""
Logging configuration for the Leave Accounting Engine
"""
import logging
import sys
from typing import Optional

from leave_engine.core.config import settings

# Chatty in DEBUG; ledger decisions are logged by the services themselves
QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "alembic": logging.INFO,
    "multipart": logging.WARNING,
}


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging once per process

    Args:
        level: Overrides settings.LOG_LEVEL (scripts pass DEBUG for --verbose)
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=level is not None,
    )

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logging.getLogger(__name__).info(
        "Logging configured: level=%s, env=%s", level_name, settings.APP_ENV
    )
