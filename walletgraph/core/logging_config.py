"""
Logging setup for worker processes and scripts.

Library modules only ever call logging.getLogger(__name__); entry points
(ARQ startup, admin CLI, migrations) call configure_logging() once.
"""
import logging
from typing import Optional

from walletgraph.core.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers that drown out job progress at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "arq.worker", "sqlalchemy.engine")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging. Safe to call more than once."""
    resolved = (level or settings.LOG_LEVEL or "INFO").upper()

    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )

    if not settings.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
