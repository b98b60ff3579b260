"""
RTSM - Logging Setup
====================
Configures the standard library root logger once per process.
"""

import logging
import sys
from typing import Optional

from rtsm.config import get_settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    """Configure console logging. Later calls only adjust the level."""
    global _configured

    level_name = (level or get_settings().LOG_LEVEL).upper()
    root = logging.getLogger()
    root.setLevel(level_name)

    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    # SQL echo is controlled by DB_ECHO, keep the engine logger quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
