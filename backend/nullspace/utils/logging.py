from __future__ import annotations

import logging
import sys

from nullspace import config


def setup_logging() -> logging.Logger:
    """Configure root logging from NULLSPACE_LOG_LEVEL."""
    logging.basicConfig(
        level=getattr(logging, config.log_level().upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    return logging.getLogger("nullspace")
