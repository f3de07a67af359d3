"""
Logging configuration
"""

import logging
import os
import sys

LOG_LEVEL_ENV_VAR = "LOYALTY_LOG_LEVEL"


def setup_logging(level: str = None):
    """Setup logging configuration"""
    level = (level or os.getenv(LOG_LEVEL_ENV_VAR, "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Set specific loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
