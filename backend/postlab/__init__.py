"""PostLab - draft a post, get a simulated engagement analysis back."""

import os
import sys

from loguru import logger

__version__ = "0.1.0"

# Structured logging for internal operations; rich handles CLI output in cli.py
logger.remove()
logger.add(
    sys.stderr,
    format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
    level=os.getenv("POSTLAB_LOG_LEVEL", "INFO").upper(),
    colorize=True,
)
