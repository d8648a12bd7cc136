"""Logging setup shared by the worker and the host application"""

import logging
import sys

from .config import settings

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s.%(funcName)s:%(lineno)d %(message)s"

def setup_logging(level: str = None) -> None:
    """Configure root logging from settings.LOG_LEVEL"""
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
