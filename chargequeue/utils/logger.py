# chargequeue/utils/logger.py
"""
Logging setup shared by every module.

Messages carry a component tag such as "[QUEUE]" or "[SESSION]". The tag is
lifted into its own column so that the console and logs/chargequeue.log can
be filtered per component. Chatty client libraries are held at WARNING.
"""

import logging
import os
import re
from logging.handlers import RotatingFileHandler

from chargequeue.config import settings

LOG_LEVEL = settings.LOG_LEVEL.upper()
LOG_DIR = settings.LOG_DIR or os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "logs")

_TAG = re.compile(r"^\[([A-Z]+)\]\s*")
_configured = False


class ComponentFilter(logging.Filter):
    """Move a leading "[TAG]" out of the message into record.component."""

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, "component"):
            return True
        msg = record.msg if isinstance(record.msg, str) else str(record.msg)
        match = _TAG.match(msg)
        if match:
            record.component = match.group(1)
            record.msg = msg[match.end():]
        else:
            record.component = record.name.rsplit(".", 1)[-1].upper()
        return True


def _configure_root_logger():
    global _configured
    if _configured:
        return
    _configured = True
    os.makedirs(LOG_DIR, exist_ok=True)

    fmt = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(component)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    components = ComponentFilter()

    console = logging.StreamHandler()
    console.setLevel(LOG_LEVEL)
    console.setFormatter(fmt)
    console.addFilter(components)

    # 10 × 5MB
    file_handler = RotatingFileHandler(
        filename=os.path.join(LOG_DIR, "chargequeue.log"),
        maxBytes=5 * 1024 * 1024,
        backupCount=10,
        encoding="utf-8",
    )
    file_handler.setLevel(LOG_LEVEL)
    file_handler.setFormatter(fmt)
    file_handler.addFilter(components)

    root = logging.getLogger()
    root.setLevel(LOG_LEVEL)
    root.addHandler(console)
    root.addHandler(file_handler)

    for name in filter(None, (n.strip() for n in settings.LOG_QUIET_LIBRARIES.split(","))):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Named logger for a module; configures the root handlers on first use."""
    _configure_root_logger()
    return logging.getLogger(name)
