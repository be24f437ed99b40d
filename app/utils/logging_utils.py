import logging
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

from app.config import settings


def configure_logging(level: Optional[str] = None) -> None:
    if getattr(configure_logging, "_configured", False):
        return

    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    root.handlers = [handler]
    # httpx logs every request at INFO, which drowns out review progress
    logging.getLogger("httpx").setLevel(logging.WARNING)
    configure_logging._configured = True
