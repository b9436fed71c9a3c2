"""Loguru sink setup: local-time stamps and a lottery tag on every line."""

import os
import sys
from datetime import datetime

import pytz
from loguru import logger

LOG_FORMAT = (
    "{extra[local_time]} | {level: <8} | {extra[lottery]: <8} | "
    "{name}:{function}:{line} - {message}"
)


def configure_logging(level: str = "INFO", log_dir: str = None, timezone_name: str = "America/Sao_Paulo") -> None:
    """
    Replaces loguru's default sink with stderr + rotating file sinks.

    Args:
        level: Minimum level for both sinks
        log_dir: Directory for drawcapture.log (file sink skipped when None)
        timezone_name: Operating timezone used for the timestamp column
    """
    tz = pytz.timezone(timezone_name)

    def _patch(record):
        record["extra"].setdefault("lottery", "-")
        record["extra"]["local_time"] = (
            datetime.fromtimestamp(record["time"].timestamp(), tz).strftime("%Y-%m-%d %H:%M:%S%z")
        )

    logger.remove()
    logger.configure(patcher=_patch, extra={"lottery": "-"})
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        logger.add(
            os.path.join(log_dir, "drawcapture.log"),
            level=level,
            format=LOG_FORMAT,
            rotation="10 MB",
            retention="14 days",
            encoding="utf-8",
        )
