"""
Loguru setup for ragcore.

Provider errors often echo the request back, so every record passes through
a patcher that masks API keys before any sink sees it.
"""
from __future__ import annotations

import re
import sys
from pathlib import Path

from loguru import logger

from ragcore.config import LoggingSettings

_API_KEY = re.compile(r"\b(sk-(?:ant-)?)[A-Za-z0-9_\-]{8,}")

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} - {message}"


def mask_secrets(text: str) -> str:
    return _API_KEY.sub(r"\1***", text)


def _redact(record) -> None:
    record["message"] = mask_secrets(record["message"])


def setup_logger(settings: LoggingSettings | None = None) -> None:
    """
    Replace loguru's handlers with a coloured stderr sink and, when
    `settings.file` is set, a rotating file sink.
    """
    settings = settings or LoggingSettings()
    logger.remove()
    logger.configure(patcher=_redact)

    logger.add(sys.stderr, level=settings.level, format=CONSOLE_FORMAT, colorize=True)

    if settings.file:
        Path(settings.file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.file,
            level=settings.level,
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            enqueue=True,
            # tracebacks with local variables would print credentials
            diagnose=False,
        )

    logger.info(f"[Logger] Initialised | level={settings.level} | file={settings.file or '-'}")
