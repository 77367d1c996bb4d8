"""
FAA Certification RAG - Logging Configuration
Loguru sinks for the API server and the index worker
"""

import logging
import sys
from loguru import logger

from certrag.core.config import Settings, settings as default_settings


# Standard-library loggers that log every HTTP exchange at INFO
NOISY_LOGGERS = (
    "azure.core.pipeline.policies.http_logging_policy",
    "azure.storage",
    "httpx",
    "httpcore",
)

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[process]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[process]} | {name}:{function}:{line} - {message}"


def setup_logging(process: str = "api", settings: Settings = None) -> None:
    """
    Configure logging for one process.

    Each process ("api", "worker") writes its own rotating file under logs/,
    so the worker's per-message output does not interleave with requests.
    """
    settings = settings or default_settings

    logger.remove()
    logger.configure(extra={"process": process})

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level="DEBUG" if settings.debug_mode else "INFO",
        colorize=True,
    )

    log_dir = settings.base_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / f"{process}.log",
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logging configured for {process} (debug={settings.debug_mode})")
