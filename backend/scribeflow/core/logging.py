import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from loguru import logger

from scribeflow.core.config import Settings, settings as default_settings

# Libraries that log every request at INFO; kept quiet unless DEBUG is on
CHATTY_LOGGERS = ("httpx", "httpcore", "asyncio")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | "
    "<level>{message}</level>"
)
DEBUG_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    """
    Route standard library log records into loguru

    httpx and httpcore report connection and request events through the
    logging module; this keeps them in the same sinks as our own messages.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip logging's own frames so loguru reports the real caller
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def serialize_record(record: Dict[str, Any]) -> str:
    """
    Render a loguru record as one JSON line

    Args:
        record: The loguru record dict

    Returns:
        A format template that loguru expands to the JSON line
    """
    payload = {
        "time": record["time"].isoformat(),
        "level": record["level"].name,
        "logger": record["name"],
        "location": f"{record['function']}:{record['line']}",
        "message": record["message"],
    }
    payload.update(record["extra"])

    exception = record["exception"]
    if exception:
        payload["error_type"] = exception.type.__name__ if exception.type else None
        payload["error"] = str(exception.value)

    # loguru treats the returned string as a template, so braces are escaped
    return json.dumps(payload, default=str).replace("{", "{{").replace("}", "}}") + "\n"


def _file_handlers(config: Settings, level: str) -> List[Dict[str, Any]]:
    os.makedirs(config.LOG_DIR, exist_ok=True)
    production = config.ENVIRONMENT == "production"
    handlers = [
        {
            "sink": os.path.join(config.LOG_DIR, f"{config.ENVIRONMENT}_error.log"),
            "format": serialize_record if production else DEBUG_CONSOLE_FORMAT,
            "level": "ERROR",
            "rotation": "10 MB",
            "retention": "30 days",
            "compression": "zip",
            "enqueue": True,
        }
    ]
    if production:
        handlers.append(
            {
                "sink": os.path.join(config.LOG_DIR, f"{config.ENVIRONMENT}_transcriptions.log"),
                "format": serialize_record,
                "level": level,
                "rotation": "50 MB",
                "retention": "7 days",
                "compression": "zip",
                "enqueue": True,
            }
        )
    return handlers


def setup_logging(config: Optional[Settings] = None) -> None:
    """
    Configure loguru sinks for a scribeflow process

    Progress lines own stdout/stderr in the CLI, so the console sink is
    terse unless DEBUG is set. With LOG_TO_FILE an error log is written to
    LOG_DIR, plus a JSON log of every transcription in production.
    """
    config = config or default_settings
    level = "DEBUG" if config.DEBUG else "INFO"

    handlers: List[Dict[str, Any]] = [
        {
            "sink": sys.stderr,
            "format": DEBUG_CONSOLE_FORMAT if config.DEBUG else CONSOLE_FORMAT,
            "level": level,
            "diagnose": config.DEBUG,
            "backtrace": config.DEBUG,
        }
    ]
    if config.LOG_TO_FILE:
        handlers.extend(_file_handlers(config, level))
    logger.configure(handlers=handlers)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    library_level = logging.DEBUG if config.DEBUG else logging.WARNING
    for name in CHATTY_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.handlers = [InterceptHandler()]
        library_logger.setLevel(library_level)
        library_logger.propagate = False

    logger.debug(f"Logging configured for {config.ENVIRONMENT} at {level} level")
