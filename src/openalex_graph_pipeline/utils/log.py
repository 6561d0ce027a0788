# utils/log.py
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, cast

import structlog

# Loggers that report every routine event at INFO
NOISY_LOGGERS = ("neo4j", "httpx", "httpcore", "hpack")


def _shared_processors() -> list[Any]:
    # no renderer here, each handler's ProcessorFormatter adds its own
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _handler(handler: logging.Handler, level: int, renderer: Any) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processors=[*_shared_processors(), renderer])
    )
    return handler


def setup_logging(
    session_id: str | None = None,
    log_level: str = "INFO",
    console_output: bool = True,
    log_dir: Path | None = None,
) -> Path:
    """
    Route structlog through stdlib logging into a JSONL run log and, optionally, the console.

    Args:
        session_id: Run identifier used in the log file name
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        console_output: Also render human-readable lines to stderr
        log_dir: Directory for run logs (default: ./logs)

    Returns:
        Path of the JSONL run log.
    """
    log_dir = log_dir or Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    session_id = session_id or datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"pipeline_{session_id}.jsonl"

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.root.handlers.clear()
    logging.root.setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if console_output:
        logging.root.addHandler(
            _handler(logging.StreamHandler(), level, structlog.dev.ConsoleRenderer())
        )
    # the JSONL file is always written, even with --quiet
    logging.root.addHandler(
        _handler(
            logging.FileHandler(log_file, mode="a", encoding="utf-8"),
            level,
            structlog.processors.JSONRenderer(),
        )
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return log_file


def bind_run_context(**values: Any) -> None:
    """Attach ``values`` (session id, command, environment) to every later log line."""
    structlog.contextvars.bind_contextvars(**values)


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a bound logger for a module/package."""
    return cast(structlog.BoundLogger, structlog.get_logger(name))
