"""Logging setup: structlog events rendered as JSON lines by stdlib handlers.

Every event logged during a crawl carries ``spider`` and ``run_id``: the
engine binds them with :mod:`structlog.contextvars` and runs worker tasks in
a copy of that context. Per-spider log files select events on that field.
"""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Iterable

import structlog
from pythonjsonlogger import jsonlogger

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_LOGGING_INITIALISED = False


def default_log_dir() -> Path:
    env_root = os.environ.get("CRAWLFLOW_HOME")
    root = Path(env_root).expanduser() if env_root else Path.cwd()
    return root.resolve() / "logs"


class SpiderFilter(logging.Filter):
    """Pass only structlog events whose ``spider`` field matches."""

    def __init__(self, spider_name: str) -> None:
        super().__init__()
        self.spider_name = spider_name

    def filter(self, record: logging.LogRecord) -> bool:
        event = record.msg
        return isinstance(event, dict) and event.get("spider") == self.spider_name


def _file_handler(path: Path, level: str) -> dict[str, Any]:
    return {
        "class": "logging.FileHandler",
        "level": level,
        "filename": str(path),
        "formatter": "json",
        "encoding": "utf-8",
    }


def build_logging_config(log_dir: Path, verbose: bool = False) -> dict[str, Any]:
    """dictConfig payload: console, ``crawler.log`` and ``error.log`` under ``log_dir``."""

    level = "DEBUG" if verbose else "INFO"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"json": {"()": jsonlogger.JsonFormatter, "fmt": LOG_FORMAT}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "DEBUG" if verbose else "WARNING",
                "formatter": "json",
            },
            "crawler_file": _file_handler(log_dir / "crawler.log", level),
            "error_file": _file_handler(log_dir / "error.log", "ERROR"),
        },
        "loggers": {
            "crawlflow": {
                "handlers": ["console", "crawler_file", "error_file"],
                "level": level,
                "propagate": False,
            },
        },
    }


def configure_logging(verbose: bool = False, log_dir: Path | None = None) -> structlog.BoundLogger:
    """Install handlers once per process and return the application logger."""

    global _LOGGING_INITIALISED
    log_dir = log_dir or default_log_dir()
    (log_dir / "spiders").mkdir(parents=True, exist_ok=True)

    if not _LOGGING_INITIALISED:
        logging.config.dictConfig(build_logging_config(log_dir, verbose))
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    return structlog.get_logger("crawlflow")


def spider_logger(
    spider_name: str, verbose: bool = False, log_dir: Path | None = None
) -> structlog.BoundLogger:
    """Engine logger for one spider; its crawl events also go to ``spiders/<name>.log``."""

    log_dir = log_dir or default_log_dir()
    configure_logging(verbose, log_dir)
    path = log_dir / "spiders" / f"{spider_name}.log"

    root = logging.getLogger("crawlflow")
    if not any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(path)
        for handler in root.handlers
    ):
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
        handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        handler.addFilter(SpiderFilter(spider_name))
        root.addHandler(handler)

    return structlog.get_logger("crawlflow.engine").bind(spider=spider_name)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        lines = stream.readlines()
    return lines[-line_count:]


def available_spider_logs(log_dir: Path | None = None) -> Iterable[Path]:
    spiders_dir = (log_dir or default_log_dir()) / "spiders"
    if not spiders_dir.exists():
        return []
    return sorted(spiders_dir.glob("*.log"))


__all__ = [
    "LOG_FORMAT",
    "SpiderFilter",
    "available_spider_logs",
    "build_logging_config",
    "configure_logging",
    "default_log_dir",
    "spider_logger",
    "tail_log",
]
