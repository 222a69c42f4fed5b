"""Quick-start helpers wiring spiders, stages and the engine together."""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import Any, Callable, Sequence

import structlog

from .config import EngineSettings, RunConfig
from .engine import CrawlerEngine, CrawlStats
from .errors import ConfigError
from .pipeline import FileExportStage, ValidationStage
from .pipeline.stages import EXPORT_FORMATS
from .spiders.base import Spider

# "text" and "both" are accepted as friendlier names for the txt report.
_FORMAT_ALIASES = {"text": ("txt",), "both": ("json", "txt")}


def resolve_formats(output_format: str | Sequence[str]) -> list[str]:
    requested = [output_format] if isinstance(output_format, str) else list(output_format)
    formats: list[str] = []
    for item in requested:
        for fmt in _FORMAT_ALIASES.get(item, (item,)):
            if fmt not in EXPORT_FORMATS:
                raise ConfigError(f"unsupported output format {item!r}")
            if fmt not in formats:
                formats.append(fmt)
    return formats


def load_spider(path: str, **options: Any) -> Spider:
    """Instantiate ``package.module:SpiderClass`` with ``options``."""

    module_name, sep, attr = path.partition(":")
    if not sep:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ConfigError(f"invalid spider path: {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"cannot import spider module {module_name!r}: {exc}") from exc
    spider_cls = getattr(module, attr, None)
    if spider_cls is None:
        raise ConfigError(f"{module_name!r} has no attribute {attr!r}")
    return spider_cls(**options)


def build_stages(
    output_dir: str | Path,
    formats: Sequence[str],
    *,
    validate: bool = True,
    extra: Sequence[Any] = (),
) -> list[Any]:
    stages: list[Any] = [ValidationStage()] if validate else []
    stages.extend(extra)
    stages.extend(FileExportStage(output_dir, fmt) for fmt in formats)
    return stages


def run_spider(
    spider: Spider,
    *,
    output_dir: str | Path = "output",
    output_format: str | Sequence[str] = "json",
    concurrency: int = 4,
    delay: float = 1.0,
    retry_limit: int | None = None,
    logger: structlog.BoundLogger | None = None,
) -> CrawlStats:
    """Run ``spider`` with validation plus file export and return the stats."""

    settings = EngineSettings(
        concurrency_limit=concurrency,
        delay_seconds=delay,
        **({"retry_limit": retry_limit} if retry_limit is not None else {}),
    )
    stages = build_stages(output_dir, resolve_formats(output_format))
    engine = CrawlerEngine(settings, stages, logger=logger)
    return engine.crawl(spider)


def run_config(
    config: RunConfig,
    base_dir: Path,
    logger: structlog.BoundLogger | None = None,
    *,
    logger_factory: Callable[[str], structlog.BoundLogger] | None = None,
) -> CrawlStats:
    """Run a crawl described by a :class:`RunConfig`.

    ``logger_factory`` receives the loaded spider's name when no ``logger`` is given.
    """

    spider = load_spider(config.spider, **config.spider_options)
    if logger is None and logger_factory is not None:
        logger = logger_factory(spider.name)
    stages = build_stages(
        config.resolved_output_dir(base_dir),
        resolve_formats(config.output_formats),
        validate=config.validate_records,
        extra=config.engine.build_stages(),
    )
    engine = CrawlerEngine(config.engine, stages, logger=logger)
    return engine.crawl(spider)


__all__ = ["build_stages", "load_spider", "resolve_formats", "run_config", "run_spider"]
