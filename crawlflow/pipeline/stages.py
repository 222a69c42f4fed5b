"""Bundled processing stages and the dotted-path stage loader."""

from __future__ import annotations

import csv
import importlib
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from ..errors import ConfigError
from ..types import Record
from .base import ProcessingStage, spider_name

if TYPE_CHECKING:  # pragma: no cover
    from ..spiders.base import Spider

logger = structlog.get_logger("crawlflow.pipeline")

EXPORT_FORMATS = ("json", "jsonl", "csv", "txt")
_TXT_CONTENT_LIMIT = 1000
_TXT_CONTENT_PREVIEW = 500
_RULE = "=" * 60


class ValidationStage(ProcessingStage):
    """Drop records whose validity predicate fails."""

    def process(self, record: Record, spider: "Spider") -> Record | None:
        if record.is_valid():
            return record
        logger.warning(
            "record_invalid",
            spider=spider_name(spider),
            record_type=type(record).__name__,
            missing=record.missing_fields(),
        )
        return None


class FileExportStage(ProcessingStage):
    """Buffer accepted records and write them to one file when the crawl closes.

    Supported formats: ``json`` (pretty array), ``jsonl``, ``csv`` and ``txt``
    (human-readable report). The file is named ``<spider>-<run_tag>.<ext>``.
    """

    def __init__(self, output_dir: str | Path = "output", fmt: str = "json", run_tag: str | None = None) -> None:
        if fmt not in EXPORT_FORMATS:
            raise ConfigError(f"unsupported export format {fmt!r}; expected one of {EXPORT_FORMATS}")
        self.output_dir = Path(output_dir)
        self.format = fmt
        self.run_tag = run_tag
        self.path: Path | None = None
        self._records: list[dict[str, Any]] = []
        self._started_at: datetime | None = None

    @property
    def name(self) -> str:
        return f"FileExportStage[{self.format}]"

    def open(self, spider: "Spider") -> None:
        super().open(spider)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._records = []
        self._started_at = datetime.now()
        self.path = None

    def process(self, record: Record, spider: "Spider") -> Record | None:
        self._records.append(record.to_dict())
        return record

    def close(self, spider: "Spider") -> None:
        name = spider_name(spider)
        run_tag = self.run_tag or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        slug = re.sub(r"[^0-9A-Za-z_-]+", "_", name.strip()) or "spider"
        path = self.output_dir / f"{slug}-{run_tag}.{self.format}"
        with path.open("w", encoding="utf-8", newline="") as stream:
            if self.format == "json":
                json.dump(self._records, stream, ensure_ascii=False, indent=2, default=str)
            elif self.format == "jsonl":
                for record in self._records:
                    stream.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
            elif self.format == "csv":
                self._write_csv(stream)
            else:
                stream.write(self._format_txt(name))
        self.path = path
        logger.info("records_exported", spider=name, path=str(path), count=len(self._records))
        self._records = []
        super().close(spider)

    def _write_csv(self, stream) -> None:
        fieldnames = sorted({key for record in self._records for key in record})
        writer = csv.DictWriter(stream, fieldnames=fieldnames)
        writer.writeheader()
        for record in self._records:
            writer.writerow(
                {
                    key: json.dumps(value, ensure_ascii=False, default=str)
                    if isinstance(value, (list, dict))
                    else value
                    for key, value in record.items()
                }
            )

    def _format_txt(self, spider_label: str) -> str:
        started = (self._started_at or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        lines = [_RULE, "crawlflow 抓取结果", f"爬虫名称: {spider_label}", f"开始时间: {started}", _RULE, ""]
        for index, record in enumerate(self._records, start=1):
            lines.append(f"--- 数据项 {index} ---")
            for key, value in record.items():
                if key == "content" and isinstance(value, str) and len(value) > _TXT_CONTENT_LIMIT:
                    lines.append(f"{key}: {value[:_TXT_CONTENT_PREVIEW]}...")
                elif isinstance(value, (list, tuple)):
                    lines.append(f"{key}: [")
                    lines.extend(f"  {position}. {item}" for position, item in enumerate(value, start=1))
                    lines.append("]")
                else:
                    lines.append(f"{key}: {value}")
            lines.append("")
        finished = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        lines.extend([_RULE, f"抓取完成时间: {finished}", _RULE])
        return "\n".join(lines) + "\n"


def load_stage(path: str, **options: Any) -> Any:
    """Instantiate a stage from ``package.module:Class`` or ``package.module.Class``."""

    if ":" in path:
        module_name, _, attr = path.partition(":")
    else:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ConfigError(f"invalid stage path: {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"cannot import stage module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if factory is None:
        raise ConfigError(f"{module_name!r} has no attribute {attr!r}")
    return factory(**options)


__all__ = ["EXPORT_FORMATS", "FileExportStage", "ValidationStage", "load_stage"]
