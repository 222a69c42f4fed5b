"""Processing stage contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Protocol

import structlog

from ..types import Record

if TYPE_CHECKING:  # pragma: no cover
    from ..spiders.base import Spider

logger = structlog.get_logger("crawlflow.pipeline")


def spider_name(spider: object) -> str:
    return str(getattr(spider, "name", None) or type(spider).__name__)


class Stage(Protocol):
    """Anything the chain accepts: open/process/close with these signatures."""

    def open(self, spider: "Spider") -> None:
        ...

    def process(self, record: Record, spider: "Spider") -> Record | None:
        ...

    def close(self, spider: "Spider") -> None:
        ...


class ProcessingStage(ABC):
    """One link of the record chain.

    ``process`` returns the (possibly new) record to hand to the next stage,
    or ``None`` to drop it. ``open`` and ``close`` run once per crawl.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    def open(self, spider: "Spider") -> None:
        logger.debug("stage_opened", stage=self.name, spider=spider_name(spider))

    @abstractmethod
    def process(self, record: Record, spider: "Spider") -> Record | None:
        """Transform ``record`` or return ``None`` to drop it."""

    def close(self, spider: "Spider") -> None:
        logger.debug("stage_closed", stage=self.name, spider=spider_name(spider))


__all__ = ["ProcessingStage", "Stage", "spider_name"]
