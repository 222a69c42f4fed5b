"""Ordered stage chain with drop short-circuit."""

from __future__ import annotations

from threading import Lock
from typing import TYPE_CHECKING, Iterable, Sequence

import structlog

from ..types import Record
from ..errors import ConfigError, StageError
from .base import Stage, spider_name

if TYPE_CHECKING:  # pragma: no cover
    from ..spiders.base import Spider

logger = structlog.get_logger("crawlflow.pipeline")


def _stage_label(stage: object) -> str:
    return str(getattr(stage, "name", None) or type(stage).__name__)


class StageChain:
    """Run records through stages strictly in order.

    The chain is fixed at construction. ``process`` holds a single lock for
    the whole traversal so a record's trip through the chain is never
    interleaved with another record's, whichever worker thread drives it.
    """

    def __init__(self, stages: Iterable[Stage] | None = None) -> None:
        self.stages: tuple[Stage, ...] = tuple(stages or ())
        for index, stage in enumerate(self.stages):
            if stage is None:
                raise ConfigError(f"stage #{index} is empty")
            for method in ("open", "process", "close"):
                if not callable(getattr(stage, method, None)):
                    raise ConfigError(
                        f"stage #{index} ({_stage_label(stage)}) has no callable {method}()"
                    )
        self._opened: list[Stage] = []
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self.stages)

    @property
    def names(self) -> list[str]:
        return [_stage_label(stage) for stage in self.stages]

    def open_all(self, spider: "Spider") -> None:
        self._opened = []
        for stage in self.stages:
            try:
                stage.open(spider)
            except Exception as exc:
                label = _stage_label(stage)
                logger.error(
                    "stage_open_failed", stage=label, spider=spider_name(spider), error=str(exc)
                )
                try:
                    self.close_all(spider)
                except StageError:
                    # The open failure is the one reported.
                    pass
                raise StageError(
                    f"{label}.open failed: {exc}", stage=label, phase="open"
                ) from exc
            self._opened.append(stage)

    def process(self, record: Record, spider: "Spider") -> Record | None:
        current: Record | None = record
        with self._lock:
            for stage in self.stages:
                try:
                    current = stage.process(current, spider)
                except Exception as exc:
                    label = _stage_label(stage)
                    raise StageError(
                        f"{label}.process failed: {exc}", stage=label, phase="process"
                    ) from exc
                if current is None:
                    logger.debug(
                        "record_dropped", stage=_stage_label(stage), spider=spider_name(spider)
                    )
                    return None
        return current

    def close_all(self, spider: "Spider") -> None:
        """Close every opened stage in chain order, then report the first failure."""

        opened, self._opened = self._opened, []
        first_error: StageError | None = None
        for stage in opened:
            try:
                stage.close(spider)
            except Exception as exc:
                label = _stage_label(stage)
                logger.error(
                    "stage_close_failed", stage=label, spider=spider_name(spider), error=str(exc)
                )
                if first_error is None:
                    first_error = StageError(f"{label}.close failed: {exc}", stage=label, phase="close")
                    first_error.__cause__ = exc
        if first_error is not None:
            raise first_error


def build_chain(stages: Sequence[Stage] | StageChain | None) -> StageChain:
    if isinstance(stages, StageChain):
        return stages
    return StageChain(stages)


__all__ = ["StageChain", "build_chain"]
