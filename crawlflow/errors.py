"""Exception hierarchy shared by the engine, stages and spiders."""

from __future__ import annotations


class CrawlError(Exception):
    """Base class for every error raised by crawlflow."""


class FetchError(CrawlError):
    """Transport failure or rejected status reported by a spider's fetch."""

    def __init__(self, message: str, *, url: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class ParseError(CrawlError):
    """Raised while consuming a spider's parse output."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class StageError(CrawlError):
    """A processing stage failed in open/process/close. Never retried."""

    def __init__(self, message: str, *, stage: str, phase: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.phase = phase


class ConfigError(CrawlError, ValueError):
    """Invalid engine or stage configuration."""


class EngineStateError(CrawlError, RuntimeError):
    """Operation not allowed in the engine's current state."""


class InvariantViolation(CrawlError, RuntimeError):
    """Internal bookkeeping broke an engine invariant; fatal to the run."""


class FrontierEmpty(CrawlError, LookupError):
    """Raised by Frontier.pop when there is nothing left to dispatch."""


RETRYABLE_ERRORS: tuple[type[Exception], ...] = (FetchError, ParseError)


__all__ = [
    "ConfigError",
    "CrawlError",
    "EngineStateError",
    "FetchError",
    "FrontierEmpty",
    "InvariantViolation",
    "ParseError",
    "RETRYABLE_ERRORS",
    "StageError",
]
