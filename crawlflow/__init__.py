"""crawlflow: a small crawl orchestrator with retries and record stages."""

__version__ = "0.1.0"

from .engine import CrawlerEngine, CrawlStats, EngineState  # noqa: E402
from .types import Emit, FetchRequest, FetchResponse, Follow, Record  # noqa: E402

__all__ = [
    "CrawlStats",
    "CrawlerEngine",
    "Emit",
    "EngineState",
    "FetchRequest",
    "FetchResponse",
    "Follow",
    "Record",
    "__version__",
]
