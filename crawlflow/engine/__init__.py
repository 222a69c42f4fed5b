"""Engine components: frontier, retry policy, stats and the dispatch loop."""

from .frontier import Frontier
from .retry import RetryPolicy
from .stats import CrawlStats
from .thread_pool import ThreadPoolManager
from .engine import CrawlerEngine, EngineState

__all__ = [
    "CrawlStats",
    "CrawlerEngine",
    "EngineState",
    "Frontier",
    "RetryPolicy",
    "ThreadPoolManager",
]
