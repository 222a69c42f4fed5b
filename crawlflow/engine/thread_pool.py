"""Worker pools backing the engine's in-flight tasks, one per crawl."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Dict


class ThreadPoolManager:
    """Hand out one executor per key and tear it down after the crawl.

    The engine keys its pool by spider name plus a per-crawl run id, so
    engines sharing a manager never resize or release each other's pool.
    """

    def __init__(self, default_workers: int = 8) -> None:
        self.default_workers = default_workers
        self._executors: Dict[str, tuple[ThreadPoolExecutor, int]] = {}
        self._lock = Lock()

    def get(self, key: str, max_workers: int | None = None) -> ThreadPoolExecutor:
        workers = max_workers or self.default_workers
        with self._lock:
            entry = self._executors.get(key)
            if entry is not None and entry[1] != workers:
                # Size changed between runs: retire the old pool.
                entry[0].shutdown(wait=False)
                entry = None
            if entry is None:
                executor = ThreadPoolExecutor(
                    max_workers=workers, thread_name_prefix=f"crawlflow-{key}"
                )
                entry = (executor, workers)
                self._executors[key] = entry
            return entry[0]

    def release(self, key: str, wait: bool = True) -> None:
        with self._lock:
            entry = self._executors.pop(key, None)
        if entry is not None:
            entry[0].shutdown(wait=wait)

    def active(self) -> list[str]:
        with self._lock:
            return sorted(self._executors)

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            entries = list(self._executors.values())
            self._executors.clear()
        for executor, _ in entries:
            executor.shutdown(wait=wait)


__all__ = ["ThreadPoolManager"]
