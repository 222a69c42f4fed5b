"""Shared fixtures: scripted spiders, recording stages and a temporary config home."""

from __future__ import annotations

import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterable, Iterator

import pytest

from crawlflow.config import ConfigLocator, ConfigRepository
from crawlflow.errors import FetchError
from crawlflow.pipeline import ProcessingStage
from crawlflow.spiders import Spider
from crawlflow.types import Emit, FetchRequest, FetchResponse, Follow, ParseYield, Record


class ScriptedSpider(Spider):
    """In-memory spider whose failures and link graph are fixed up front.

    ``failures`` maps a URL to the number of fetch failures before it succeeds
    (``-1`` fails forever). ``links`` maps a URL to the URLs its page yields.
    Every successful fetch yields ``records_per_page`` records first.
    """

    name = "scripted"

    def __init__(
        self,
        urls: Iterable[str],
        *,
        failures: dict[str, int] | None = None,
        links: dict[str, list[str]] | None = None,
        records_per_page: int = 1,
        fetch_delay: float = 0.0,
    ) -> None:
        super().__init__(start_urls=list(urls))
        self.failures = dict(failures or {})
        self.links = dict(links or {})
        self.records_per_page = records_per_page
        self.fetch_delay = fetch_delay
        self.fetch_calls: list[str] = []
        self.records_yielded = 0
        self.closed_calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = Lock()

    def fetch(self, request: FetchRequest) -> FetchResponse:
        with self._lock:
            self.fetch_calls.append(request.url)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            remaining = self.failures.get(request.url, 0)
            if remaining > 0:
                self.failures[request.url] = remaining - 1
        try:
            if self.fetch_delay:
                time.sleep(self.fetch_delay)
            if remaining != 0:
                raise FetchError(f"scripted failure for {request.url}", url=request.url, status=503)
            return FetchResponse(url=request.url, text=f"<p>{request.url}</p>", status=200, request=request)
        finally:
            with self._lock:
                self.active -= 1

    def parse(self, response: FetchResponse) -> Iterator[ParseYield]:
        for index in range(self.records_per_page):
            with self._lock:
                self.records_yielded += 1
            yield Emit(Record(url=response.url, origin=response.request.url, index=index))
        for link in self.links.get(response.url, []):
            yield Follow(response.request.follow(link))

    def closed(self) -> None:
        self.closed_calls += 1

    def calls_for(self, url: str) -> int:
        return self.fetch_calls.count(url)


class RecordingStage(ProcessingStage):
    """Stage that logs lifecycle calls into a shared journal and can drop or fail."""

    def __init__(
        self,
        label: str,
        journal: list[str] | None = None,
        *,
        drop: Callable[[Record], bool] | None = None,
        transform: Callable[[Record], Record] | None = None,
        fail_on: str | None = None,
    ) -> None:
        self.label = label
        self.journal = journal if journal is not None else []
        self.drop = drop
        self.transform = transform
        self.fail_on = fail_on
        self.seen: list[Record] = []

    @property
    def name(self) -> str:
        return self.label

    def open(self, spider: Any) -> None:
        self.journal.append(f"open:{self.label}")
        if self.fail_on == "open":
            raise RuntimeError(f"{self.label} cannot open")

    def process(self, record: Record, spider: Any) -> Record | None:
        if self.fail_on == "process":
            raise RuntimeError(f"{self.label} cannot process")
        self.seen.append(record)
        if self.drop is not None and self.drop(record):
            return None
        return self.transform(record) if self.transform else record

    def close(self, spider: Any) -> None:
        self.journal.append(f"close:{self.label}")
        if self.fail_on == "close":
            raise RuntimeError(f"{self.label} cannot close")


@pytest.fixture
def scripted_spider() -> Callable[..., ScriptedSpider]:
    def _builder(urls: Iterable[str], **kwargs: Any) -> ScriptedSpider:
        return ScriptedSpider(urls, **kwargs)

    return _builder


@pytest.fixture
def journal() -> list[str]:
    return []


@pytest.fixture
def make_stage(journal: list[str]) -> Callable[..., RecordingStage]:
    def _builder(label: str, **kwargs: Any) -> RecordingStage:
        return RecordingStage(label, journal, **kwargs)

    return _builder


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[ConfigRepository]:
    monkeypatch.setenv("CRAWLFLOW_HOME", str(tmp_path))
    locator = ConfigLocator(project_root=tmp_path)
    repository = ConfigRepository(locator)
    yield repository
