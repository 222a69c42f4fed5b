"""Spider contract and an httpx-backed base implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Iterable, Iterator

import httpx
import structlog

from .. import __version__
from ..errors import FetchError
from ..types import FetchRequest, FetchResponse, ParseYield
from . import extract

DEFAULT_USER_AGENT = f"crawlflow/{__version__}"


class Spider(ABC):
    """What the engine needs from a source of requests and records.

    ``parse`` must be lazy: return a generator of :class:`~crawlflow.types.Emit`
    and :class:`~crawlflow.types.Follow` so discovered requests reach the
    frontier while the rest of the response is still being parsed.
    """

    name: str = "spider"
    start_urls: list[str] = []

    def __init__(self, name: str | None = None, start_urls: Iterable[str] | None = None) -> None:
        if name:
            self.name = name
        self.start_urls = list(start_urls if start_urls is not None else type(self).start_urls)
        self.logger = structlog.get_logger("crawlflow.spider").bind(spider=self.name)

    def initial_requests(self) -> list[FetchRequest]:
        return [FetchRequest(url=url) for url in self.start_urls]

    @abstractmethod
    def fetch(self, request: FetchRequest) -> FetchResponse:
        """Perform the request; raise FetchError on transport or status failure."""

    @abstractmethod
    def parse(self, response: FetchResponse) -> Iterator[ParseYield]:
        """Yield Emit(record) and Follow(request) items for ``response``."""

    def closed(self) -> None:
        self.logger.info("spider_closed")


class HttpSpider(Spider):
    """Spider fetching over HTTP with a shared ``httpx.Client``."""

    user_agent: str = DEFAULT_USER_AGENT
    timeout: float = 20.0

    def __init__(
        self,
        name: str | None = None,
        start_urls: Iterable[str] | None = None,
        *,
        user_agent: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(name, start_urls)
        if user_agent:
            self.user_agent = user_agent
        if timeout is not None:
            self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None
        self._client_lock = Lock()

    @property
    def client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    follow_redirects=True,
                    timeout=self.timeout,
                    headers={"User-Agent": self.user_agent},
                    transport=self._transport,
                )
            return self._client

    def fetch(self, request: FetchRequest) -> FetchResponse:
        kwargs: dict[str, Any] = {"headers": dict(request.headers)}
        if isinstance(request.body, (dict, list)):
            kwargs["json"] = request.body
        elif request.body is not None:
            kwargs["content"] = request.body
        try:
            response = self.client.request(request.method, request.url, **kwargs)
        except httpx.HTTPError as exc:
            raise FetchError(f"请求失败: {request.url} - {exc}", url=request.url) from exc
        if not response.is_success:
            raise FetchError(
                f"请求失败: {request.url} - HTTP {response.status_code}",
                url=request.url,
                status=response.status_code,
            )
        return FetchResponse(
            url=str(response.url),
            text=response.text,
            status=response.status_code,
            headers=dict(response.headers),
            request=request,
        )

    def closed(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None
        super().closed()

    # Extraction helpers -------------------------------------------------
    @staticmethod
    def extract_links(html: str, base_url: str | None = None) -> list[str]:
        return extract.extract_links(html, base_url)

    @staticmethod
    def extract_title(html: str) -> str:
        return extract.extract_title(html)

    @staticmethod
    def extract_text(html: str) -> str:
        return extract.extract_text(html)


__all__ = ["DEFAULT_USER_AGENT", "HttpSpider", "Spider"]
