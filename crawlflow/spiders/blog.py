"""Example spider for a small static markdown blog."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterable, Iterator
from urllib.parse import urlparse

from ..records import BlogRecord
from ..types import Emit, FetchResponse, Follow, ParseYield
from .base import HttpSpider

_AUTHOR_INTRO = re.compile(r"我是\s*(\w+)")
_HANDLE = re.compile(r"@([A-Za-z0-9_-]+)")

# Page markers mapped to the tag they imply.
_TECH_MARKERS = {
    "NextJS": "NextJS",
    "Tailwind": "Tailwind CSS",
    "Markdown": "Markdown",
    "TypeScript": "TypeScript",
}


class BlogSpider(HttpSpider):
    """Emit one BlogRecord per page and follow navigation links from shallow pages."""

    name = "blog-spider"
    start_urls = ["https://markdown-blog-bay.vercel.app/about"]
    navigation_paths: tuple[str, ...] = ("/", "/frontEnd", "/codeEngineering", "/codeLife", "/about")

    def __init__(
        self,
        start_urls: Iterable[str] | None = None,
        *,
        max_depth: int = 1,
        navigation_paths: Iterable[str] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(start_urls=start_urls, **kwargs)
        if max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        self.max_depth = max_depth
        if navigation_paths is not None:
            self.navigation_paths = tuple(navigation_paths)

    def parse(self, response: FetchResponse) -> Iterator[ParseYield]:
        html = response.text
        depth = response.request.depth if response.request is not None else 0
        self.logger.info("parsing_page", url=response.url, depth=depth)

        yield Emit(
            BlogRecord(
                title=self.extract_title(html),
                author=self.extract_author(html),
                url=response.url,
                content=self.extract_text(html),
                links=self.extract_links(html, response.url),
                publish_date=datetime.now(timezone.utc).isoformat(timespec="seconds"),
                tags=self.detect_tags(html),
            )
        )

        if depth >= self.max_depth or response.request is None:
            self.logger.debug("max_depth_reached", url=response.url, depth=depth)
            return
        for link in self.navigation_links(html, response.url):
            yield Follow(response.request.follow(link))

    def navigation_links(self, html: str, current_url: str) -> list[str]:
        current = urlparse(current_url)
        links: list[str] = []
        for link in self.extract_links(html, current_url):
            parsed = urlparse(link)
            if parsed.netloc != current.netloc or link == current_url:
                continue
            if (parsed.path or "/") in self.navigation_paths:
                links.append(link)
        return links

    @staticmethod
    def extract_author(html: str) -> str:
        match = _AUTHOR_INTRO.search(html) or _HANDLE.search(html)
        return match.group(1) if match else "Unknown"

    @staticmethod
    def detect_tags(html: str) -> list[str]:
        return [tag for marker, tag in _TECH_MARKERS.items() if marker in html]


__all__ = ["BlogSpider"]
