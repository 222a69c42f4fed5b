"""HTML extraction helpers built on selectolax."""

from __future__ import annotations

import re
from urllib.parse import urljoin

from selectolax.parser import HTMLParser

_WHITESPACE = re.compile(r"\s+")
_SKIP_PREFIXES = ("javascript:", "#", "mailto:", "tel:")


def extract_links(html: str, base_url: str | None = None) -> list[str]:
    """Return ``href`` targets in document order, resolved against ``base_url``."""

    tree = HTMLParser(html)
    links: list[str] = []
    seen: set[str] = set()
    for node in tree.css("a[href]"):
        href = (node.attributes.get("href") or "").strip()
        if not href or href.startswith(_SKIP_PREFIXES):
            continue
        full_url = urljoin(base_url, href) if base_url else href
        if full_url not in seen:
            seen.add(full_url)
            links.append(full_url)
    return links


def extract_title(html: str) -> str:
    node = HTMLParser(html).css_first("title")
    if node is None:
        return ""
    return node.text(strip=True)


def extract_text(html: str) -> str:
    """Visible text with script/style removed and whitespace collapsed."""

    tree = HTMLParser(html)
    tree.strip_tags(["script", "style", "noscript"])
    root = tree.body or tree.root
    if root is None:
        return ""
    return _WHITESPACE.sub(" ", root.text(separator=" ")).strip()


__all__ = ["extract_links", "extract_text", "extract_title"]
