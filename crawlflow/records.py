"""Record schemas shipped with crawlflow."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from .types import Record


class WebPageRecord(Record):
    """A fetched page: title, url and readable content are required."""

    required_fields = ("title", "url", "content")

    def __init__(self, data: Mapping[str, Any] | None = None, **fields: Any) -> None:
        fields.setdefault("extracted_at", datetime.now(timezone.utc).isoformat(timespec="seconds"))
        super().__init__(data, **fields)


class BlogRecord(Record):
    """A blog post or page; author, links and tags are optional."""

    required_fields = ("title", "content")


__all__ = ["BlogRecord", "WebPageRecord"]
