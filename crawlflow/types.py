"""Value objects exchanged between the engine, spiders and stages."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, Union


@dataclass(frozen=True, slots=True)
class FetchRequest:
    """Outbound fetch description. ``meta`` carries traversal state such as depth."""

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    meta: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Read-only copies: a retry must see the request exactly as it was queued.
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))
        object.__setattr__(self, "meta", MappingProxyType(dict(self.meta)))

    @property
    def depth(self) -> int:
        return int(self.meta.get("depth", 0))

    def follow(self, url: str, **meta: Any) -> "FetchRequest":
        """Build a GET request for a link discovered on this request's page."""

        child_meta = {**self.meta, **meta}
        child_meta["depth"] = self.depth + 1
        return FetchRequest(url=url, meta=child_meta)


@dataclass(frozen=True, slots=True)
class FetchResponse:
    """Result of a successful fetch, created by the spider that fetched it."""

    url: str
    text: str
    status: int
    headers: dict[str, str] = field(repr=False, default_factory=dict)
    request: FetchRequest | None = field(repr=False, default=None)

    @property
    def meta(self) -> Mapping[str, Any]:
        return self.request.meta if self.request is not None else {}


class Record(Mapping[str, Any]):
    """Immutable bag of extracted fields.

    Subclasses declare ``required_fields``; :meth:`is_valid` checks that each of
    them is present and truthy. Stages that transform a record return a new one
    built with :meth:`replace`.
    """

    required_fields: ClassVar[tuple[str, ...]] = ()

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | None = None, **fields: Any) -> None:
        merged = dict(data or {})
        merged.update(fields)
        object.__setattr__(self, "_data", merged)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Record):
            return type(self) is type(other) and self._data == other._data
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def is_valid(self) -> bool:
        return all(self._data.get(name) for name in self.required_fields)

    def missing_fields(self) -> list[str]:
        return [name for name in self.required_fields if not self._data.get(name)]

    def replace(self, **changes: Any) -> "Record":
        clone = type(self).__new__(type(self))
        object.__setattr__(clone, "_data", {**self._data, **changes})
        return clone

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)


@dataclass(frozen=True, slots=True)
class Emit:
    """Parse output carrying an extracted record."""

    record: Record


@dataclass(frozen=True, slots=True)
class Follow:
    """Parse output carrying a newly discovered request."""

    request: FetchRequest


ParseYield = Union[Emit, Follow]


__all__ = ["Emit", "FetchRequest", "FetchResponse", "Follow", "ParseYield", "Record"]
