"""Run counters owned by the engine's controller."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields


@dataclass
class CrawlStats:
    requests_sent: int = 0
    responses_received: int = 0
    records_accepted: int = 0
    records_dropped: int = 0
    # Requests that ran out of retries or crashed; never folded into the others.
    requests_abandoned: int = 0
    retries: int = 0

    def reset(self) -> None:
        for item in fields(self):
            setattr(self, item.name, 0)

    def snapshot(self) -> "CrawlStats":
        return CrawlStats(**asdict(self))

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    @property
    def records_total(self) -> int:
        return self.records_accepted + self.records_dropped


__all__ = ["CrawlStats"]
