from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

DEFAULT_INSTRUMENTS: dict[int, str] = {
    1: "SOL/USDC",
    2: "BTC/USDC",
    3: "ETH/USDC",
    4: "BONK/USDC",
}


@dataclass(frozen=True)
class InstrumentRegistry:
    labels: Mapping[int, str] = field(default_factory=lambda: dict(DEFAULT_INSTRUMENTS))

    @classmethod
    def from_overrides(cls, overrides: Mapping[Any, Any] | None) -> "InstrumentRegistry":
        labels = dict(DEFAULT_INSTRUMENTS)
        for key, value in (overrides or {}).items():
            try:
                instrument_id = int(key)
            except (TypeError, ValueError):
                continue
            label = str(value).strip()
            if label:
                labels[instrument_id] = label
        return cls(labels=labels)

    def resolve_symbol(self, instrument_id: int) -> str:
        label = self.labels.get(instrument_id)
        if label:
            return label
        return f"Instrument #{instrument_id}"

    def matches(self, instrument_id: int, query: str) -> bool:
        text = query.strip()
        if not text:
            return True
        if text.isdigit():
            return int(text) == instrument_id
        return self.resolve_symbol(instrument_id).lower() == text.lower()


def base_symbol(label: str) -> str:
    slash = label.find("/")
    if slash > 0:
        return label[:slash]
    dash = label.find("-")
    if dash > 0:
        return label[:dash]
    return label
