"""Per-call cost accounting.

Prices are USD per million tokens. Cache writes are billed at 1.25x the
input rate and cache reads at 10% of it unless a model lists its own.
Unknown models are priced like the sonnet family.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from tandem.messages import Usage


@dataclass(frozen=True)
class ModelPricing:
    input: float
    output: float
    cache_write: float | None = None
    cache_read: float | None = None

    @property
    def cache_write_rate(self) -> float:
        return self.cache_write if self.cache_write is not None else self.input * 1.25

    @property
    def cache_read_rate(self) -> float:
        return self.cache_read if self.cache_read is not None else self.input * 0.1


# Matched by substring of the model id, first hit wins
PRICING: list[tuple[str, ModelPricing]] = [
    ("haiku", ModelPricing(input=0.8, output=4.0, cache_write=1.0, cache_read=0.08)),
    ("sonnet", ModelPricing(input=3.0, output=15.0, cache_write=3.75, cache_read=0.3)),
    ("opus", ModelPricing(input=15.0, output=75.0, cache_write=18.75, cache_read=1.5)),
    ("gpt-4o-mini", ModelPricing(input=0.15, output=0.6)),
    ("gpt-4o", ModelPricing(input=2.5, output=10.0)),
    ("o3-mini", ModelPricing(input=1.1, output=4.4)),
    ("o1", ModelPricing(input=15.0, output=60.0)),
]
DEFAULT_PRICING = ModelPricing(input=3.0, output=15.0, cache_write=3.75, cache_read=0.3)


def pricing_for(model: str) -> ModelPricing:
    for key, pricing in PRICING:
        if key in model:
            return pricing
    return DEFAULT_PRICING


def cost_for(model: str, usage: Usage) -> float:
    """USD cost of one call."""
    pricing = pricing_for(model)
    return (
        usage.input_tokens * pricing.input
        + usage.output_tokens * pricing.output
        + usage.cache_creation_input_tokens * pricing.cache_write_rate
        + usage.cache_read_input_tokens * pricing.cache_read_rate
    ) / 1_000_000


class CostSink(Protocol):
    def record(self, cost_usd: float, duration_ms: int) -> None: ...


@dataclass
class CostRecord:
    """Single completed provider call."""

    cost_usd: float
    duration_ms: int
    recorded_at: datetime


class CostTracker:
    """Session cost totals. Keeps the most recent MAX_RECORDS calls."""

    MAX_RECORDS = 1000

    def __init__(self) -> None:
        self._records: list[CostRecord] = []
        self.total_cost_usd = 0.0
        self.total_duration_ms = 0
        self.calls = 0

    def record(self, cost_usd: float, duration_ms: int) -> None:
        self._records.append(CostRecord(cost_usd, duration_ms, datetime.now(UTC)))
        self.total_cost_usd += cost_usd
        self.total_duration_ms += duration_ms
        self.calls += 1
        if len(self._records) > self.MAX_RECORDS:
            del self._records[: len(self._records) - self.MAX_RECORDS]

    @property
    def records(self) -> list[CostRecord]:
        return list(self._records)

    def summary(self) -> str:
        return (
            f"Total cost: ${self.total_cost_usd:.4f} "
            f"({self.calls} calls, {self.total_duration_ms / 1000:.1f}s API time)"
        )
