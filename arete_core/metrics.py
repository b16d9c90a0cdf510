import logging
import time
from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional, Protocol

from .cache import TTLCache
from .messages import ChannelMetrics, CostTotals, IncomingMessage

logger = logging.getLogger("arete.metrics")

# USD per million tokens (input, output).
MODEL_PRICING: Dict[str, tuple[float, float]] = {
    "gpt-5": (1.25, 10.0),
    "gpt-5-mini": (0.25, 2.0),
    "gpt-5-nano": (0.05, 0.4),
    "gpt-4o-mini": (0.15, 0.6),
}
DEFAULT_PRICING = MODEL_PRICING["gpt-5-mini"]


class ChannelMetricsProvider(Protocol):
    def get(self, channel_key: str) -> Optional[ChannelMetrics]:
        ...


class CostProvider(Protocol):
    def get_channel_totals(self, channel_key: str) -> Optional[CostTotals]:
        ...


def estimate_cost(model: str, usage: Mapping[str, int]) -> float:
    input_price, output_price = MODEL_PRICING.get(model, DEFAULT_PRICING)
    prompt = usage.get("prompt_tokens", 0) or 0
    completion = usage.get("completion_tokens", 0) or 0
    return (prompt * input_price + completion * output_price) / 1_000_000


class ChannelMetricsStore:
    """In-memory message counters per channel, forgotten after `ttl_seconds` of silence."""

    def __init__(self, ttl_seconds: float = 60 * 60, max_entries: Optional[int] = None):
        self._metrics: TTLCache[str, ChannelMetrics] = TTLCache(ttl_seconds=ttl_seconds, max_entries=max_entries)

    def record(self, message: IncomingMessage) -> ChannelMetrics:
        now = time.time()
        current = self._metrics.get(message.channel_key) or ChannelMetrics()
        updated = replace(
            current,
            total_messages=current.total_messages + 1,
            bot_messages=current.bot_messages + (1 if message.author_is_bot else 0),
            human_messages=current.human_messages + (0 if message.author_is_bot else 1),
            last_activity=now,
        )
        self._metrics.set(message.channel_key, updated, now)
        return updated

    def get(self, channel_key: str) -> Optional[ChannelMetrics]:
        return self._metrics.get(channel_key)

    def update_engagement_score(self, channel_key: str, score: float) -> None:
        current = self._metrics.get(channel_key)
        if current is None:
            return
        self._metrics.set(channel_key, replace(current, last_engagement_score=score))

    def sweep(self) -> int:
        return len(self._metrics.sweep())


@dataclass
class _Totals:
    cost_usd: float = 0.0
    calls: int = 0


class CostLedger:
    def __init__(self):
        self._totals: Dict[str, _Totals] = {}

    def record(self, channel_key: str, model: str, usage: Mapping[str, int]) -> float:
        cost = estimate_cost(model, usage)
        totals = self._totals.setdefault(channel_key, _Totals())
        totals.cost_usd += cost
        totals.calls += 1
        logger.debug("Recorded %.6f USD for %s in %s (%d calls)", cost, model, channel_key, totals.calls)
        return cost

    def get_channel_totals(self, channel_key: str) -> Optional[CostTotals]:
        totals = self._totals.get(channel_key)
        if totals is None:
            return None
        return CostTotals(total_cost_usd=totals.cost_usd, total_calls=totals.calls)
