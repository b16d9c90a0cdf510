"""
Weighted engagement scoring for catch-up triggers.

Six signals are normalized to [0, 1] and combined with per-deployment
weights (optionally overridden per channel). The result gates whether a
catch-up trigger reaches the planner. Scoring never mutates its inputs and
fails open: any internal error yields an engage decision with a neutral score.
"""

import json
import logging
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from .messages import EngagementContext

TECHNICAL_KEYWORDS = (
    "error",
    "issue",
    "fix",
    "bug",
    "stack",
    "trace",
    "http",
    "api",
    "code",
    "function",
    "class",
    "design",
    "plan",
    "update",
    "help",
    "explain",
    "show",
    "tell",
)

SIGNALS = ("mention", "question", "technical", "human_activity", "cost_saturation", "bot_noise")

# Per-signal thresholds above which a signal is listed as a reason.
REASON_THRESHOLDS = {
    "mention": (0.5, "mention"),
    "question": (0.3, "question"),
    "technical": (0.2, "technical"),
    "human_activity": (0.7, "human_activity"),
    "cost_saturation": (0.7, "low_cost_saturation"),
    "bot_noise": (0.7, "low_bot_noise"),
}

COST_WINDOW_MINUTES = 5.0
RECENT_COST_SHARE = 0.1
COST_VELOCITY_REFERENCE_USD = 0.10

_INTERROGATIVES = re.compile(
    r"\b(who|what|where|when|why|how|can|could|should|would|is|are|do|does|did|will|have|has|had"
    r"|whats|wheres|whens|whys|hows|whos)\b"
)
_QUESTION_PHRASES = re.compile(
    r"\b(whats up|how are you|how is it|how goes|what about|how about|what do you|how do you|can you"
    r"|could you|would you|should you|will you|do you|are you|is it|was it|were you|have you|has it|had you)\b"
)

logger = logging.getLogger("arete.scoring")


@dataclass(frozen=True)
class EngagementWeights:
    mention: float = 0.3
    question: float = 0.2
    technical: float = 0.15
    human_activity: float = 0.15
    cost_saturation: float = 0.1
    bot_noise: float = 0.05
    dm_boost: float = 1.5
    # Reserved for recency decay of message-level signals; not applied yet.
    decay: float = 0.05


@dataclass(frozen=True)
class EngagementPreferences:
    ignore_mode: str = "silent"  # silent | react
    reaction_emoji: str = "👍"
    min_engage_threshold: float = 0.5
    probabilistic_band: Tuple[float, float] = (0.4, 0.6)
    enable_llm_refinement: bool = False


@dataclass(frozen=True)
class ChannelEngagementOverrides:
    weights: Dict[str, float] = field(default_factory=dict)
    preferences: Dict[str, object] = field(default_factory=dict)

    def apply(
        self, weights: EngagementWeights, preferences: EngagementPreferences
    ) -> Tuple[EngagementWeights, EngagementPreferences]:
        weight_names = {f.name for f in fields(EngagementWeights)}
        pref_names = {f.name for f in fields(EngagementPreferences)}
        weight_updates = {k: float(v) for k, v in self.weights.items() if k in weight_names}
        pref_updates = {k: v for k, v in self.preferences.items() if k in pref_names}
        if "probabilistic_band" in pref_updates:
            low, high = pref_updates["probabilistic_band"]  # type: ignore[misc]
            pref_updates["probabilistic_band"] = (float(low), float(high))
        return replace(weights, **weight_updates), replace(preferences, **pref_updates)


@dataclass(frozen=True)
class EngagementDecision:
    engage: bool
    score: float
    reason: str
    reasons: List[str] = field(default_factory=list)
    breakdown: Dict[str, float] = field(default_factory=dict)
    contributions: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "engage": self.engage,
            "score": self.score,
            "reason": self.reason,
            "reasons": list(self.reasons),
            "breakdown": dict(self.breakdown),
            "contributions": dict(self.contributions),
        }


def load_channel_overrides(path: Optional[Path]) -> Dict[str, ChannelEngagementOverrides]:
    """
    Read per-channel overrides from a JSON file shaped as
    {"<channel key>": {"weights": {...}, "preferences": {...}}}.
    """
    if path is None or not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring engagement overrides at %s: %s", path, exc)
        return {}
    overrides: Dict[str, ChannelEngagementOverrides] = {}
    if not isinstance(raw, dict):
        return overrides
    for channel_key, entry in raw.items():
        if not isinstance(entry, dict):
            continue
        overrides[str(channel_key)] = ChannelEngagementOverrides(
            weights=dict(entry.get("weights") or {}),
            preferences=dict(entry.get("preferences") or {}),
        )
    return overrides


def clamp01(val: float) -> float:
    return max(0.0, min(1.0, val))


def _normalize(value: float, low: float, high: float) -> float:
    clamped = max(low, min(high, value))
    return (clamped - low) / (high - low)


class ScoreRefiner(Protocol):
    async def refine(self, score: float, context: EngagementContext) -> float:
        ...


class PassThroughRefiner:
    """Grey-zone refinement hook; returns the heuristic score unchanged."""

    async def refine(self, score: float, context: EngagementContext) -> float:
        logger.debug("Score refinement disabled - returning original score")
        return score


class EngagementScorer:
    def __init__(
        self,
        weights: EngagementWeights,
        preferences: EngagementPreferences,
        mention_names: Tuple[str, ...] = (),
        refiner: Optional[ScoreRefiner] = None,
    ):
        self.weights = weights
        self.preferences = preferences
        self.mention_names = mention_names
        self.refiner: ScoreRefiner = refiner or PassThroughRefiner()

    async def decide(
        self, context: EngagementContext, overrides: Optional[ChannelEngagementOverrides] = None
    ) -> EngagementDecision:
        try:
            weights, preferences = self.weights, self.preferences
            if overrides is not None:
                weights, preferences = overrides.apply(weights, preferences)

            breakdown, contributions, score = self.score(context, weights)

            band_low, band_high = preferences.probabilistic_band
            if preferences.enable_llm_refinement and band_low <= score <= band_high:
                score = clamp01(float(await self.refiner.refine(score, context)))

            return self._build_decision(clamp01(score), context, breakdown, contributions, preferences)
        except Exception as exc:
            logger.error("Engagement scoring failed for %s: %s", context.channel_key, exc)
            return EngagementDecision(
                engage=True,
                score=0.5,
                reason="Filter error - allowing planner to run",
                reasons=["error"],
            )

    def score(
        self, context: EngagementContext, weights: EngagementWeights
    ) -> Tuple[Dict[str, float], Dict[str, float], float]:
        """
        Synchronous core of decide(): normalized signals, weighted contributions
        and the DM-boosted, clamped score before any refinement.
        """
        breakdown = {
            "mention": self.score_mention(context),
            "question": self.score_question(context),
            "technical": self.score_technical(context),
            "human_activity": self.score_human_activity(context),
            "cost_saturation": self.score_cost_saturation(context),
            "bot_noise": self.score_bot_noise(context),
        }
        contributions = {name: breakdown[name] * getattr(weights, name) for name in SIGNALS}
        score = sum(contributions.values())
        if context.message.is_dm:
            score = min(1.0, score * weights.dm_boost)
        return breakdown, contributions, clamp01(score)

    # Signals -----------------------------------------------------------------

    def score_mention(self, context: EngagementContext) -> float:
        message = context.message
        if message.mentions_agent:
            return 1.0
        agent_id = context.agent_id
        if agent_id is not None and message.reply_to_message_id and message.reply_same_channel:
            if message.reply_to_author_id == agent_id:
                return 1.0
            for recent in context.recent_messages:
                if recent.message_id == message.reply_to_message_id and recent.author_id == agent_id:
                    return 1.0

        content = (message.content or "").lower()
        if not content:
            return 0.0
        names: List[str] = []
        for name in (context.agent_name, *self.mention_names):
            lowered = (name or "").strip().lower()
            if lowered and lowered not in names:
                names.append(lowered)
        for name in names:
            if name in content:
                logger.debug("Plaintext name mention %r detected in %s", name, context.channel_key)
                return 0.9
        return 0.0

    def score_question(self, context: EngagementContext) -> float:
        content = context.message.content or ""
        if not content:
            return 0.0
        lower = content.lower()
        score = min(0.5, content.count("?") * 0.2)
        if _INTERROGATIVES.search(lower):
            score += 0.3
        if _QUESTION_PHRASES.search(lower):
            score += 0.4
        return _normalize(score, 0.0, 1.0)

    def score_technical(self, context: EngagementContext) -> float:
        lower = (context.message.content or "").lower()
        if not lower:
            return 0.0
        found = [keyword for keyword in TECHNICAL_KEYWORDS if keyword in lower]
        return min(1.0, len(found) / len(TECHNICAL_KEYWORDS))

    def score_human_activity(self, context: EngagementContext) -> float:
        metrics = context.channel_metrics
        if metrics is None or metrics.total_messages <= 0:
            return 0.5
        human = metrics.total_messages - metrics.bot_messages
        return _normalize(human / metrics.total_messages, 0.0, 1.0)

    def score_cost_saturation(self, context: EngagementContext) -> float:
        costs, metrics = context.cost_totals, context.channel_metrics
        if costs is None or metrics is None or not metrics.last_activity:
            return 0.0
        # Without per-call timestamps, assume a fixed share of the channel total landed in the window.
        recent_cost = costs.total_cost_usd * RECENT_COST_SHARE
        velocity = recent_cost / COST_WINDOW_MINUTES
        saturation = min(1.0, velocity / COST_VELOCITY_REFERENCE_USD)
        if saturation > 0.7:
            logger.warning(
                "High cost saturation in %s: %.4f USD/min (saturation %.2f)",
                context.channel_key,
                velocity,
                saturation,
            )
        return 1.0 - saturation

    def score_bot_noise(self, context: EngagementContext) -> float:
        metrics = context.channel_metrics
        if metrics is None or metrics.total_messages <= 0:
            return 0.0
        ratio = metrics.bot_messages / metrics.total_messages
        if ratio > 0.7:
            logger.warning(
                "High bot noise in %s: %d of %d messages from bots",
                context.channel_key,
                metrics.bot_messages,
                metrics.total_messages,
            )
        return 1.0 - ratio

    # Decision ----------------------------------------------------------------

    def _build_decision(
        self,
        score: float,
        context: EngagementContext,
        breakdown: Dict[str, float],
        contributions: Dict[str, float],
        preferences: EngagementPreferences,
    ) -> EngagementDecision:
        engage = score >= preferences.min_engage_threshold
        reasons = [label for name, (threshold, label) in REASON_THRESHOLDS.items() if breakdown[name] > threshold]
        if context.message.is_dm:
            reasons.append("dm_context")
        reason = "Engagement threshold met" if engage else "Engagement threshold not met"
        if reasons:
            reason += f" ({', '.join(reasons)})"
        logger.debug(
            "Engagement decision for %s: score=%.3f threshold=%.2f engage=%s reasons=%s",
            context.channel_key,
            score,
            preferences.min_engage_threshold,
            engage,
            reasons,
        )
        return EngagementDecision(
            engage=engage,
            score=score,
            reason=reason,
            reasons=reasons,
            breakdown=breakdown,
            contributions=contributions,
        )
