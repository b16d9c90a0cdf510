import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TypeVar

from .scoring import EngagementPreferences, EngagementWeights

T = TypeVar("T")


def _parse_bool(val: str | None, default: bool) -> bool:
    if val is None:
        return default
    try:
        normalized = val.strip().lower()
        if not normalized:
            return default
        return normalized in {"1", "true", "yes", "on"}
    except Exception:
        return default


def _parse(val: str | None, caster: Callable[[str], T], default: T) -> T:
    if val is None:
        return default
    try:
        return caster(val)
    except Exception:
        return default


def _parse_non_negative(val: str | None, caster: Callable[[str], T], default: T) -> T:
    """
    Numeric options must be finite and non-negative; anything else keeps the default.
    """
    parsed = _parse(val, caster, default)
    try:
        if not math.isfinite(float(parsed)) or float(parsed) < 0:
            return default
    except (TypeError, ValueError):
        return default
    return parsed


def _parse_list(val: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    # Discord ids may carry leading zeroes, so entries stay strings.
    if not val:
        return default
    entries = tuple(entry.strip() for entry in val.split(",") if entry.strip())
    return entries or default


def _parse_choice(val: str | None, choices: set[str], default: str) -> str:
    if not val:
        return default
    normalized = val.strip().lower()
    return normalized if normalized in choices else default


def _env(name: str) -> str | None:
    return os.getenv(f"ARETE_{name}")


@dataclass(frozen=True)
class RuntimeConfig:
    # Catch-up cadence
    catchup_after_messages: int = 10
    catchup_if_mentioned_after_messages: int = 5
    stale_counter_ttl_seconds: float = 60 * 60
    max_tracked_channels: int = 5000
    # Thread visibility
    allow_thread_responses: bool = True
    allowed_thread_ids: tuple[str, ...] = ()
    # Bot-to-bot loop guard
    bot_max_back_and_forth: int = 2
    bot_cooldown_seconds: float = 5 * 60
    bot_conversation_ttl_seconds: float = 10 * 60
    bot_after_limit_action: str = "react"
    bot_reaction_emoji: str = "👍"
    bot_mention_names: tuple[str, ...] = ("arete", "ari")
    # Engagement scoring
    realtime_filter_enabled: bool = True
    weight_mention: float = 0.3
    weight_question: float = 0.2
    weight_technical: float = 0.15
    weight_human_activity: float = 0.15
    weight_cost_saturation: float = 0.1
    weight_bot_noise: float = 0.05
    weight_dm_boost: float = 1.5
    weight_decay: float = 0.05
    ignore_mode: str = "silent"
    engagement_reaction_emoji: str = "👍"
    min_engage_threshold: float = 0.5
    probabilistic_band_low: float = 0.4
    probabilistic_band_high: float = 0.6
    enable_llm_refinement: bool = False
    engagement_overrides_path: Path | None = None
    # Rate limits (per scope)
    rate_limit_user: bool = True
    user_rate_limit: int = 5
    user_rate_window_seconds: float = 60.0
    rate_limit_channel: bool = True
    channel_rate_limit: int = 10
    channel_rate_window_seconds: float = 60.0
    rate_limit_guild: bool = True
    guild_rate_limit: int = 20
    guild_rate_window_seconds: float = 60.0
    # Planner / model client
    planner_model: str = "gpt-5-nano"
    reply_model: str = "gpt-5-mini"
    planner_default_action: str = "ignore"
    llm_timeout_seconds: float = 20.0
    recent_message_window: int = 8
    # Housekeeping
    maintenance_interval_seconds: float = 60.0
    audit_log_path: Path = Path("arete_core/data/audit.log")

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        """
        Build a config instance with optional environment overrides. Invalid
        values are ignored in favour of the defaults.
        """
        default = cls()
        overrides_path = _env("ENGAGEMENT_OVERRIDES_PATH")
        return cls(
            catchup_after_messages=_parse_non_negative(
                _env("CATCHUP_AFTER_MESSAGES"), int, default.catchup_after_messages
            ),
            catchup_if_mentioned_after_messages=_parse_non_negative(
                _env("CATCHUP_IF_MENTIONED_AFTER_MESSAGES"), int, default.catchup_if_mentioned_after_messages
            ),
            stale_counter_ttl_seconds=_parse_non_negative(
                _env("STALE_COUNTER_TTL_SECONDS"), float, default.stale_counter_ttl_seconds
            ),
            max_tracked_channels=_parse_non_negative(_env("MAX_TRACKED_CHANNELS"), int, default.max_tracked_channels),
            allow_thread_responses=_parse_bool(_env("ALLOW_THREAD_RESPONSES"), default.allow_thread_responses),
            allowed_thread_ids=_parse_list(_env("ALLOWED_THREAD_IDS"), default.allowed_thread_ids),
            bot_max_back_and_forth=_parse_non_negative(
                _env("BOT_BACK_AND_FORTH_LIMIT"), int, default.bot_max_back_and_forth
            ),
            bot_cooldown_seconds=max(
                1.0,
                _parse_non_negative(_env("BOT_BACK_AND_FORTH_COOLDOWN_SECONDS"), float, default.bot_cooldown_seconds),
            ),
            bot_conversation_ttl_seconds=_parse_non_negative(
                _env("BOT_BACK_AND_FORTH_TTL_SECONDS"), float, default.bot_conversation_ttl_seconds
            ),
            bot_after_limit_action=_parse_choice(
                _env("BOT_BACK_AND_FORTH_ACTION"), {"react", "ignore"}, default.bot_after_limit_action
            ),
            bot_reaction_emoji=(_env("BOT_BACK_AND_FORTH_REACTION") or "").strip() or default.bot_reaction_emoji,
            bot_mention_names=_parse_list(_env("BOT_MENTION_NAMES"), default.bot_mention_names),
            realtime_filter_enabled=_parse_bool(_env("REALTIME_FILTER_ENABLED"), default.realtime_filter_enabled),
            weight_mention=_parse_non_negative(_env("ENGAGEMENT_WEIGHT_MENTION"), float, default.weight_mention),
            weight_question=_parse_non_negative(_env("ENGAGEMENT_WEIGHT_QUESTION"), float, default.weight_question),
            weight_technical=_parse_non_negative(_env("ENGAGEMENT_WEIGHT_TECHNICAL"), float, default.weight_technical),
            weight_human_activity=_parse_non_negative(
                _env("ENGAGEMENT_WEIGHT_HUMAN_ACTIVITY"), float, default.weight_human_activity
            ),
            weight_cost_saturation=_parse_non_negative(
                _env("ENGAGEMENT_WEIGHT_COST_SATURATION"), float, default.weight_cost_saturation
            ),
            weight_bot_noise=_parse_non_negative(_env("ENGAGEMENT_WEIGHT_BOT_NOISE"), float, default.weight_bot_noise),
            weight_dm_boost=_parse_non_negative(_env("ENGAGEMENT_WEIGHT_DM_BOOST"), float, default.weight_dm_boost),
            weight_decay=_parse_non_negative(_env("ENGAGEMENT_WEIGHT_DECAY"), float, default.weight_decay),
            ignore_mode=_parse_choice(_env("ENGAGEMENT_IGNORE_MODE"), {"silent", "react"}, default.ignore_mode),
            engagement_reaction_emoji=(_env("ENGAGEMENT_REACTION_EMOJI") or "").strip()
            or default.engagement_reaction_emoji,
            min_engage_threshold=_parse_non_negative(
                _env("ENGAGEMENT_MIN_THRESHOLD"), float, default.min_engage_threshold
            ),
            probabilistic_band_low=_parse_non_negative(
                _env("ENGAGEMENT_PROBABILISTIC_LOW"), float, default.probabilistic_band_low
            ),
            probabilistic_band_high=_parse_non_negative(
                _env("ENGAGEMENT_PROBABILISTIC_HIGH"), float, default.probabilistic_band_high
            ),
            enable_llm_refinement=_parse_bool(
                _env("ENGAGEMENT_ENABLE_LLM_REFINEMENT"), default.enable_llm_refinement
            ),
            engagement_overrides_path=Path(overrides_path) if overrides_path else default.engagement_overrides_path,
            rate_limit_user=_parse_bool(_env("RATE_LIMIT_USER"), default.rate_limit_user),
            user_rate_limit=_parse_non_negative(_env("RATE_LIMIT_USER_LIMIT"), int, default.user_rate_limit),
            user_rate_window_seconds=_parse_non_negative(
                _env("RATE_LIMIT_USER_WINDOW_SECONDS"), float, default.user_rate_window_seconds
            ),
            rate_limit_channel=_parse_bool(_env("RATE_LIMIT_CHANNEL"), default.rate_limit_channel),
            channel_rate_limit=_parse_non_negative(_env("RATE_LIMIT_CHANNEL_LIMIT"), int, default.channel_rate_limit),
            channel_rate_window_seconds=_parse_non_negative(
                _env("RATE_LIMIT_CHANNEL_WINDOW_SECONDS"), float, default.channel_rate_window_seconds
            ),
            rate_limit_guild=_parse_bool(_env("RATE_LIMIT_GUILD"), default.rate_limit_guild),
            guild_rate_limit=_parse_non_negative(_env("RATE_LIMIT_GUILD_LIMIT"), int, default.guild_rate_limit),
            guild_rate_window_seconds=_parse_non_negative(
                _env("RATE_LIMIT_GUILD_WINDOW_SECONDS"), float, default.guild_rate_window_seconds
            ),
            planner_model=(_env("PLANNER_MODEL") or "").strip() or default.planner_model,
            reply_model=(_env("REPLY_MODEL") or "").strip() or default.reply_model,
            planner_default_action=_parse_choice(
                _env("PLANNER_DEFAULT_ACTION"), {"ignore", "react"}, default.planner_default_action
            ),
            llm_timeout_seconds=_parse_non_negative(_env("LLM_TIMEOUT_SECONDS"), float, default.llm_timeout_seconds),
            recent_message_window=_parse_non_negative(
                _env("RECENT_MESSAGE_WINDOW"), int, default.recent_message_window
            ),
            maintenance_interval_seconds=_parse_non_negative(
                _env("MAINTENANCE_INTERVAL_SECONDS"), float, default.maintenance_interval_seconds
            ),
            audit_log_path=Path(_env("AUDIT_LOG_PATH") or default.audit_log_path),
        )

    def ensure_paths(self) -> None:
        self.audit_log_path.parent.mkdir(parents=True, exist_ok=True)

    def engagement_weights(self) -> EngagementWeights:
        return EngagementWeights(
            mention=self.weight_mention,
            question=self.weight_question,
            technical=self.weight_technical,
            human_activity=self.weight_human_activity,
            cost_saturation=self.weight_cost_saturation,
            bot_noise=self.weight_bot_noise,
            dm_boost=self.weight_dm_boost,
            decay=self.weight_decay,
        )

    def engagement_preferences(self) -> EngagementPreferences:
        low, high = sorted((self.probabilistic_band_low, self.probabilistic_band_high))
        return EngagementPreferences(
            ignore_mode=self.ignore_mode,
            reaction_emoji=self.engagement_reaction_emoji,
            min_engage_threshold=self.min_engage_threshold,
            probabilistic_band=(low, high),
            enable_llm_refinement=self.enable_llm_refinement,
        )
