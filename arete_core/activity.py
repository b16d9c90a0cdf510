import logging
import time
from dataclasses import dataclass
from typing import Optional

from .cache import TTLCache
from .config import RuntimeConfig
from .messages import IncomingMessage


TRIGGERS = ("mention", "reply", "catchup", "none")


@dataclass
class ChannelActivityState:
    channel_key: str
    message_count: int = 0
    last_updated: float = 0.0


@dataclass
class BotConversationState:
    tracked_bot_id: str
    exchange_count: int = 0
    last_direction: str = "other"  # self | other
    last_updated: float = 0.0
    blocked_until: Optional[float] = None


@dataclass(frozen=True)
class Classification:
    trigger: str
    channel_key: str
    message_count: int = 0

    @property
    def direct(self) -> bool:
        return self.trigger in {"mention", "reply"}


@dataclass(frozen=True)
class BotLoopVerdict:
    suppressed: bool
    react_with: Optional[str] = None
    reason: str = ""

    def __bool__(self) -> bool:
        return self.suppressed


class ActivityTracker:
    """
    Per-channel catch-up counters plus bot-to-bot conversation state.

    Both maps live in idle-expiring caches keyed by channel key, so a channel
    that goes quiet is forgotten after its TTL and the next message starts
    from a fresh state.
    """

    def __init__(self, config: RuntimeConfig, agent_id: Optional[str] = None, agent_name: str = ""):
        self.config = config
        self.agent_id = agent_id
        self.agent_name = agent_name
        self.counters: TTLCache[str, ChannelActivityState] = TTLCache(
            ttl_seconds=config.stale_counter_ttl_seconds, max_entries=config.max_tracked_channels
        )
        self.bot_conversations: TTLCache[str, BotConversationState] = TTLCache(
            ttl_seconds=config.bot_conversation_ttl_seconds, max_entries=config.max_tracked_channels
        )
        self.allowed_thread_ids = set(config.allowed_thread_ids)
        self.logger = logging.getLogger("arete.activity")

    def set_identity(self, agent_id: Optional[str], agent_name: str = "") -> None:
        self.agent_id = agent_id
        self.agent_name = agent_name

    # Gatekeeping -----------------------------------------------------------

    def is_disallowed_thread(self, message: IncomingMessage) -> bool:
        if not message.is_thread:
            return False
        if self.config.allow_thread_responses:
            return False
        return message.channel_id not in self.allowed_thread_ids

    def is_self(self, message: IncomingMessage) -> bool:
        return self.agent_id is not None and message.author_id == self.agent_id

    # Catch-up counters -------------------------------------------------------

    def message_count(self, channel_key: str) -> int:
        state = self.counters.get(channel_key)
        return state.message_count if state else 0

    def reset_counter(self, channel_key: str) -> None:
        state = self.counters.get(channel_key)
        if state is None:
            return
        state.message_count = 0
        state.last_updated = time.time()
        self.counters.touch(channel_key, state.last_updated)

    def record_and_classify(self, message: IncomingMessage) -> Classification:
        channel_key = message.channel_key
        now = time.time()
        if self.counters.is_stale(channel_key, now):
            self.counters.pop(channel_key)
        state = self.counters.get_or_create(
            channel_key, lambda: ChannelActivityState(channel_key=channel_key, last_updated=now), now
        )
        state.message_count += 1
        state.last_updated = now
        self.counters.touch(channel_key, now)
        count = state.message_count

        trigger = "none"
        if self._mentions_agent(message):
            trigger = "mention"
        elif self._replies_to_agent(message):
            trigger = "reply"
        elif count >= self.config.catchup_after_messages:
            trigger = "catchup"
        elif count >= self.config.catchup_if_mentioned_after_messages and self._names_agent(message):
            trigger = "catchup"

        if trigger != "none":
            state.message_count = 0
            self.logger.debug("Trigger %s fired in %s after %d messages", trigger, channel_key, count)
        return Classification(trigger=trigger, channel_key=channel_key, message_count=count)

    def _mentions_agent(self, message: IncomingMessage) -> bool:
        return message.mentions_agent

    def _replies_to_agent(self, message: IncomingMessage) -> bool:
        if not message.reply_to_message_id or not message.reply_same_channel:
            return False
        return self.agent_id is not None and message.reply_to_author_id == self.agent_id

    def _names_agent(self, message: IncomingMessage) -> bool:
        name = (self.agent_name or "").strip().lower()
        if not name:
            return False
        return name in (message.content or "").lower()

    # Bot-to-bot loop guard ---------------------------------------------------

    def clear_bot_conversation(self, channel_key: str) -> None:
        if self.bot_conversations.pop(channel_key) is not None:
            self.logger.debug("Cleared bot conversation tracking for %s", channel_key)

    def should_suppress_bot_loop(self, message: IncomingMessage) -> BotLoopVerdict:
        if not message.author_is_bot or self.is_self(message):
            return BotLoopVerdict(False)

        channel_key = message.channel_key
        now = time.time()
        state = self.bot_conversations.get(channel_key)

        if state is not None and (
            state.tracked_bot_id != message.author_id or self.bot_conversations.is_stale(channel_key, now)
        ):
            # A different bot took over, or the old exchange went idle.
            self.bot_conversations.pop(channel_key)
            state = None

        if state is None:
            self.bot_conversations.set(
                channel_key,
                BotConversationState(tracked_bot_id=message.author_id, last_updated=now),
                now,
            )
            return BotLoopVerdict(False)

        if state.blocked_until is not None:
            if now < state.blocked_until:
                state.last_updated = now
                state.last_direction = "other"
                self.bot_conversations.touch(channel_key, now)
                self.logger.debug(
                    "Suppressed response to bot %s in %s (cooldown active).", message.author_id, channel_key
                )
                return BotLoopVerdict(True, self._suppression_reaction(), "cooldown_active")
            state.blocked_until = None
            state.exchange_count = 0

        if state.last_direction == "self":
            state.exchange_count += 1
        state.last_direction = "other"
        state.last_updated = now
        self.bot_conversations.touch(channel_key, now)

        if state.exchange_count > self.config.bot_max_back_and_forth:
            state.blocked_until = now + self.config.bot_cooldown_seconds
            self.logger.info(
                "Reached bot conversation limit with %s in %s; suppressing replies.", message.author_id, channel_key
            )
            return BotLoopVerdict(True, self._suppression_reaction(), "limit_reached")

        return BotLoopVerdict(False)

    def _suppression_reaction(self) -> Optional[str]:
        if self.config.bot_after_limit_action != "react":
            return None
        return self.config.bot_reaction_emoji

    def on_bot_message_sent(self, channel_key: str) -> None:
        self.reset_counter(channel_key)
        state = self.bot_conversations.get(channel_key)
        if state is None:
            return
        now = time.time()
        # The exchange tally carries over so the next bot reply counts as one more round trip.
        state.last_direction = "self"
        state.last_updated = now
        state.blocked_until = None
        self.bot_conversations.touch(channel_key, now)

    # Housekeeping ------------------------------------------------------------

    def sweep(self) -> int:
        now = time.time()
        evicted = len(self.counters.sweep(now)) + len(self.bot_conversations.sweep(now))
        if evicted:
            self.logger.debug("Evicted %d stale activity entries", evicted)
        return evicted
