import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .messages import IncomingMessage
from .scoring import TECHNICAL_KEYWORDS

GREETING_WHITELIST = {"hey", "yo", "hi", "hello"}

NON_SUBSTANTIVE_EXPRESSIONS = {
    "lol", "lmao", "lmfao", "rofl", "ok", "k", "kk", "okay", "haha", "hahaha", "ha", "h", "hm", "hmm",
    "hmmm", "huh", "sup", "bruh", "bro", "sure", "yep", "yup", "nope", "nah", "ikr", "idk", "gg",
}

_EMOJI_JOINERS = {"\u200d", "\ufe0f"}
_REQUEST_WORDS = re.compile(r"\b(tell|show|explain|help|can|could|should|would|please|anyone|someone)\b")
_PUNCTUATION_ONLY = re.compile(r"^[!?.,]+$")


@dataclass(frozen=True)
class FilterDecision:
    skip: bool
    reason: str


class CatchupFilter:
    """
    Deterministic heuristics deciding whether a catch-up trigger can skip the
    planner. Used when weighted scoring is disabled. Errs on the side of
    letting the planner run.
    """

    recent_message_window = 8
    emoji_only_threshold = 3
    high_velocity_threshold = 5
    high_velocity_window_seconds = 30.0
    conversation_window_seconds = 120.0
    min_relevance_score = 0.2

    def __init__(self):
        self.logger = logging.getLogger("arete.catchup")

    def should_skip(
        self,
        message: IncomingMessage,
        recent_messages: Sequence[IncomingMessage],
        agent_id: Optional[str],
        agent_name: str = "",
    ) -> FilterDecision:
        channel_key = message.channel_key
        try:
            combined = sorted([*recent_messages, message], key=lambda m: m.created_at)
            window = combined[-self.recent_message_window :]

            addressed = agent_id is not None and self._contains_agent_mention(window, agent_id, agent_name)
            if not message.is_dm and agent_id is not None and not addressed:
                self.logger.debug("Catch-up filter (no-mention) triggered for %s", channel_key)
                return FilterDecision(True, "Bot not mentioned or addressed in recent context")

            if self._has_emoji_only_streak(window):
                self.logger.debug("Catch-up filter (emoji-only) triggered for %s", channel_key)
                return FilterDecision(True, "Recent messages are emoji-only or non-substantive")

            if self._detect_conversation_pattern(window, agent_id):
                self.logger.debug("Catch-up filter (other-users conversation) triggered for %s", channel_key)
                return FilterDecision(True, "Detected conversation between other users")

            velocity = self._message_velocity(window)
            if velocity >= self.high_velocity_threshold / self.high_velocity_window_seconds:
                self.logger.debug("Catch-up filter (high velocity %.2f msg/s) triggered for %s", velocity, channel_key)
                return FilterDecision(True, "High message velocity detected")

            relevance = max([self._relevance(m.content, agent_name) for m in window] + [0.0])
            if relevance < self.min_relevance_score:
                self.logger.debug("Catch-up filter (low relevance %.2f) triggered for %s", relevance, channel_key)
                return FilterDecision(True, "Low content relevance to bot")

            return FilterDecision(False, "Content appears relevant for planner")
        except Exception as exc:
            self.logger.error("Catch-up filter failed for %s: %s", channel_key, exc)
            return FilterDecision(False, "Filter error - allowing planner to run")

    def _contains_agent_mention(self, messages: Sequence[IncomingMessage], agent_id: str, agent_name: str) -> bool:
        mention_token = re.compile(rf"<@!?{re.escape(agent_id)}>")
        plaintext = re.compile(rf"\b{re.escape(agent_name)}\b", re.IGNORECASE) if agent_name else None
        for msg in messages:
            if msg.author_is_bot:
                continue
            if msg.mentions_agent or msg.reply_to_author_id == agent_id:
                return True
            content = msg.content or ""
            if mention_token.search(content):
                return True
            if plaintext is not None and plaintext.search(content):
                return True
        return False

    def _has_emoji_only_streak(self, messages: Sequence[IncomingMessage]) -> bool:
        humans = [m for m in messages if not m.author_is_bot]
        streak = humans[-self.emoji_only_threshold :]
        if len(streak) < self.emoji_only_threshold:
            return False
        return all(self._is_emoji_only(m) for m in streak)

    def _is_emoji_only(self, message: IncomingMessage) -> bool:
        if message.has_attachments:
            return False
        trimmed = (message.content or "").strip()
        if not trimmed:
            return True
        lower = trimmed.lower()
        if lower in GREETING_WHITELIST:
            return False
        if lower in NON_SUBSTANTIVE_EXPRESSIONS:
            return True
        if len(trimmed) <= 3 and _PUNCTUATION_ONLY.match(trimmed):
            return True
        squashed = "".join(trimmed.split())
        return all(ch in _EMOJI_JOINERS or unicodedata.category(ch) in {"So", "Sk"} for ch in squashed)

    def _detect_conversation_pattern(self, messages: Sequence[IncomingMessage], agent_id: Optional[str]) -> bool:
        others = [m for m in messages if m.author_id != agent_id]
        if len(others) < 4:
            return False
        counts: Dict[str, int] = {}
        for msg in others:
            if msg.author_is_bot:
                return False
            counts[msg.author_id] = counts.get(msg.author_id, 0) + 1
        if not 2 <= len(counts) <= 3:
            return False
        alternations = sum(1 for prev, cur in zip(others, others[1:]) if prev.author_id != cur.author_id)
        if alternations / max(len(others) - 1, 1) < 0.6:
            return False
        return others[-1].created_at - others[0].created_at <= self.conversation_window_seconds

    def _message_velocity(self, messages: Sequence[IncomingMessage]) -> float:
        humans: List[IncomingMessage] = sorted((m for m in messages if not m.author_is_bot), key=lambda m: m.created_at)
        burst = humans[-self.high_velocity_threshold :]
        if len(burst) < self.high_velocity_threshold:
            return 0.0
        duration = burst[-1].created_at - burst[0].created_at
        if duration <= 0:
            return float(self.high_velocity_threshold)
        return len(burst) / duration

    def _relevance(self, content: str, agent_name: str) -> float:
        if not content:
            return 0.0
        lower = content.lower()
        score = 0.0
        if "?" in lower:
            score += 0.4
        if _REQUEST_WORDS.search(lower):
            score += 0.3
        if any(keyword in lower for keyword in TECHNICAL_KEYWORDS):
            score += 0.2
        tokens = ["hey", "hi", "hello", "ping", "bot"]
        if agent_name:
            tokens.append(re.escape(agent_name.lower()))
        if re.match(rf"^({'|'.join(tokens)})\b", lower.strip()):
            score += 0.1
        return min(1.0, score)
