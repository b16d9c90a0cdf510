"""
Per-message engagement state machine.

One EngagementPipeline owns every piece of mutable state (activity tracker,
rate limiters, channel metrics, per-channel locks) and is shared by reference
with the transport adapter. Messages in the same channel are handled in
arrival order under a per-channel lock; different channels run concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence

from .actions import ActionResult, RateLimitResult, ScopedRateLimiter
from .activity import ActivityTracker
from .audit import log_decision
from .catchup_filter import CatchupFilter
from .config import RuntimeConfig
from .messages import EngagementContext, IncomingMessage, to_chat_messages
from .metrics import ChannelMetricsStore, CostLedger
from .plan import Plan
from .planner import PlanGenerator
from .scoring import ChannelEngagementOverrides, EngagementDecision, EngagementScorer, load_channel_overrides

OUTCOMES = (
    "disallowed_thread",
    "self_message",
    "bot_loop_suppressed",
    "rate_limited",
    "no_trigger",
    "catchup_declined",
    "executed",
    "failed",
)

APOLOGY = "Sorry, something went wrong while I was putting that together. Please try again in a moment."


class ChatTransport(Protocol):
    async def fetch_recent(self, message: IncomingMessage, limit: int) -> Sequence[IncomingMessage]:
        ...

    async def react(self, message: IncomingMessage, emoji: str) -> None:
        ...

    async def reply(self, message: IncomingMessage, text: str) -> None:
        ...


class PlanExecutor(Protocol):
    async def execute(self, message: IncomingMessage, plan: Plan, direct: bool) -> ActionResult:
        ...


@dataclass(frozen=True)
class PipelineResult:
    outcome: str
    trigger: Optional[str] = None
    plan: Optional[Plan] = None
    decision: Optional[EngagementDecision] = None
    rate_limit: Optional[RateLimitResult] = None
    action_result: Optional[ActionResult] = None


class EngagementPipeline:
    def __init__(
        self,
        config: RuntimeConfig,
        planner: PlanGenerator,
        transport: ChatTransport,
        executor: PlanExecutor,
        scorer: Optional[EngagementScorer] = None,
        tracker: Optional[ActivityTracker] = None,
        rate_limiter: Optional[ScopedRateLimiter] = None,
        metrics: Optional[ChannelMetricsStore] = None,
        costs: Optional[CostLedger] = None,
        catchup_filter: Optional[CatchupFilter] = None,
        overrides: Optional[Dict[str, ChannelEngagementOverrides]] = None,
        audit_logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.planner = planner
        self.transport = transport
        self.executor = executor
        self.scorer = scorer or EngagementScorer(
            config.engagement_weights(), config.engagement_preferences(), mention_names=config.bot_mention_names
        )
        self.tracker = tracker or ActivityTracker(config)
        self.rate_limiter = rate_limiter or ScopedRateLimiter.from_config(config)
        self.metrics = metrics or ChannelMetricsStore(
            ttl_seconds=config.stale_counter_ttl_seconds, max_entries=config.max_tracked_channels
        )
        self.costs = costs or getattr(planner, "costs", None) or CostLedger()
        self.catchup_filter = catchup_filter or CatchupFilter()
        self.overrides = overrides if overrides is not None else load_channel_overrides(config.engagement_overrides_path)
        self.audit_logger = audit_logger
        self.logger = logging.getLogger("arete.pipeline")
        self._locks: Dict[str, asyncio.Lock] = {}
        # handle() calls holding or waiting on each channel lock
        self._lock_users: Dict[str, int] = {}

    def set_identity(self, agent_id: Optional[str], agent_name: str = "") -> None:
        self.tracker.set_identity(agent_id, agent_name)

    @property
    def agent_id(self) -> Optional[str]:
        return self.tracker.agent_id

    # Entry point -------------------------------------------------------------

    async def handle(self, message: IncomingMessage) -> PipelineResult:
        if self.tracker.is_disallowed_thread(message):
            return self._finish(message, PipelineResult("disallowed_thread"))
        channel_key = message.channel_key
        self._lock_users[channel_key] = self._lock_users.get(channel_key, 0) + 1
        try:
            async with self._lock_for(channel_key):
                try:
                    result = await self._handle_locked(message)
                except Exception as exc:
                    self.logger.exception("Engagement pipeline failed for %s: %s", channel_key, exc)
                    result = PipelineResult("failed")
        finally:
            remaining = self._lock_users.get(channel_key, 1) - 1
            if remaining > 0:
                self._lock_users[channel_key] = remaining
            else:
                self._lock_users.pop(channel_key, None)
        return self._finish(message, result)

    async def _handle_locked(self, message: IncomingMessage) -> PipelineResult:
        channel_key = message.channel_key
        self.metrics.record(message)

        if self.tracker.is_self(message):
            self.tracker.on_bot_message_sent(channel_key)
            return PipelineResult("self_message")

        if message.author_is_bot:
            verdict = self.tracker.should_suppress_bot_loop(message)
            if verdict:
                if verdict.react_with:
                    await self._safe_react(message, verdict.react_with)
                return PipelineResult("bot_loop_suppressed")
        else:
            self.tracker.clear_bot_conversation(channel_key)

        rate_limit = self.rate_limiter.check(message)
        if not rate_limit.allowed:
            self.logger.info(
                "Rate limited %s scope in %s; retry after %ds",
                rate_limit.scope,
                channel_key,
                rate_limit.retry_after_seconds,
            )
            return PipelineResult("rate_limited", rate_limit=rate_limit)

        classification = self.tracker.record_and_classify(message)
        trigger = classification.trigger
        if trigger == "none":
            return PipelineResult("no_trigger", trigger=trigger)

        recent = await self._fetch_recent(message)
        decision: Optional[EngagementDecision] = None
        if trigger == "catchup":
            decision, declined = await self._gate_catchup(message, recent)
            if declined:
                return PipelineResult("catchup_declined", trigger=trigger, decision=decision)

        chat_messages = to_chat_messages(recent, message, self.agent_id)
        plan = await self.planner.generate_plan(chat_messages, trigger, channel_key)
        return await self._execute(message, plan, classification.direct, trigger, decision)

    # Steps -------------------------------------------------------------------

    async def _gate_catchup(
        self, message: IncomingMessage, recent: Sequence[IncomingMessage]
    ) -> tuple[Optional[EngagementDecision], bool]:
        channel_key = message.channel_key
        if not self.config.realtime_filter_enabled:
            verdict = self.catchup_filter.should_skip(message, recent, self.agent_id, self.tracker.agent_name)
            if verdict.skip:
                self.logger.debug("Catch-up skipped in %s: %s", channel_key, verdict.reason)
            return None, verdict.skip

        context = EngagementContext(
            message=message,
            channel_key=channel_key,
            recent_messages=tuple(recent),
            channel_metrics=self.metrics.get(channel_key),
            cost_totals=self.costs.get_channel_totals(channel_key),
            agent_id=self.agent_id,
            agent_name=self.tracker.agent_name,
        )
        decision = await self.scorer.decide(context, self.overrides.get(channel_key))
        self.metrics.update_engagement_score(channel_key, decision.score)
        if decision.engage:
            return decision, False

        preferences = self.scorer.preferences
        override = self.overrides.get(channel_key)
        if override is not None:
            _, preferences = override.apply(self.scorer.weights, preferences)
        if preferences.ignore_mode == "react":
            await self._safe_react(message, preferences.reaction_emoji)
        return decision, True

    async def _execute(
        self,
        message: IncomingMessage,
        plan: Plan,
        direct: bool,
        trigger: str,
        decision: Optional[EngagementDecision],
    ) -> PipelineResult:
        try:
            action_result = await self.executor.execute(message, plan, direct)
        except Exception as exc:
            self.logger.error("Executing %s plan failed in %s: %s", plan.action, message.channel_key, exc)
            action_result = ActionResult(action=plan.action, success=False, detail=str(exc))

        if action_result.success:
            return PipelineResult("executed", trigger=trigger, plan=plan, decision=decision, action_result=action_result)

        # Catch-up misses stay silent; direct address always gets an answer.
        if direct:
            try:
                await self.transport.reply(message, APOLOGY)
            except Exception as exc:
                self.logger.error("Could not deliver apology in %s: %s", message.channel_key, exc)
        return PipelineResult("failed", trigger=trigger, plan=plan, decision=decision, action_result=action_result)

    async def _fetch_recent(self, message: IncomingMessage) -> Sequence[IncomingMessage]:
        try:
            return await self.transport.fetch_recent(message, self.config.recent_message_window)
        except Exception as exc:
            self.logger.warning("Could not fetch recent messages for %s: %s", message.channel_key, exc)
            return ()

    async def _safe_react(self, message: IncomingMessage, emoji: str) -> None:
        try:
            await self.transport.react(message, emoji)
        except Exception as exc:
            self.logger.warning("Failed to add reaction %s in %s: %s", emoji, message.channel_key, exc)

    def _finish(self, message: IncomingMessage, result: PipelineResult) -> PipelineResult:
        log_decision(
            self.audit_logger,
            message={
                "id": message.message_id,
                "channel_key": message.channel_key,
                "author_id": message.author_id,
                "author_is_bot": message.author_is_bot,
            },
            outcome=result.outcome,
            trigger=result.trigger,
            decision=result.decision.to_dict() if result.decision else None,
            plan=result.plan.to_dict() if result.plan else None,
            action_result=result.action_result.to_dict() if result.action_result else None,
        )
        return result

    # Housekeeping ------------------------------------------------------------

    def _lock_for(self, channel_key: str) -> asyncio.Lock:
        lock = self._locks.get(channel_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[channel_key] = lock
        return lock

    def maintenance(self) -> Dict[str, Any]:
        """Expire idle state. Every sweep is O(live entries)."""
        stats = {
            "activity": self.tracker.sweep(),
            "rate_limits": self.rate_limiter.cleanup(),
            "metrics": self.metrics.sweep(),
            "locks": 0,
        }
        # A just-released lock may still have a waiter that has not resumed.
        for channel_key in list(self._locks):
            if not self._lock_users.get(channel_key):
                self._locks.pop(channel_key, None)
                stats["locks"] += 1
        self.logger.debug("Maintenance sweep: %s", stats)
        return stats

    async def run_maintenance(self, interval_seconds: Optional[float] = None) -> None:
        interval = interval_seconds if interval_seconds is not None else self.config.maintenance_interval_seconds
        while True:
            await asyncio.sleep(max(1.0, interval))
            try:
                self.maintenance()
            except Exception as exc:
                self.logger.error("Maintenance sweep failed: %s", exc)
