"""
Arete engagement core.

Decides, per incoming chat message, whether the agent should act, which
action to take and with what options. Transport-specific code (discord.py)
lives in the adapter layer; everything here works on IncomingMessage values.
"""

from .config import RuntimeConfig
from .messages import ChannelMetrics, CostTotals, EngagementContext, IncomingMessage, channel_key_for
from .actions import ActionResult, RateLimiter, RateLimitResult, ScopedRateLimiter
from .activity import ActivityTracker, BotConversationState, ChannelActivityState, Classification
from .scoring import EngagementDecision, EngagementPreferences, EngagementScorer, EngagementWeights
from .catchup_filter import CatchupFilter
from .plan import ImagePlan, IgnorePlan, MessagePlan, Plan, ReactPlan, default_plan, validate_plan
from .llm import ModelClient, ModelResponse, ModelUnavailable, OpenAIModelClient
from .planner import PLAN_FUNCTION, PlanGenerator
from .metrics import ChannelMetricsStore, CostLedger
from .pipeline import EngagementPipeline, PipelineResult

__all__ = [
    "RuntimeConfig",
    "IncomingMessage",
    "EngagementContext",
    "ChannelMetrics",
    "CostTotals",
    "channel_key_for",
    "RateLimiter",
    "RateLimitResult",
    "ScopedRateLimiter",
    "ActionResult",
    "ActivityTracker",
    "ChannelActivityState",
    "BotConversationState",
    "Classification",
    "EngagementScorer",
    "EngagementWeights",
    "EngagementPreferences",
    "EngagementDecision",
    "CatchupFilter",
    "Plan",
    "MessagePlan",
    "ReactPlan",
    "IgnorePlan",
    "ImagePlan",
    "default_plan",
    "validate_plan",
    "ModelClient",
    "ModelResponse",
    "ModelUnavailable",
    "OpenAIModelClient",
    "PLAN_FUNCTION",
    "PlanGenerator",
    "ChannelMetricsStore",
    "CostLedger",
    "EngagementPipeline",
    "PipelineResult",
]
