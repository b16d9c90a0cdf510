import logging
from typing import Any, Dict, Optional, Sequence

from .config import RuntimeConfig
from .llm import ModelClient, ModelUnavailable, parse_function_arguments
from .metrics import CostLedger
from .plan import (
    ACTIONS,
    ASPECT_RATIOS,
    BACKGROUNDS,
    IMAGE_QUALITIES,
    MODALITIES,
    OUTPUT_FORMATS,
    PRESENCE_STATUSES,
    REASONING_EFFORTS,
    RISK_TIERS,
    SEARCH_CONTEXT_SIZES,
    TTS_LEVELS,
    TTS_SPEEDS,
    TTS_STYLES,
    VERBOSITIES,
    Plan,
    default_plan,
    validate_plan,
)

TRIGGER_EXPLANATIONS = {
    "mention": "Mentioned with a direct ping",
    "reply": "Replied to with a direct reply",
    "catchup": (
        "Enough messages have passed since you last replied - catching up. "
        "As this is an automatic task, your voice may not be needed."
    ),
}

PLANNER_PROMPT = (
    "You plan the next move of a chat assistant in a group conversation. "
    "Look at the last message (the one that triggered you) and the recent messages before it, "
    "then call generate-plan exactly once. Pick 'message' to reply, 'react' to answer with emoji only, "
    "'image' to generate a picture, or 'ignore' to stay out of it. Catch-up runs often need no reply. "
    "Prefer low reasoning and low verbosity for casual chat. If unsure, react."
)

PLAN_FUNCTION: Dict[str, Any] = {
    "name": "generate-plan",
    "description": "Decide how the assistant should respond to the latest message.",
    "parameters": {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": list(ACTIONS),
                "description": "message replies, react adds emoji, ignore does nothing, image runs the image pipeline.",
            },
            "modality": {
                "type": "string",
                "enum": list(MODALITIES),
                "description": "tts reads a short reply aloud; always text when action is image.",
            },
            "reaction": {
                "type": "string",
                "description": "Emoji only, no text. Required when action is react.",
            },
            "imageRequest": {
                "type": "object",
                "description": "Required when action is image.",
                "properties": {
                    "prompt": {"type": "string", "description": "Detailed description of the image."},
                    "aspectRatio": {"type": "string", "enum": list(ASPECT_RATIOS)},
                    "background": {"type": "string", "enum": list(BACKGROUNDS)},
                    "quality": {"type": "string", "enum": list(IMAGE_QUALITIES)},
                    "style": {"type": "string", "description": "Style preset, only when explicitly requested."},
                    "outputFormat": {"type": "string", "enum": list(OUTPUT_FORMATS)},
                    "outputCompression": {"type": "integer", "minimum": 1, "maximum": 100},
                    "allowPromptAdjustment": {
                        "type": "boolean",
                        "description": "Leave false unless the user asks for prompt improvements.",
                    },
                    "followUpResponseId": {"type": "string", "description": "Response id when asking for a variation."},
                },
                "required": ["prompt"],
            },
            "openaiOptions": {
                "type": "object",
                "properties": {
                    "reasoningEffort": {"type": "string", "enum": list(REASONING_EFFORTS)},
                    "verbosity": {"type": "string", "enum": list(VERBOSITIES)},
                    "tool_choice": {
                        "type": "object",
                        "properties": {
                            "type": {
                                "type": "string",
                                "enum": ["none", "web_search"],
                                "description": "web_search only with a meaningful, non-empty query.",
                            }
                        },
                        "required": ["type"],
                    },
                    "webSearch": {
                        "type": "object",
                        "properties": {
                            "query": {"type": "string"},
                            "searchContextSize": {"type": "string", "enum": list(SEARCH_CONTEXT_SIZES)},
                        },
                        "required": ["query", "searchContextSize"],
                    },
                    "ttsOptions": {
                        "type": "object",
                        "properties": {
                            "speed": {"type": "string", "enum": list(TTS_SPEEDS)},
                            "pitch": {"type": "string", "enum": list(TTS_LEVELS)},
                            "emphasis": {"type": "string", "enum": list(TTS_LEVELS)},
                            "style": {"type": "string", "enum": list(TTS_STYLES)},
                            "styleDegree": {"type": "string", "enum": list(TTS_LEVELS)},
                            "styleNote": {"type": "string"},
                        },
                        "required": ["speed", "pitch", "emphasis", "style", "styleDegree"],
                    },
                },
                "required": ["reasoningEffort", "verbosity", "tool_choice"],
            },
            "presence": {
                "type": "object",
                "properties": {
                    "status": {"type": "string", "enum": list(PRESENCE_STATUSES)},
                    "activities": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "type": {"type": "integer", "enum": [0, 1, 2, 3, 4, 5]},
                                "name": {"type": "string", "description": "24 characters max."},
                                "state": {"type": "string", "description": "30 characters max."},
                                "url": {"type": "string", "description": "Required when type is 1 (streaming)."},
                            },
                            "required": ["type", "name", "state"],
                        },
                    },
                    "afk": {"type": "boolean"},
                },
                "required": ["status"],
            },
            "riskTier": {
                "type": "string",
                "enum": list(RISK_TIERS),
                "description": "Low for harmless chat, Medium when sensitivity rises, High when refusal may be needed.",
            },
        },
        "required": ["action", "modality", "openaiOptions", "presence", "riskTier"],
    },
}


def explain_trigger(trigger: str) -> str:
    return TRIGGER_EXPLANATIONS.get(trigger, trigger)


class PlanGenerator:
    """
    Asks the planning model for a forced generate-plan call and validates the
    result. Any failure resolves to the default plan; nothing propagates.
    """

    def __init__(self, client: ModelClient, config: RuntimeConfig, costs: Optional[CostLedger] = None):
        self.client = client
        self.config = config
        self.costs = costs
        self.logger = logging.getLogger("arete.planner")

    def default_plan(self) -> Plan:
        return default_plan(self.config.planner_default_action)

    async def generate_plan(
        self,
        context_messages: Sequence[Dict[str, Any]],
        trigger: str,
        channel_key: Optional[str] = None,
    ) -> Plan:
        messages = [
            *context_messages,
            {"role": "system", "content": PLANNER_PROMPT},
            {"role": "system", "content": f"This planner was triggered because: {explain_trigger(trigger)}."},
        ]
        options = {"function": PLAN_FUNCTION, "reasoning_effort": "low"}
        try:
            response = await self.client.generate_response(self.config.planner_model, messages, options)
        except ModelUnavailable as exc:
            self.logger.error("Plan generation failed (%s): %s", trigger, exc)
            return self.default_plan()
        except Exception as exc:
            self.logger.error("Plan generation failed unexpectedly (%s): %s", trigger, exc)
            return self.default_plan()

        if self.costs is not None and channel_key is not None and response.usage:
            self.costs.record(channel_key, self.config.planner_model, response.usage)

        try:
            raw = parse_function_arguments(response.function_call_arguments)
        except ValueError as exc:
            self.logger.warning("Failed to parse plan arguments, using default: %s", exc)
            return self.default_plan()

        plan = validate_plan(raw, self.config.planner_default_action)
        self.logger.debug("Validated plan for %s: %s", channel_key or "-", plan.to_dict())
        return plan
