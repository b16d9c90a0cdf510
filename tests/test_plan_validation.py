import pytest

from arete_core.plan import (
    DEFAULT_REACTION,
    ImagePlan,
    IgnorePlan,
    MessagePlan,
    ReactPlan,
    clamp_output_compression,
    default_plan,
    validate_plan,
)

LONG_ACTIVITY = {"type": 0, "name": "a" * 23 + " bbbbbb", "state": "s" * 29 + " t"}

RAW_PLANS = [
    {},
    {"action": "message"},
    {"action": "message", "modality": "tts", "riskTier": "Medium"},
    {"action": "react", "reaction": "🤖👍"},
    {"action": "react"},
    {"action": "dance", "modality": "hologram", "riskTier": "Severe"},
    {
        "action": "image",
        "modality": "tts",
        "imageRequest": {"prompt": "a red fox", "outputCompression": 250, "allowPromptAdjustment": "yes"},
        "openaiOptions": {"tool_choice": {"type": "web_search"}, "webSearch": {"query": "fox"}},
    },
    {"action": "image", "imageRequest": {"prompt": "   "}},
    {
        "action": "message",
        "openaiOptions": {"reasoningEffort": "extreme", "verbosity": "HIGH", "tool_choice": {"type": "web_search"}},
    },
    {"action": "message", "presence": {"status": "idle", "activities": [{"type": 4, "name": "chess", "state": "x"}]}},
    {
        "action": "message",
        "presence": {"status": "online", "activities": [LONG_ACTIVITY]},
    },
    {
        "action": "image",
        "modality": "tts",
        "openaiOptions": {"tool_choice": {"type": "web_search"}, "webSearch": {"query": "cats"}},
    },
    "not a plan",
    None,
]


@pytest.mark.parametrize("raw", RAW_PLANS)
def test_validate_is_idempotent(raw):
    once = validate_plan(raw)
    assert validate_plan(once) == once
    assert validate_plan(once.to_dict()) == once


def test_empty_input_resolves_to_full_default():
    plan = validate_plan({})

    assert isinstance(plan, IgnorePlan)
    assert plan.modality == "text"
    assert plan.risk_tier == "Low"
    assert plan.openai_options.reasoning_effort == "low"
    assert plan.openai_options.verbosity == "low"
    assert plan.openai_options.tool_choice == "auto"
    assert plan.openai_options.web_search.search_context_size == "low"
    assert plan.openai_options.tts_options.style == "casual"


def test_partial_nested_options_merge_onto_defaults():
    plan = validate_plan({"action": "message", "openaiOptions": {"verbosity": "high"}})

    assert isinstance(plan, MessagePlan)
    assert plan.openai_options.verbosity == "high"
    assert plan.openai_options.reasoning_effort == "low"
    assert plan.openai_options.tts_options.speed == "normal"


def test_unknown_enums_degrade_to_defaults():
    plan = validate_plan({"action": "dance", "modality": "hologram", "riskTier": "Severe"})

    assert isinstance(plan, IgnorePlan)
    assert plan.modality == "text"
    assert plan.risk_tier == "Low"


def test_unknown_action_uses_react_policy_default():
    plan = validate_plan({"action": "dance"}, default_action="react")

    assert isinstance(plan, ReactPlan)
    assert plan.reaction == DEFAULT_REACTION


@pytest.mark.parametrize("raw", [r for r in RAW_PLANS if isinstance(r, dict) and r.get("action") == "image"])
def test_image_plans_never_speak_or_search(raw):
    plan = validate_plan(raw)
    assert plan.modality == "text"
    assert plan.openai_options.tool_choice == "none"
    if isinstance(plan, ImagePlan):
        assert plan.openai_options.web_search is None
    else:
        assert not plan.openai_options.web_search.query


def test_presence_text_is_trimmed_after_truncation():
    plan = validate_plan(
        {
            "action": "message",
            "presence": {"status": "online", "activities": [LONG_ACTIVITY]},
        }
    )

    activity = plan.presence.activities[0]
    assert activity.name == "a" * 23
    assert activity.state == "s" * 29


def test_image_request_fields_are_normalized():
    plan = validate_plan(
        {
            "action": "image",
            "imageRequest": {
                "prompt": " a red fox ",
                "aspect_ratio": "portrait",
                "quality": "ultra",
                "output_format": "png",
                "output_compression": 250,
                "allowPromptAdjustment": "yes",
            },
        }
    )

    assert isinstance(plan, ImagePlan)
    request = plan.image_request
    assert request.prompt == "a red fox"
    assert request.aspect_ratio == "portrait"
    assert request.quality is None
    assert request.output_format == "png"
    assert request.output_compression == 100
    assert request.allow_prompt_adjustment is False


def test_image_without_prompt_becomes_ignore():
    assert isinstance(validate_plan({"action": "image", "imageRequest": {"prompt": ""}}), IgnorePlan)
    assert isinstance(validate_plan({"action": "image"}), IgnorePlan)


def test_react_without_emoji_uses_default_reaction():
    plan = validate_plan({"action": "react", "reaction": "  "})

    assert isinstance(plan, ReactPlan)
    assert plan.reaction == DEFAULT_REACTION


def test_web_search_without_query_is_disabled():
    plan = validate_plan({"action": "message", "openaiOptions": {"tool_choice": {"type": "web_search"}}})
    assert plan.openai_options.tool_choice == "none"

    searching = validate_plan(
        {
            "action": "message",
            "openaiOptions": {"tool_choice": {"type": "web_search"}, "webSearch": {"query": "python 3.13 release"}},
        }
    )
    assert searching.openai_options.tool_choice == "web_search"
    assert searching.openai_options.web_search.query == "python 3.13 release"


def test_presence_is_sanitized():
    plan = validate_plan(
        {
            "action": "message",
            "presence": {
                "status": "idle",
                "activities": [
                    {"type": 4, "name": "thinking about very long activity names", "state": "pondering"},
                    {"type": 1, "name": "stream"},
                    {"type": 9, "name": "bogus"},
                ],
            },
        }
    )

    assert plan.presence.status == "idle"
    assert len(plan.presence.activities) == 1
    assert len(plan.presence.activities[0].name) == 24
    assert validate_plan({"presence": {"status": "sleeping"}}).presence is None


@pytest.mark.parametrize(
    "value, expected",
    [(0, 1), (55.4, 55), (101, 100), ("42", 42), ("lots", 80), (None, 80), (float("nan"), 80)],
)
def test_output_compression_is_clamped(value, expected):
    assert clamp_output_compression(value) == expected


def test_default_plan_policy():
    assert isinstance(default_plan("ignore"), IgnorePlan)
    assert isinstance(default_plan("react"), ReactPlan)
    assert isinstance(default_plan("anything else"), IgnorePlan)
