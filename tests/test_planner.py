import asyncio
import json

from arete_core.config import RuntimeConfig
from arete_core.llm import ModelResponse, ModelUnavailable
from arete_core.metrics import CostLedger
from arete_core.plan import IgnorePlan, MessagePlan, ReactPlan
from arete_core.planner import PLAN_FUNCTION, PlanGenerator


class FakeClient:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def generate_response(self, model, messages, options=None):
        self.calls.append((model, list(messages), options))
        if self.error is not None:
            raise self.error
        return self.response


def _run(planner, trigger="mention", channel_key="g1:c1"):
    context = [{"role": "user", "content": "sam: can you help?"}]
    return asyncio.run(planner.generate_plan(context, trigger, channel_key))


def test_malformed_arguments_resolve_to_default_plan():
    client = FakeClient(ModelResponse(function_call_arguments="{not json"))
    plan = _run(PlanGenerator(client, RuntimeConfig()))

    assert isinstance(plan, IgnorePlan)
    assert plan == IgnorePlan()


def test_missing_arguments_and_non_object_payloads_resolve_to_default():
    for arguments in (None, "", "[1, 2]", '"message"'):
        client = FakeClient(ModelResponse(function_call_arguments=arguments))
        assert _run(PlanGenerator(client, RuntimeConfig())) == IgnorePlan()


def test_model_failure_uses_policy_default():
    client = FakeClient(error=ModelUnavailable("timeout"))
    plan = _run(PlanGenerator(client, RuntimeConfig(planner_default_action="react")))

    assert isinstance(plan, ReactPlan)


def test_unexpected_client_error_is_contained():
    client = FakeClient(error=KeyError("boom"))
    assert _run(PlanGenerator(client, RuntimeConfig())) == IgnorePlan()


def test_valid_arguments_are_validated_into_a_plan():
    arguments = json.dumps(
        {
            "action": "message",
            "modality": "text",
            "openaiOptions": {"reasoningEffort": "medium", "verbosity": "low", "tool_choice": {"type": "none"}},
            "presence": {"status": "online"},
            "riskTier": "Low",
        }
    )
    client = FakeClient(ModelResponse(function_call_arguments=arguments))
    plan = _run(PlanGenerator(client, RuntimeConfig()))

    assert isinstance(plan, MessagePlan)
    assert plan.openai_options.reasoning_effort == "medium"
    assert plan.openai_options.tool_choice == "none"
    assert plan.presence.status == "online"


def test_request_forces_plan_function_and_explains_trigger():
    client = FakeClient(ModelResponse(function_call_arguments="{}"))
    _run(PlanGenerator(client, RuntimeConfig(planner_model="planner-x")), trigger="catchup")

    model, messages, options = client.calls[0]
    assert model == "planner-x"
    assert options["function"] is PLAN_FUNCTION
    assert messages[0]["content"] == "sam: can you help?"
    assert "catching up" in messages[-1]["content"]


def test_usage_is_recorded_in_cost_ledger():
    costs = CostLedger()
    usage = {"prompt_tokens": 1000, "completion_tokens": 500}
    client = FakeClient(ModelResponse(function_call_arguments="{}", usage=usage))
    _run(PlanGenerator(client, RuntimeConfig(planner_model="gpt-5-nano"), costs=costs))

    totals = costs.get_channel_totals("g1:c1")
    assert totals.total_calls == 1
    assert totals.total_cost_usd > 0


def test_plan_function_schema_requires_core_fields():
    params = PLAN_FUNCTION["parameters"]
    assert PLAN_FUNCTION["name"] == "generate-plan"
    assert params["required"] == ["action", "modality", "openaiOptions", "presence", "riskTier"]
    assert params["properties"]["openaiOptions"]["properties"]["reasoningEffort"]["enum"] == [
        "minimal",
        "low",
        "medium",
        "high",
    ]
