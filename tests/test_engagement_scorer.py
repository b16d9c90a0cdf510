import asyncio

import pytest

from arete_core.messages import ChannelMetrics, CostTotals, EngagementContext, IncomingMessage
from arete_core.scoring import (
    ChannelEngagementOverrides,
    EngagementPreferences,
    EngagementScorer,
    EngagementWeights,
    load_channel_overrides,
)


def _context(
    content: str = "",
    mentions_agent: bool = False,
    guild_id="g1",
    metrics=ChannelMetrics(total_messages=10, bot_messages=10, last_activity=0.0),
    costs=None,
) -> EngagementContext:
    message = IncomingMessage(
        message_id="m1",
        channel_id="c1",
        guild_id=guild_id,
        author_id="u1",
        content=content,
        mentions_agent=mentions_agent,
    )
    return EngagementContext(
        message=message,
        channel_key=message.channel_key,
        channel_metrics=metrics,
        cost_totals=costs,
        agent_id="agent",
        agent_name="Arete",
    )


def _scorer(**prefs) -> EngagementScorer:
    return EngagementScorer(EngagementWeights(), EngagementPreferences(**prefs), mention_names=("arete", "ari"))


def test_mention_only_scores_the_mention_weight():
    decision = asyncio.run(_scorer().decide(_context(mentions_agent=True)))

    assert decision.score == pytest.approx(0.3)
    assert decision.engage is False
    assert decision.breakdown["mention"] == 1.0
    assert decision.contributions["mention"] == pytest.approx(0.3)
    assert "mention" in decision.reasons


def test_decide_is_pure_for_identical_inputs():
    scorer = _scorer()
    context = _context(content="how do I fix this api error?", mentions_agent=True)
    snapshot = context.message

    first = asyncio.run(scorer.decide(context))
    second = asyncio.run(scorer.decide(context))

    assert first == second
    assert context.message is snapshot


def test_breakdown_reports_every_signal():
    decision = asyncio.run(_scorer().decide(_context(content="hello")))

    assert set(decision.breakdown) == {
        "mention",
        "question",
        "technical",
        "human_activity",
        "cost_saturation",
        "bot_noise",
    }
    assert all(0.0 <= value <= 1.0 for value in decision.breakdown.values())


def test_question_signal_combines_marks_words_and_phrases():
    scorer = _scorer()
    assert scorer.score_question(_context(content="how are you?")) == pytest.approx(0.9)
    assert scorer.score_question(_context(content="nice weather")) == 0.0


def test_technical_signal_is_fraction_of_keywords():
    scorer = _scorer()
    assert scorer.score_technical(_context(content="Error in the API code")) == pytest.approx(3 / 18)


def test_plaintext_name_scores_point_nine():
    scorer = _scorer()
    assert scorer.score_mention(_context(content="what does ari say")) == pytest.approx(0.9)


def test_human_activity_defaults_without_metrics():
    scorer = _scorer()
    assert scorer.score_human_activity(_context(metrics=None)) == 0.5
    assert scorer.score_bot_noise(_context(metrics=None)) == 0.0
    mixed = ChannelMetrics(total_messages=4, bot_messages=1, last_activity=1.0)
    assert scorer.score_human_activity(_context(metrics=mixed)) == pytest.approx(0.75)
    assert scorer.score_bot_noise(_context(metrics=mixed)) == pytest.approx(0.75)


def test_cost_saturation_drops_with_spend_velocity():
    scorer = _scorer()
    metrics = ChannelMetrics(total_messages=4, bot_messages=0, last_activity=1.0)

    assert scorer.score_cost_saturation(_context(metrics=metrics, costs=None)) == 0.0
    cheap = CostTotals(total_cost_usd=0.5, total_calls=3)
    assert scorer.score_cost_saturation(_context(metrics=metrics, costs=cheap)) == pytest.approx(0.9)
    pricey = CostTotals(total_cost_usd=5.0, total_calls=30)
    assert scorer.score_cost_saturation(_context(metrics=metrics, costs=pricey)) == 0.0


def test_dm_boost_multiplies_then_clamps():
    decision = asyncio.run(_scorer().decide(_context(mentions_agent=True, guild_id=None)))

    assert decision.score == pytest.approx(0.45)
    assert "dm_context" in decision.reasons


def test_channel_override_changes_effective_weights():
    overrides = ChannelEngagementOverrides(weights={"mention": 0.6}, preferences={"min_engage_threshold": 0.55})
    decision = asyncio.run(_scorer().decide(_context(mentions_agent=True), overrides))

    assert decision.score == pytest.approx(0.6)
    assert decision.engage is True


class _BoostingRefiner:
    async def refine(self, score, context):
        return 2.0


class _BrokenRefiner:
    async def refine(self, score, context):
        raise RuntimeError("refiner down")


def test_refinement_only_runs_inside_band_and_is_clamped():
    scorer = EngagementScorer(
        EngagementWeights(),
        EngagementPreferences(enable_llm_refinement=True, probabilistic_band=(0.25, 0.35)),
        refiner=_BoostingRefiner(),
    )
    decision = asyncio.run(scorer.decide(_context(mentions_agent=True)))
    assert decision.score == 1.0
    assert decision.engage


def test_scoring_fails_open_on_internal_error():
    scorer = EngagementScorer(
        EngagementWeights(),
        EngagementPreferences(enable_llm_refinement=True, probabilistic_band=(0.0, 1.0)),
        refiner=_BrokenRefiner(),
    )
    decision = asyncio.run(scorer.decide(_context(mentions_agent=True)))

    assert decision.engage is True
    assert decision.score == 0.5
    assert decision.reasons == ["error"]


def test_load_channel_overrides_reads_json(tmp_path):
    path = tmp_path / "overrides.json"
    path.write_text('{"g1:c1": {"weights": {"mention": 0.9}, "preferences": {"ignore_mode": "react"}}}')

    overrides = load_channel_overrides(path)

    assert overrides["g1:c1"].weights == {"mention": 0.9}
    assert overrides["g1:c1"].preferences == {"ignore_mode": "react"}


def test_load_channel_overrides_tolerates_bad_json(tmp_path):
    path = tmp_path / "overrides.json"
    path.write_text("{not json")

    assert load_channel_overrides(path) == {}
