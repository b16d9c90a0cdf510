import os
from pathlib import Path

from arete_core.config import RuntimeConfig


def test_defaults_without_environment(monkeypatch):
    for key in list(os.environ):
        if key.startswith("ARETE_"):
            monkeypatch.delenv(key)

    config = RuntimeConfig.from_env()

    assert config == RuntimeConfig()
    assert config.catchup_after_messages == 10
    assert config.bot_max_back_and_forth == 2
    assert config.planner_default_action == "ignore"


def test_environment_overrides_are_parsed(monkeypatch):
    monkeypatch.setenv("ARETE_CATCHUP_AFTER_MESSAGES", "4")
    monkeypatch.setenv("ARETE_ALLOW_THREAD_RESPONSES", "no")
    monkeypatch.setenv("ARETE_ALLOWED_THREAD_IDS", "0123, 456 ,,")
    monkeypatch.setenv("ARETE_BOT_BACK_AND_FORTH_ACTION", "IGNORE")
    monkeypatch.setenv("ARETE_ENGAGEMENT_WEIGHT_MENTION", "0.45")
    monkeypatch.setenv("ARETE_ENGAGEMENT_IGNORE_MODE", "react")
    monkeypatch.setenv("ARETE_PLANNER_DEFAULT_ACTION", "react")
    monkeypatch.setenv("ARETE_ENGAGEMENT_OVERRIDES_PATH", "/tmp/overrides.json")

    config = RuntimeConfig.from_env()

    assert config.catchup_after_messages == 4
    assert config.allow_thread_responses is False
    assert config.allowed_thread_ids == ("0123", "456")
    assert config.bot_after_limit_action == "ignore"
    assert config.engagement_weights().mention == 0.45
    assert config.engagement_preferences().ignore_mode == "react"
    assert config.planner_default_action == "react"
    assert config.engagement_overrides_path == Path("/tmp/overrides.json")


def test_invalid_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("ARETE_CATCHUP_AFTER_MESSAGES", "lots")
    monkeypatch.setenv("ARETE_RATE_LIMIT_USER_LIMIT", "-3")
    monkeypatch.setenv("ARETE_ENGAGEMENT_WEIGHT_QUESTION", "nan")
    monkeypatch.setenv("ARETE_ENGAGEMENT_IGNORE_MODE", "loud")
    monkeypatch.setenv("ARETE_BOT_BACK_AND_FORTH_COOLDOWN_SECONDS", "0")

    config = RuntimeConfig.from_env()

    assert config.catchup_after_messages == 10
    assert config.user_rate_limit == 5
    assert config.weight_question == 0.2
    assert config.ignore_mode == "silent"
    assert config.bot_cooldown_seconds == 1.0


def test_probabilistic_band_is_ordered():
    config = RuntimeConfig(probabilistic_band_low=0.7, probabilistic_band_high=0.3)
    assert config.engagement_preferences().probabilistic_band == (0.3, 0.7)
