import pytest

from core.config import Settings, _enforce_guardrails


def test_debug_rejected_outside_local_envs():
    with pytest.raises(ValueError, match="debug"):
        _enforce_guardrails(Settings(app_env="production", debug=True))


def test_debug_allowed_locally():
    _enforce_guardrails(Settings(app_env="local", debug=True))


@pytest.mark.parametrize(
    "overrides",
    [
        {"store_read_attempts": 0},
        {"planner_high_ratio": 0},
        {"planner_high_ratio": 1.5},
        {"planner_window_days": 0},
    ],
)
def test_invalid_tuning_rejected(overrides):
    with pytest.raises(ValueError):
        _enforce_guardrails(Settings(**overrides))


def test_unknown_unbacked_policy_rejected():
    with pytest.raises(ValueError):
        Settings(unbacked_production_policy="ignore")
