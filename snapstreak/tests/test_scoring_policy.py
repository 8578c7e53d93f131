import pytest

from snapstreak.features.scoring.policy import (
    approval_delta,
    clamp_score,
    miss_penalty,
    penalty_config,
    streak_bonus,
)


@pytest.mark.parametrize(
    "streak,bonus",
    [(0, 0), (1, 0), (6, 0), (7, 1), (13, 1), (14, 2), (20, 2), (21, 3)],
)
def test_streak_bonus_blocks(streak, bonus):
    assert streak_bonus(streak) == bonus


def test_approval_delta_adds_base_point():
    assert approval_delta(1) == 1
    assert approval_delta(7) == 2
    assert approval_delta(14) == 3
    assert approval_delta(7, base_points=0) == 1


@pytest.mark.parametrize("misses,penalty", [(0, 1), (1, 2), (2, 3), (3, 3), (5, 3)])
def test_progressive_penalty_is_capped(misses, penalty):
    assert miss_penalty(misses) == penalty


def test_negative_miss_count_treated_as_zero():
    assert miss_penalty(-2) == 1


def test_clamp_score_never_negative():
    assert clamp_score(-4) == 0
    assert clamp_score(0) == 0
    assert clamp_score(12) == 12


def test_penalty_config_describes_cap():
    config = penalty_config()
    assert config["base_penalty"] == 1
    assert config["max_penalty"] == 3
    assert config["streak_decrement"] == 1
    assert "-3 points" in config["description"]["third_miss"]


def test_explicit_penalty_cap_is_honoured():
    assert miss_penalty(4, max_penalty=2) == 2
    assert miss_penalty(1, max_penalty=0) == 0
