from datetime import timedelta

from snapstreak.core.metrics import sweep_last_run_processed
from snapstreak.workers.expire_pair_streaks import expire_pair_streaks


def test_expiry_sweep_resets_lapsed_streaks(streak_engine, clock):
    t0 = clock.now()
    streak_engine.record_action("alice", "bob", t0)
    streak_engine.record_action("bob", "alice", t0 + timedelta(hours=2))
    streak_engine.record_action("carol", "dave", t0 + timedelta(hours=20))
    streak_engine.record_action("dave", "carol", t0 + timedelta(hours=21))

    result = expire_pair_streaks(engine=streak_engine, now=t0 + timedelta(hours=30))

    assert result == {"expired": 1}
    assert streak_engine.get_pair_streak("alice", "bob").current_streak == 0
    assert streak_engine.get_pair_streak("alice", "bob").longest_streak == 1
    assert streak_engine.get_pair_streak("carol", "dave").current_streak == 1
    assert sweep_last_run_processed.value({"sweep": "pair_expiry"}) == 1


def test_expiry_sweep_with_nothing_to_do(streak_engine, clock):
    assert expire_pair_streaks(engine=streak_engine, now=clock.now()) == {"expired": 0}
