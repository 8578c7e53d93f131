import builtins
import threading
from datetime import timedelta

import pytest

from snapstreak.core.clock import Deadline
from snapstreak.core.errors import ConcurrentUpdateConflict, InvalidPairError, TimeoutError
from snapstreak.core.metrics import cas_conflicts_total, cas_retries_total, pair_streak_transitions_total
from snapstreak.features.streaks.service import StreakEngine
from snapstreak.features.streaks.store import InMemoryPairStreakStore


class RacingStore(InMemoryPairStreakStore):
    """Holds the first read of each of two threads until both have read."""

    def __init__(self):
        super().__init__()
        self.barrier = threading.Barrier(2)
        self._reads = 0
        self._reads_lock = threading.Lock()

    def get_or_create(self, low, high):
        record = super().get_or_create(low, high)
        with self._reads_lock:
            self._reads += 1
            first_round = self._reads <= 2
        if first_round:
            self.barrier.wait(timeout=5)
        return record


class AlwaysStaleStore(InMemoryPairStreakStore):
    def compare_and_swap(self, old, new):
        return False


def test_mutual_actions_build_and_reset_streak(streak_engine, clock):
    t0 = clock.now()

    first = streak_engine.record_action("alice", "bob", t0)
    assert (first.current_streak, first.increased) == (0, False)

    second = streak_engine.record_action("bob", "alice", t0 + timedelta(hours=1))
    assert (second.current_streak, second.longest_streak, second.increased) == (1, 1, True)

    streak_engine.record_action("alice", "bob", t0 + timedelta(hours=20))
    third = streak_engine.record_action("bob", "alice", t0 + timedelta(hours=22))
    assert (third.current_streak, third.longest_streak) == (2, 2)

    # Nobody acts before the deadline at t0+46h.
    late = streak_engine.record_action("alice", "bob", t0 + timedelta(hours=50))
    assert (late.current_streak, late.longest_streak, late.increased) == (0, 2, False)

    record = streak_engine.get_pair_streak("bob", "alice")
    assert record.last_action_a == t0 + timedelta(hours=50)
    assert record.last_action_b is None
    assert record.streak_started_at is None
    assert record.streak_expires_at == t0 + timedelta(hours=74)


def test_streak_lapses_after_one_day_of_silence(streak_engine, clock):
    t0 = clock.now()
    streak_engine.record_action("alice", "bob", t0)
    streak_engine.record_action("bob", "alice", t0 + timedelta(hours=1))

    # Deadline was t0+25h.
    late = streak_engine.record_action("alice", "bob", t0 + timedelta(hours=26))

    assert (late.current_streak, late.longest_streak, late.increased) == (0, 1, False)


def test_same_side_repeating_does_not_increment(streak_engine, clock):
    t0 = clock.now()
    streak_engine.record_action("alice", "bob", t0)
    again = streak_engine.record_action("alice", "bob", t0 + timedelta(hours=2))

    assert again.current_streak == 0
    assert again.increased is False


def test_cycle_restarts_after_increment(streak_engine, clock):
    t0 = clock.now()
    streak_engine.record_action("alice", "bob", t0)
    streak_engine.record_action("bob", "alice", t0 + timedelta(minutes=5))

    # Both sides were cleared, so a third action only opens the next cycle.
    follow_up = streak_engine.record_action("alice", "bob", t0 + timedelta(minutes=10))
    assert follow_up.current_streak == 1
    assert follow_up.increased is False


def test_reply_at_exactly_the_window_edge_does_not_count(streak_engine, clock):
    t0 = clock.now()
    streak_engine.record_action("alice", "bob", t0)
    reply = streak_engine.record_action("bob", "alice", t0 + timedelta(hours=24))

    assert reply.increased is False
    assert reply.current_streak == 0


def test_reply_just_inside_the_window_counts(streak_engine, clock):
    t0 = clock.now()
    streak_engine.record_action("alice", "bob", t0)
    reply = streak_engine.record_action("bob", "alice", t0 + timedelta(hours=23, minutes=59))

    assert reply.increased is True
    assert reply.current_streak == 1


def test_started_at_set_on_first_increment_only(streak_engine, clock):
    t0 = clock.now()
    streak_engine.record_action("alice", "bob", t0)
    streak_engine.record_action("bob", "alice", t0 + timedelta(hours=1))
    streak_engine.record_action("alice", "bob", t0 + timedelta(hours=10))
    streak_engine.record_action("bob", "alice", t0 + timedelta(hours=11))

    record = streak_engine.get_pair_streak("alice", "bob")
    assert record.current_streak == 2
    assert record.streak_started_at == t0 + timedelta(hours=1)


def test_longest_never_below_current(streak_engine, clock):
    t = clock.now()
    for step in range(12):
        sender, receiver = ("alice", "bob") if step % 2 == 0 else ("bob", "alice")
        gap = timedelta(hours=30) if step == 7 else timedelta(hours=3)
        t = t + gap
        result = streak_engine.record_action(sender, receiver, t)
        assert result.longest_streak >= result.current_streak


def test_self_streak_rejected(streak_engine):
    with pytest.raises(InvalidPairError):
        streak_engine.record_action("alice", "alice")


def test_default_time_comes_from_clock(streak_engine, clock):
    streak_engine.record_action("alice", "bob")
    record = streak_engine.get_pair_streak("alice", "bob")

    assert record.last_action_a == clock.now()
    assert record.streak_expires_at == clock.now() + timedelta(hours=24)


def test_opposite_directions_at_once_increment_exactly_once(clock):
    store = RacingStore()
    engine = StreakEngine(store=store, clock=clock)
    now = clock.now()
    results = []
    errors = []

    def act(sender, receiver):
        try:
            results.append(engine.record_action(sender, receiver, now))
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [
        threading.Thread(target=act, args=("alice", "bob")),
        threading.Thread(target=act, args=("bob", "alice")),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert sorted(r.increased for r in results) == [False, True]
    record = engine.get_pair_streak("alice", "bob")
    assert record.current_streak == 1
    assert record.last_action_a is None and record.last_action_b is None
    assert cas_retries_total.value({"record": "pair_streak"}) == 1


def test_exhausted_retries_raise_conflict(clock):
    engine = StreakEngine(store=AlwaysStaleStore(), clock=clock, max_retries=3)

    with pytest.raises(ConcurrentUpdateConflict) as exc:
        engine.record_action("alice", "bob")

    assert exc.value.retryable is True
    assert cas_retries_total.value({"record": "pair_streak"}) == 3
    assert cas_conflicts_total.value({"record": "pair_streak"}) == 1


def test_expired_deadline_times_out(streak_engine):
    with pytest.raises(TimeoutError) as exc:
        streak_engine.record_action("alice", "bob", deadline=Deadline.after(-1))

    assert isinstance(exc.value, builtins.TimeoutError)
    assert streak_engine.get_pair_streak("alice", "bob") is None


def test_list_pair_streaks_from_each_side(streak_engine, clock):
    t0 = clock.now()
    streak_engine.record_action("alice", "bob", t0)
    streak_engine.record_action("carol", "alice", t0)
    streak_engine.record_action("alice", "carol", t0 + timedelta(hours=1))

    views = streak_engine.list_pair_streaks("alice")
    assert [v.friend_id for v in views] == ["carol", "bob"]

    carol, bob = views
    assert carol.is_active and carol.current_streak == 1
    assert bob.needs_friend_action and not bob.needs_my_action

    (bob_view,) = streak_engine.list_pair_streaks("bob")
    assert bob_view.friend_id == "alice"
    assert bob_view.needs_my_action


def test_expire_stale_resets_lapsed_pairs(streak_engine, clock):
    t0 = clock.now()
    streak_engine.record_action("alice", "bob", t0)
    streak_engine.record_action("bob", "alice", t0 + timedelta(hours=1))
    streak_engine.record_action("alice", "carol", t0)

    later = t0 + timedelta(hours=26)
    assert streak_engine.expire_stale(later) == 1
    assert streak_engine.expire_stale(later) == 0

    record = streak_engine.get_pair_streak("alice", "bob")
    assert (record.current_streak, record.longest_streak) == (0, 1)
    assert record.last_action_a is None and record.last_action_b is None
    assert pair_streak_transitions_total.value({"transition": "expired"}) == 1
