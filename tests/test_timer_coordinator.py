"""Tests for court clocks and the pre-start countdown, driven by an explicit clock."""
from datetime import datetime, timedelta
from types import SimpleNamespace

from courtside.services.timer_coordinator import (
    TIME_ALERT, TIME_CAUTION, TIME_NORMAL, TimerCoordinator, time_status,
)

T0 = datetime(2024, 5, 1, 18, 0, 0)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        return self.now


def _game(game_id, court_id, status='playing', start_time=None, claimed_at=None):
    return SimpleNamespace(id=game_id, court_id=court_id, status=status,
                           start_time=start_time, claimed_at=claimed_at)


def test_countdown_fires_once_at_zero():
    clock = FakeClock()
    fired = []
    timers = TimerCoordinator(countdown_seconds=5, clock=clock, on_expire=lambda g, c: fired.append((g, c)))
    timers.start_countdown(10, 1)
    assert timers.countdowns == {1: 5}

    timers.tick(clock.advance(3))
    assert timers.countdowns == {1: 2}
    assert fired == []

    timers.tick(clock.advance(2))
    assert fired == [(10, 1)]
    assert timers.countdowns == {}

    timers.tick(clock.advance(1))
    assert fired == [(10, 1)]


def test_restart_for_same_game_keeps_deadline():
    clock = FakeClock()
    timers = TimerCoordinator(countdown_seconds=5, clock=clock)
    timers.start_countdown(10, 1)
    clock.advance(2)
    timers.start_countdown(10, 1)
    timers.tick()
    assert timers.countdowns == {1: 3}


def test_new_game_on_court_supersedes_countdown():
    clock = FakeClock()
    fired = []
    timers = TimerCoordinator(countdown_seconds=5, clock=clock, on_expire=lambda g, c: fired.append(g))
    timers.start_countdown(10, 1)
    timers.start_countdown(11, 1)
    timers.tick(clock.advance(5))
    assert fired == [11]


def test_starting_countdown_clears_court_clock():
    clock = FakeClock()
    timers = TimerCoordinator(clock=clock)
    timers.sync_playing([_game(1, 2, start_time=T0 - timedelta(minutes=3))])
    assert timers.elapsed == {2: 180}

    timers.start_countdown(5, 2)
    assert timers.elapsed == {}


def test_cancel_does_not_fire():
    clock = FakeClock()
    fired = []
    timers = TimerCoordinator(countdown_seconds=5, clock=clock, on_expire=lambda g, c: fired.append(g))
    timers.start_countdown(10, 1)
    timers.start_countdown(11, 2)
    assert timers.cancel_countdown(court_id=1).game_id == 10
    assert timers.cancel_countdown(game_id=11).court_id == 2
    assert timers.cancel_countdown(game_id=99) is None
    timers.tick(clock.advance(10))
    assert fired == []


def test_adopt_claimed_uses_claimed_at():
    clock = FakeClock()
    timers = TimerCoordinator(countdown_seconds=5, clock=clock)
    games = [
        _game(1, 3, status='waiting', claimed_at=T0 - timedelta(seconds=2)),
        _game(2, None, status='waiting'),
        _game(3, 4, status='playing', start_time=T0),
    ]
    started = timers.adopt_claimed(games)
    assert [c.game_id for c in started] == [1]
    assert timers.countdowns == {3: 3}
    assert timers.adopt_claimed(games) == []


def test_overdue_adopted_countdown_fires_on_next_tick():
    clock = FakeClock()
    fired = []
    timers = TimerCoordinator(countdown_seconds=5, clock=clock, on_expire=lambda g, c: fired.append(g))
    timers.adopt_claimed([_game(7, 1, status='waiting', claimed_at=T0 - timedelta(seconds=30))])
    assert fired == []
    timers.tick()
    assert fired == [7]


def test_forget_missing_drops_stale_countdowns():
    timers = TimerCoordinator(clock=FakeClock())
    timers.start_countdown(1, 1)
    timers.start_countdown(2, 2)
    stale = timers.forget_missing([2])
    assert [c.game_id for c in stale] == [1]
    assert timers.has_countdown(court_id=2)
    assert not timers.has_countdown(game_id=1)


def test_elapsed_and_time_status():
    clock = FakeClock()
    timers = TimerCoordinator(clock=clock)
    timers.sync_playing([
        _game(1, 1, start_time=T0 - timedelta(minutes=5)),
        _game(2, 2, start_time=T0 - timedelta(minutes=21)),
        _game(3, 3, start_time=T0 - timedelta(minutes=30)),
    ])
    assert timers.elapsed[1] == 300
    assert timers.court_time_status(20, 30) == {1: TIME_NORMAL, 2: TIME_CAUTION, 3: TIME_ALERT}

    timers.tick(clock.advance(1))
    assert timers.elapsed[1] == 301
    assert timers.format_time(301) == '05:01'

    timers.clear_court_timer(1)
    assert 1 not in timers.elapsed


def test_time_status_thresholds():
    assert time_status(0, 20, 30) == TIME_NORMAL
    assert time_status(20 * 60, 20, 30) == TIME_CAUTION
    assert time_status(30 * 60, 20, 30) == TIME_ALERT
