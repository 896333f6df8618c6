"""Tests for the assignment engine's claim cycle and transitions."""
import threading

import pytest

from courtside.errors import InvalidState
from courtside.services.assignment_engine import AssignmentEngine
from courtside.services.change_feed import ChangeFeed
from courtside.services.queue_repository import QueueRepository


@pytest.fixture
def repo(app):
    return QueueRepository(ChangeFeed())


@pytest.fixture
def engine(repo):
    return AssignmentEngine(repo, pacing_seconds=0, settle_seconds=0, sleep=lambda _: None)


def _queue(repo, players, groups):
    games = []
    for group in groups:
        game, _ = repo.create_game([players[i] for i in group])
        games.append(game.id)
    return games


def test_cycle_claims_one_court_per_game_in_order(repo, engine, players, make_courts):
    games = _queue(repo, players, [(0, 1), (2, 3), (4, 5)])
    courts = make_courts(2)

    claimed = engine.run_cycle()
    assert [g.id for g in claimed] == games[:2]
    assert [g.court_id for g in claimed] == courts
    assert repo.get_game(games[2]).court_id is None


def test_second_cycle_without_changes_is_a_noop(repo, engine, players, make_courts):
    _queue(repo, players, [(0, 1), (2, 3)])
    make_courts(1)
    assert len(engine.run_cycle()) == 1
    assert engine.run_cycle() == []


def test_on_claim_listener_sees_each_claim(repo, players, make_courts):
    seen = []
    engine = AssignmentEngine(repo, pacing_seconds=0, settle_seconds=0,
                              sleep=lambda _: None, on_claim=seen.append)
    _queue(repo, players, [(0, 1), (2, 3)])
    make_courts(2)
    engine.run_cycle()
    assert len(seen) == 2


def test_pacing_sleeps_between_claims(repo, players, make_courts):
    sleeps = []
    engine = AssignmentEngine(repo, pacing_seconds=0.5, sleep=sleeps.append)
    _queue(repo, players, [(0, 1), (2, 3)])
    make_courts(2)
    engine.run_cycle()
    assert sleeps == [0.5, 0.5]


def test_trigger_during_cycle_requests_one_rerun(repo, players, make_courts):
    reentrant_results = []
    passes = []

    class Recorder(AssignmentEngine):
        def _claim_available_courts(self):
            passes.append(1)
            if len(passes) == 1:
                reentrant_results.append(self.run_cycle())
                reentrant_results.append(self.run_cycle())
            return super()._claim_available_courts()

    engine = Recorder(repo, pacing_seconds=0, settle_seconds=0, sleep=lambda _: None)
    _queue(repo, players, [(0, 1)])
    make_courts(1)

    claimed = engine.run_cycle()
    assert reentrant_results == [[], []]
    assert len(passes) == 2
    assert len(claimed) == 1
    assert not engine.busy


class _LockWithReleaseHook:
    """Runs ``hook`` once, right before the wrapped lock is released."""

    def __init__(self, hook):
        self._lock = threading.Lock()
        self._hook = hook

    def acquire(self, blocking=True):
        return self._lock.acquire(blocking)

    def locked(self):
        return self._lock.locked()

    def release(self):
        hook, self._hook = self._hook, None
        if hook is not None:
            hook()
        self._lock.release()


def test_trigger_just_before_release_is_not_lost(repo, engine, players, make_courts):
    bounced = []

    def late_trigger():
        repo.create_game(players[:2])
        make_courts(1)
        bounced.append(engine.run_cycle())

    engine._in_flight = _LockWithReleaseHook(late_trigger)
    engine.run_cycle()

    assert bounced == [[]]
    assert [g.court_id is not None for g in repo.list_by_status('waiting')] == [True]
    assert not engine.busy


def test_countdown_expiry_starts_claimed_game(repo, engine, players, make_courts):
    court_id = make_courts(1)[0]
    game, auto_claimed = repo.create_game(players[:4])
    assert auto_claimed == court_id

    started = engine.start_claimed_game(game.id, court_id)
    assert started.status == 'playing'
    assert started.start_time is not None
    # A second expiry for the same claim is absorbed.
    assert engine.start_claimed_game(game.id, court_id) is None


def test_expiry_on_deactivated_court_releases_claim(repo, engine, players, make_courts):
    court_id = make_courts(1)[0]
    game, _ = repo.create_game(players[:2])
    repo.set_court_active(court_id, False)

    assert engine.start_claimed_game(game.id, court_id) is None
    released = repo.get_game(game.id)
    assert released.status == 'waiting'
    assert released.court_id is None


def test_finish_schedules_one_cycle_after_settle(repo, players, make_courts):
    spawned = []
    engine = AssignmentEngine(repo, pacing_seconds=0, settle_seconds=1.0,
                              sleep=lambda _: None, spawn=lambda func, *args: spawned.append(args))
    court_id = make_courts(1)[0]
    game, _ = repo.create_game(players[:2])
    engine.start_claimed_game(game.id, court_id)

    engine.finish_game(game.id, court_id)
    assert spawned == [(1.0,)]


def test_revert_requires_playing(repo, engine, players):
    game, _ = repo.create_game(players[:2])
    with pytest.raises(InvalidState):
        engine.revert_to_queue(game.id)


def test_revert_returns_game_to_queue_and_reclaims(repo, engine, players, make_courts):
    court_id = make_courts(1)[0]
    game, _ = repo.create_game(players[:2])
    engine.start_claimed_game(game.id, court_id)

    engine.revert_to_queue(game.id)
    reverted = repo.get_game(game.id)
    assert reverted.status == 'waiting'
    assert reverted.start_time is None
    # The inline follow-up cycle hands the freed court straight back.
    assert reverted.court_id == court_id


# ── scenarios ───────────────────────────────────────────────────────────

def test_scenario_all_courts_busy_queues_game(repo, engine, players, make_courts):
    courts = make_courts(2)
    first, _ = repo.create_game(players[:2])
    second, _ = repo.create_game(players[2:4])
    engine.start_claimed_game(first.id, courts[0])
    engine.start_claimed_game(second.id, courts[1])

    game, auto_claimed = repo.create_game(players[4:6])
    assert auto_claimed is None
    assert game.court_id is None
    assert engine.run_cycle() == []


def test_scenario_finish_hands_court_to_next_game_once(repo, engine, players, make_courts):
    courts = make_courts(2)
    one, _ = repo.create_game(players[:2])
    two, _ = repo.create_game(players[2:4])
    engine.start_claimed_game(one.id, courts[0])
    engine.start_claimed_game(two.id, courts[1])
    waiting, _ = repo.create_game(players[4:6])

    engine.finish_game(two.id, courts[1])
    # A manual refresh racing the finish must not claim again.
    assert engine.run_cycle() == []

    claimed = repo.get_game(waiting.id)
    assert claimed.court_id == courts[1]
    playing_or_claimed = [
        g for g in repo.list_by_status('waiting') + repo.list_by_status('playing')
        if g.court_id == courts[1]
    ]
    assert [g.id for g in playing_or_claimed] == [waiting.id]


def test_scenario_two_submits_for_one_court(repo, players, make_courts):
    make_courts(1)
    first, first_court = repo.create_game(players[:2])
    second, second_court = repo.create_game(players[2:4])
    assert [first_court is not None, second_court is not None] == [True, False]
    assert repo.get_game(second.id).court_id is None
