"""Assignment engine: hands free courts to the head of the queue.

Each engine instance guards its own claim cycle with a non-blocking lock. A
trigger that arrives while a cycle is running only marks a rerun, so bursts of
triggers (finish, court change, manual refresh, change notification) collapse
into at most one extra pass. Safety across workers comes from the
repository's conditional claim, not from this lock.
"""
import logging
import threading
import time

from courtside.errors import Conflict, InvalidState, NotFound

logger = logging.getLogger(__name__)


def _run_inline(func, *args):
    func(*args)


class AssignmentEngine:
    def __init__(self, repository, pacing_seconds=0.5, settle_seconds=1.0,
                 sleep=time.sleep, spawn=_run_inline, on_claim=None):
        self.repository = repository
        self.pacing_seconds = pacing_seconds
        self.settle_seconds = settle_seconds
        self._sleep = sleep
        self._spawn = spawn
        self._on_claim = on_claim
        self._in_flight = threading.Lock()
        self._rerun_requested = False

    @property
    def busy(self):
        return self._in_flight.locked()

    def set_claim_listener(self, on_claim):
        self._on_claim = on_claim

    def set_spawner(self, spawn):
        self._spawn = spawn

    def run_cycle(self):
        """Claim free courts for waiting games until either runs out.

        Returns the games claimed by this call (possibly empty). Safe to call
        redundantly; a second call with no state change in between is a no-op.
        """
        claimed = []
        while True:
            if not self._in_flight.acquire(blocking=False):
                self._rerun_requested = True
                logger.debug('Claim cycle already running, rerun requested')
                return claimed
            try:
                while True:
                    self._rerun_requested = False
                    claimed.extend(self._claim_available_courts())
                    if not self._rerun_requested:
                        break
            finally:
                self._in_flight.release()
            # A trigger may have bounced off the lock between the check and the release.
            if not self._rerun_requested:
                return claimed

    def _claim_available_courts(self):
        claimed = []
        while True:
            court = self.repository.find_available_court()
            if court is None:
                logger.debug('No available courts')
                break
            game = self.repository.claim_court_for_next_game(court.id)
            if game is None:
                logger.debug('Nothing claimed for court %s', court.id)
                break
            claimed.append(game)
            if self._on_claim is not None:
                self._on_claim(game)
            # Let other workers' claims land before looking again.
            if self.pacing_seconds:
                self._sleep(self.pacing_seconds)
        return claimed

    def schedule_cycle(self, delay=None):
        """Run one claim cycle in the background after ``delay`` seconds."""
        delay = self.settle_seconds if delay is None else delay
        self._spawn(self._delayed_cycle, delay)

    def _delayed_cycle(self, delay):
        if delay:
            self._sleep(delay)
        self.run_cycle()

    def start_claimed_game(self, game_id, court_id):
        """Countdown expiry: move a claimed game onto its court as ``playing``.

        Returns the started game, or ``None`` when another worker already
        started it, the claim moved, or the court was deactivated meanwhile
        (in which case the claim is released back to the queue).
        """
        try:
            court = self.repository.get_court(court_id)
            if not court.is_active:
                logger.info('Court %s was deactivated during countdown of game %s', court_id, game_id)
                self.release_claim(game_id)
                return None
            return self.repository.transition_status(game_id, 'playing', court_id)
        except Conflict as exc:
            logger.debug('Start of game %s skipped: %s', game_id, exc)
            return None
        except (NotFound, InvalidState) as exc:
            # Already started elsewhere, deleted, or reverted.
            logger.debug('Start of game %s skipped: %s', game_id, exc)
            return None

    def release_claim(self, game_id):
        """Return a claimed-but-not-started game to the unclaimed queue."""
        try:
            game = self.repository.get_game(game_id)
            if not game.is_claimed:
                return None
            released = self.repository.transition_status(game_id, 'waiting')
        except (Conflict, NotFound) as exc:
            logger.debug('Release of game %s skipped: %s', game_id, exc)
            return None
        self.schedule_cycle(delay=0)
        return released

    def finish_game(self, game_id, court_id=None):
        finished = self.repository.transition_status(game_id, 'finished', court_id)
        self.schedule_cycle()
        return finished

    def revert_to_queue(self, game_id):
        game = self.repository.get_game(game_id)
        if game.status != 'playing':
            raise InvalidState(f'Game {game_id} is {game.status}, only playing games can be reverted')
        reverted = self.repository.transition_status(game_id, 'waiting')
        self.schedule_cycle()
        return reverted
