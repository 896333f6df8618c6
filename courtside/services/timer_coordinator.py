"""Per-court elapsed timers and the pre-start countdown.

``tick()`` does all the work and is driven once a second by a background
loop in production, or called directly with an explicit ``now`` in tests.
"""
import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from courtside.time_utils import elapsed_seconds, format_time, utcnow_naive

logger = logging.getLogger(__name__)

TIME_NORMAL = 'normal'
TIME_CAUTION = 'caution'
TIME_ALERT = 'alert'


@dataclass
class Countdown:
    game_id: int
    court_id: int
    deadline: datetime
    remaining: int

    def to_dict(self):
        return {'game_id': self.game_id, 'court_id': self.court_id, 'remaining': self.remaining}


def time_status(seconds, warning_minutes, danger_minutes):
    minutes = seconds // 60
    if minutes >= danger_minutes:
        return TIME_ALERT
    if minutes >= warning_minutes:
        return TIME_CAUTION
    return TIME_NORMAL


class TimerCoordinator:
    def __init__(self, countdown_seconds=5, clock=utcnow_naive,
                 on_expire: Optional[Callable[[int, int], object]] = None):
        self.countdown_seconds = countdown_seconds
        self._clock = clock
        self._on_expire = on_expire
        self._lock = threading.RLock()
        self._countdowns: dict[int, Countdown] = {}
        self._start_times: dict[int, datetime] = {}
        self._elapsed: dict[int, int] = {}

    def set_expiry_handler(self, on_expire):
        self._on_expire = on_expire

    # ── countdowns ──────────────────────────────────────────────────────

    def start_countdown(self, game_id, court_id, claimed_at=None):
        """Begin (or resume) the countdown for a game that just claimed ``court_id``.

        Replaces any countdown for another game on the same court. Restarting
        for the same game keeps the original deadline.
        """
        now = self._clock()
        with self._lock:
            existing = self._countdowns.get(court_id)
            if existing is not None and existing.game_id == game_id:
                return existing
            if existing is not None:
                logger.info('Countdown for game %s on court %s superseded by game %s',
                            existing.game_id, court_id, game_id)
            self._cancel_game_locked(game_id)
            # A previous occupant's clock must not show while counting down.
            self._clear_court_timer_locked(court_id)

            deadline = (claimed_at or now) + timedelta(seconds=self.countdown_seconds)
            countdown = Countdown(game_id, court_id, deadline, self._remaining(deadline, now))
            self._countdowns[court_id] = countdown
        logger.debug('Countdown started for game %s on court %s', game_id, court_id)
        return countdown

    def cancel_countdown(self, court_id=None, game_id=None):
        with self._lock:
            if court_id is not None:
                removed = self._countdowns.pop(court_id, None)
            else:
                removed = self._cancel_game_locked(game_id)
        if removed is not None:
            logger.info('Countdown cancelled for game %s on court %s', removed.game_id, removed.court_id)
        return removed

    def _cancel_game_locked(self, game_id):
        for court_id, countdown in list(self._countdowns.items()):
            if countdown.game_id == game_id:
                return self._countdowns.pop(court_id)
        return None

    def has_countdown(self, court_id=None, game_id=None):
        with self._lock:
            if court_id is not None:
                return court_id in self._countdowns
            return any(c.game_id == game_id for c in self._countdowns.values())

    def adopt_claimed(self, games):
        """Start countdowns for claimed games this process is not tracking yet."""
        started = []
        for game in games:
            if game.status != 'waiting' or game.court_id is None:
                continue
            if self.has_countdown(game_id=game.id):
                continue
            started.append(self.start_countdown(game.id, game.court_id, claimed_at=game.claimed_at))
        return started

    def forget_missing(self, claimed_game_ids):
        """Drop countdowns whose game is no longer claimed in the store."""
        wanted = set(claimed_game_ids)
        with self._lock:
            stale = [c for c in self._countdowns.values() if c.game_id not in wanted]
            for countdown in stale:
                self._countdowns.pop(countdown.court_id, None)
        return stale

    @staticmethod
    def _remaining(deadline, now):
        return max(0, math.ceil((deadline - now).total_seconds()))

    # ── elapsed timers ──────────────────────────────────────────────────

    def sync_playing(self, games):
        """Replace the set of running court clocks from a fresh snapshot of playing games."""
        with self._lock:
            self._start_times = {
                game.court_id: game.start_time
                for game in games
                if game.court_id is not None and game.start_time is not None
            }
            self._recompute_elapsed_locked(self._clock())

    def _recompute_elapsed_locked(self, now):
        self._elapsed = {
            court_id: elapsed_seconds(start, now)
            for court_id, start in self._start_times.items()
            if court_id not in self._countdowns
        }

    def clear_court_timer(self, court_id):
        with self._lock:
            self._clear_court_timer_locked(court_id)

    def _clear_court_timer_locked(self, court_id):
        self._start_times.pop(court_id, None)
        self._elapsed.pop(court_id, None)

    # ── ticking ─────────────────────────────────────────────────────────

    def tick(self, now=None):
        now = now or self._clock()
        expired = []
        with self._lock:
            self._recompute_elapsed_locked(now)
            for court_id, countdown in list(self._countdowns.items()):
                countdown.remaining = self._remaining(countdown.deadline, now)
                if countdown.remaining <= 0:
                    expired.append(self._countdowns.pop(court_id))

        for countdown in expired:
            logger.info('Countdown finished for game %s on court %s', countdown.game_id, countdown.court_id)
            if self._on_expire is not None:
                self._on_expire(countdown.game_id, countdown.court_id)
        return expired

    # ── read model ──────────────────────────────────────────────────────

    @property
    def elapsed(self):
        with self._lock:
            return dict(self._elapsed)

    @property
    def countdowns(self):
        with self._lock:
            return {court_id: c.remaining for court_id, c in self._countdowns.items()}

    def countdown_games(self):
        with self._lock:
            return [c.to_dict() for c in self._countdowns.values()]

    def court_time_status(self, warning_minutes, danger_minutes):
        return {
            court_id: time_status(seconds, warning_minutes, danger_minutes)
            for court_id, seconds in self.elapsed.items()
        }

    format_time = staticmethod(format_time)
