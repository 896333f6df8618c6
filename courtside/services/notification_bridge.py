"""Turns raw store change events into three debounced update streams.

games   game + game_player rows, debounced
users   user rows, debounced, only when status/attendance/active changed
courts  court rows, forwarded as they arrive

When nothing arrives for ``liveness_timeout`` seconds after subscribing the
bridge switches to DEGRADED and polls the games and users callbacks every
``poll_interval`` seconds until a live event shows up again. Writes made by
other worker processes never reach this process's feed, so polling is what
keeps them visible.
"""
import enum
import logging
import threading
import time
from datetime import datetime

logger = logging.getLogger(__name__)

GAME_TABLES = ('game', 'game_player')
USER_FIELDS = ('user_status', 'is_attendance', 'is_active')


class BridgeMode(str, enum.Enum):
    LIVE = 'live'
    DEGRADED = 'degraded'


class _Debounced:
    def __init__(self, window, callback):
        self.window = window
        self.callback = callback
        self.deadline = None
        self.payload = None

    def push(self, payload, now):
        self.payload = payload
        self.deadline = now + self.window

    def take_if_due(self, now):
        if self.deadline is None or now < self.deadline:
            return False, None
        payload, self.payload, self.deadline = self.payload, None, None
        return True, payload

    def cancel(self):
        self.deadline = None
        self.payload = None


def _parse_timestamp(raw):
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


class NotificationBridge:
    def __init__(self, feed, on_games_update, on_users_update, on_courts_update,
                 on_court_assignment=None, games_debounce=0.3, users_debounce=0.5,
                 liveness_timeout=10.0, poll_interval=10.0, clock=time.monotonic):
        self.feed = feed
        self._on_courts_update = on_courts_update
        self._on_court_assignment = on_court_assignment
        self._games = _Debounced(games_debounce, on_games_update)
        self._users = _Debounced(users_debounce, on_users_update)
        self.liveness_timeout = liveness_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._unsubscribers = []
        self._mode = BridgeMode.LIVE
        self._forced = False
        self._subscribed_at = None
        self._event_received = False
        self._next_poll = None

    @property
    def mode(self):
        return self._mode

    @property
    def subscribed(self):
        return bool(self._unsubscribers)

    def start(self):
        if self._unsubscribers:
            return
        for table in GAME_TABLES:
            self._unsubscribers.append(self.feed.subscribe(table, self._handle_games_event))
        self._unsubscribers.append(self.feed.subscribe('user', self._handle_users_event))
        self._unsubscribers.append(self.feed.subscribe('court', self._handle_courts_event))
        with self._lock:
            self._subscribed_at = self._clock()
            self._event_received = False
            if not self._forced:
                self._mode = BridgeMode.LIVE
        logger.info('Change notification bridge subscribed')

    def stop(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        with self._lock:
            self._games.cancel()
            self._users.cancel()
            self._next_poll = None
        logger.info('Change notification bridge unsubscribed')

    def force_mode(self, mode):
        """Pin the bridge to ``mode``; ``None`` returns to automatic switching."""
        with self._lock:
            if mode is None:
                self._forced = False
                return
            self._forced = True
            self._set_mode_locked(BridgeMode(mode), self._clock())

    def _set_mode_locked(self, mode, now):
        if mode == self._mode:
            return
        self._mode = mode
        if mode == BridgeMode.DEGRADED:
            self._next_poll = now + self.poll_interval
            logger.warning('No change notifications received, polling every %ss', self.poll_interval)
        else:
            self._next_poll = None
            logger.info('Change notifications resumed')

    def _mark_live(self, now):
        self._event_received = True
        if not self._forced:
            self._set_mode_locked(BridgeMode.LIVE, now)

    # ── raw event handlers ──────────────────────────────────────────────

    def _handle_games_event(self, event):
        now = self._clock()
        with self._lock:
            self._mark_live(now)
            self._games.push(event, now)
        self._detect_court_assignment(event)

    def _detect_court_assignment(self, event):
        if event.table != 'game' or self._on_court_assignment is None:
            return
        new_row = event.new_row or {}
        old_row = event.old_row or {}
        if new_row.get('status') != 'waiting' or not new_row.get('court_id'):
            return
        gained_court = event.event_type == 'INSERT' or (
            event.event_type == 'UPDATE' and not old_row.get('court_id')
        )
        if gained_court:
            self._on_court_assignment(
                new_row['court_id'], new_row['id'], _parse_timestamp(new_row.get('claimed_at')),
            )

    def _handle_users_event(self, event):
        if event.event_type == 'UPDATE':
            old_row = event.old_row or {}
            new_row = event.new_row or {}
            if all(old_row.get(name) == new_row.get(name) for name in USER_FIELDS):
                return
        now = self._clock()
        with self._lock:
            self._mark_live(now)
            self._users.push(event, now)

    def _handle_courts_event(self, event):
        with self._lock:
            self._mark_live(self._clock())
        self._on_courts_update(event)

    # ── driving ─────────────────────────────────────────────────────────

    def pump(self, now=None):
        """Fire due debounced callbacks and run the liveness/poll logic."""
        now = self._clock() if now is None else now
        calls = []
        with self._lock:
            for debounced in (self._games, self._users):
                due, payload = debounced.take_if_due(now)
                if due:
                    calls.append((debounced.callback, payload))

            if (not self._forced and self._mode == BridgeMode.LIVE and not self._event_received
                    and self._subscribed_at is not None
                    and now - self._subscribed_at >= self.liveness_timeout):
                self._set_mode_locked(BridgeMode.DEGRADED, now)

            if self._mode == BridgeMode.DEGRADED and self._next_poll is not None and now >= self._next_poll:
                self._next_poll = now + self.poll_interval
                logger.debug('Fallback poll')
                calls.append((self._games.callback, None))
                calls.append((self._users.callback, None))

        for callback, payload in calls:
            callback(payload)
        return len(calls)
