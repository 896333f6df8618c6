"""UI-facing queue operations and the live board read model.

Every public operation returns an ``OperationResult``; repository and engine
errors never escape to the HTTP or socket layer. Callers map the result to a
message and refresh. They never repair scheduling state themselves.
"""
import logging
import threading

from flask import current_app

from courtside.errors import Conflict, InvalidState, NotFound, OperationResult, QueueError, StoreUnavailable
from courtside.services.assignment_engine import AssignmentEngine
from courtside.services.change_feed import ChangeFeed
from courtside.services.notification_bridge import NotificationBridge
from courtside.services.queue_repository import QueueRepository
from courtside.services.reconciler import (
    PendingMutationLog, delay_patch, finish_patch, participants_patch, remove_patch, revert_patch,
)
from courtside.services.timer_coordinator import TimerCoordinator
from courtside.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'courtside'


class QueueService:
    def __init__(self, app, socketio, repository, engine, timers, reconciler=None):
        self.app = app
        self.socketio = socketio
        self.repository = repository
        self.engine = engine
        self.timers = timers
        self.reconciler = reconciler or PendingMutationLog()
        self.bridge = None
        self.tick_seconds = 1.0
        self.pump_seconds = 0.1
        self._lock = threading.RLock()
        self._snapshot = {'waiting': [], 'playing': []}
        self._snapshot_taken_at = None
        self._courts = []
        self._users = []
        self._config = None
        self._loaded = False
        self._stopping = threading.Event()
        self._background_started = False

        self.engine.set_claim_listener(self._on_game_claimed)
        self.timers.set_expiry_handler(self._on_countdown_expired)

    def attach_bridge(self, bridge):
        self.bridge = bridge
        bridge.start()

    # ── UI-facing operations ────────────────────────────────────────────

    def submit_group(self, user_ids):
        try:
            game, court_id = self.repository.create_game(user_ids, 'waiting')
        except QueueError as exc:
            return self._failure('submit', exc)

        if court_id is not None:
            self.timers.start_countdown(game.id, court_id, claimed_at=game.claimed_at)
        self.engine.schedule_cycle(delay=0)
        self.refresh_games()
        return OperationResult.success(
            'Game created',
            queued=True,
            auto_claimed=court_id is not None,
            court_id=court_id,
            game=game.to_dict(),
        )

    def finish_game(self, game_id, court_id=None):
        def operation():
            if court_id is not None:
                self.timers.clear_court_timer(court_id)
            return self.engine.finish_game(game_id, court_id)
        return self._mutate(game_id, 'finish', finish_patch(game_id), operation, 'Game finished')

    def delay_game(self, game_id):
        return self._mutate(
            game_id, 'delay', delay_patch(game_id),
            lambda: self.repository.delay(game_id), 'Game delayed',
        )

    def revert_to_queue(self, game_id):
        def operation():
            game = self.repository.get_game(game_id)
            if game.court_id is not None:
                self.timers.clear_court_timer(game.court_id)
            return self.engine.revert_to_queue(game_id)
        return self._mutate(game_id, 'revert', revert_patch(game_id), operation, 'Game returned to the queue')

    def edit_participants(self, game_id, user_ids):
        known = {u['id']: u for u in self._users}
        users = [known[uid] for uid in user_ids if uid in known] if isinstance(user_ids, list) else []
        return self._mutate(
            game_id, 'edit', participants_patch(game_id, users),
            lambda: self.repository.replace_participants(game_id, user_ids), 'Players updated',
        )

    def delete_game(self, game_id):
        def operation():
            freed_court_id = self.repository.delete_game(game_id)
            self.timers.cancel_countdown(game_id=game_id)
            if freed_court_id is not None:
                self.timers.clear_court_timer(freed_court_id)
                self.engine.schedule_cycle(delay=0)
            return None
        return self._mutate(game_id, 'delete', remove_patch(game_id), operation, 'Game deleted')

    def set_court_active(self, court_id, is_active):
        try:
            court = self.repository.set_court_active(court_id, is_active)
        except QueueError as exc:
            return self._failure('court update', exc)
        return OperationResult.success('Court updated', court=court.to_dict())

    def update_config(self, **fields):
        try:
            config = self.repository.update_config(**fields)
        except QueueError as exc:
            return self._failure('config update', exc)
        with self._lock:
            self._config = config.to_dict()
        self._emit('config_update', {'config': self._config})
        return OperationResult.success('Config updated', config=self._config)

    def refresh(self):
        """Manual refresh: run a claim cycle, then reload everything."""
        try:
            claimed = self.engine.run_cycle()
        except QueueError as exc:
            return self._failure('refresh', exc)
        self.refresh_all()
        return OperationResult.success(
            'Refreshed', claimed=[g.id for g in claimed], board=self.board(),
        )

    def _mutate(self, game_id, kind, patch, operation, message):
        mutation = self.reconciler.record(game_id, kind, patch)
        self._emit_board()
        try:
            operation()
        except Conflict as exc:
            self.reconciler.fail(mutation)
            logger.debug('%s of game %s was a no-op: %s', kind, game_id, exc)
            self.refresh_games()
            return OperationResult.noop(str(exc))
        except QueueError as exc:
            self.reconciler.fail(mutation)
            return self._failure(kind, exc)
        self.reconciler.acknowledge(mutation)
        self.refresh_games()
        return OperationResult.success(message, game_id=game_id)

    def _failure(self, action, exc):
        if isinstance(exc, StoreUnavailable):
            logger.warning('%s failed, store unavailable: %s', action, exc)
        elif isinstance(exc, InvalidState):
            logger.error('%s rejected, client out of sync: %s', action, exc)
        elif isinstance(exc, NotFound):
            logger.info('%s target missing: %s', action, exc)
        result = OperationResult.from_error(exc)
        if result.refresh:
            self.refresh_all()
        return result

    # ── engine / timer hooks ────────────────────────────────────────────

    def _on_game_claimed(self, game):
        self.timers.start_countdown(game.id, game.court_id, claimed_at=game.claimed_at)

    def on_court_assignment(self, court_id, game_id, claimed_at=None):
        self.timers.start_countdown(game_id, court_id, claimed_at=claimed_at)
        self._emit_timers()

    def _on_countdown_expired(self, game_id, court_id):
        try:
            started = self.engine.start_claimed_game(game_id, court_id)
        except StoreUnavailable as exc:
            # The claim stays in the store; the next refresh adopts it again.
            logger.warning('Could not start game %s on court %s: %s', game_id, court_id, exc)
            return None
        self.refresh_games()
        return started

    # ── change notification handlers ────────────────────────────────────

    def on_games_update(self, event=None):
        if event is None:
            # Fallback poll: also catch claims a dead peer never completed.
            try:
                self.engine.run_cycle()
            except QueueError as exc:
                logger.warning('Claim cycle during poll failed: %s', exc)
        self.refresh_games()

    def on_users_update(self, event=None):
        self.refresh_users()

    def on_courts_update(self, event):
        new_row = event.new_row or {}
        old_row = event.old_row or {}
        court_id = event.row_id
        if event.event_type == 'DELETE' or (old_row.get('is_active') and not new_row.get('is_active')):
            self.timers.cancel_countdown(court_id=court_id)
            try:
                claimed = [g.id for g in self.repository.list_by_status('waiting') if g.court_id == court_id]
            except QueueError as exc:
                logger.warning('Could not release claims on court %s: %s', court_id, exc)
                claimed = []
            for game_id in claimed:
                self.engine.release_claim(game_id)
        elif new_row.get('is_active') and not old_row.get('is_active'):
            self.engine.schedule_cycle(delay=0)
        self.refresh_courts()
        self.refresh_games()

    # ── read model ──────────────────────────────────────────────────────

    def refresh_all(self):
        self.refresh_config()
        self.refresh_courts()
        self.refresh_users()
        self.refresh_games()

    def refresh_games(self):
        taken_at = utcnow_naive()
        try:
            waiting = self.repository.list_by_status('waiting')
            playing = self.repository.list_by_status('playing')
        except QueueError as exc:
            logger.warning('Could not reload games: %s', exc)
            return False

        self.timers.sync_playing(playing)
        claimed = [g for g in waiting if g.is_claimed]
        self.timers.forget_missing([g.id for g in claimed])

        snapshot = {
            'waiting': [g.to_dict() for g in waiting],
            'playing': [g.to_dict() for g in playing],
        }
        with self._lock:
            self._snapshot = snapshot
            self._snapshot_taken_at = taken_at
            self._loaded = True
        merged = self._merged_games()
        self._emit('games_update', {
            'waiting_games': merged['waiting'], 'playing_games': merged['playing'],
        })
        # Claims made by other workers get a local countdown too.
        self.timers.adopt_claimed(claimed)
        return True

    def refresh_users(self):
        try:
            users = [u.to_dict() for u in self.repository.list_users()]
        except QueueError as exc:
            logger.warning('Could not reload users: %s', exc)
            return False
        with self._lock:
            self._users = users
        self._emit('users_update', {'users': users})
        return True

    def refresh_courts(self):
        try:
            courts = [c.to_dict() for c in self.repository.list_courts()]
        except QueueError as exc:
            logger.warning('Could not reload courts: %s', exc)
            return False
        with self._lock:
            self._courts = courts
        self._emit('courts_update', {'courts': courts})
        return True

    def refresh_config(self):
        try:
            config = self.repository.get_config().to_dict()
        except QueueError as exc:
            logger.warning('Could not reload config: %s', exc)
            return False
        with self._lock:
            self._config = config
        return True

    def board(self):
        if not self._loaded:
            self.refresh_all()
        games = self._merged_games()
        with self._lock:
            courts = list(self._courts)
            config = dict(self._config or {})
        warning = config.get('warning_time_minutes', 20)
        danger = config.get('danger_time_minutes', 30)
        elapsed = self.timers.elapsed
        return {
            'waiting_games': games['waiting'],
            'playing_games': games['playing'],
            'courts': courts,
            'per_court_elapsed_seconds': elapsed,
            'per_court_elapsed_display': {cid: self.timers.format_time(s) for cid, s in elapsed.items()},
            'per_court_countdown_seconds': self.timers.countdowns,
            'per_court_time_status': self.timers.court_time_status(warning, danger),
            'thresholds': {'warning_time_minutes': warning, 'danger_time_minutes': danger},
            'bridge_mode': self.bridge.mode.value if self.bridge is not None else None,
            'pending_game_ids': self.reconciler.pending_ids(),
            'stats': {
                'total_playing': len(games['playing']),
                'total_waiting': len(games['waiting']),
                'active_courts': sum(1 for c in courts if c.get('is_active')),
                'occupied_courts': sum(1 for g in games['playing'] if g.get('court_id')),
            },
        }

    def _merged_games(self):
        """Last store snapshot with every pending local mutation applied on top."""
        with self._lock:
            snapshot = self._snapshot
            taken_at = self._snapshot_taken_at
        if taken_at is None:
            return {key: list(value) for key, value in snapshot.items()}
        return self.reconciler.merge(snapshot, taken_at)

    def users(self, attending_only=False, ready_only=False):
        return self.repository.list_users(attending_only=attending_only, ready_only=ready_only)

    # ── emitting ────────────────────────────────────────────────────────

    def _emit(self, event, payload):
        payload = dict(payload, updated_at=utcnow_naive().isoformat())
        self.socketio.emit(event, payload)

    def _emit_board(self):
        if self._loaded:
            self._emit('board_update', self.board())

    def _emit_timers(self):
        self._emit('timers_update', {
            'per_court_elapsed_seconds': self.timers.elapsed,
            'per_court_countdown_seconds': self.timers.countdowns,
        })

    # ── background work ─────────────────────────────────────────────────

    def spawn(self, func, *args):
        self.socketio.start_background_task(self._in_app_context, func, *args)

    def _in_app_context(self, func, *args):
        with self.app.app_context():
            try:
                func(*args)
            except QueueError as exc:
                logger.warning('Background %s failed: %s', getattr(func, '__name__', func), exc)
            except Exception:
                # Keep the timer and bridge loops alive.
                logger.exception('Background %s crashed', getattr(func, '__name__', func))

    def start_background(self):
        if self._background_started:
            return
        self._background_started = True
        self._stopping.clear()
        self.socketio.start_background_task(self._timer_loop)
        self.socketio.start_background_task(self._bridge_loop)
        logger.info('Queue background tasks started')

    def stop_background(self):
        self._stopping.set()
        self._background_started = False
        if self.bridge is not None:
            self.bridge.stop()

    def _timer_loop(self):
        while not self._stopping.is_set():
            self._in_app_context(self._tick_timers)
            self.socketio.sleep(self.tick_seconds)

    def _tick_timers(self):
        self.timers.tick()
        self._emit_timers()

    def _bridge_loop(self):
        while not self._stopping.is_set():
            if self.bridge is not None:
                self._in_app_context(self.bridge.pump)
            self.socketio.sleep(self.pump_seconds)


def init_queue_service(app, socketio):
    """Build the queue stack from ``app.config`` and register it on the app."""
    cfg = app.config
    background = cfg.get('QUEUE_BACKGROUND_TASKS', True)

    feed = ChangeFeed()
    repository = QueueRepository(feed)
    timers = TimerCoordinator(countdown_seconds=cfg.get('COUNTDOWN_SECONDS', 5))
    engine = AssignmentEngine(
        repository,
        pacing_seconds=cfg.get('CLAIM_PACING_SECONDS', 0.5),
        settle_seconds=cfg.get('FINISH_SETTLE_SECONDS', 1.0),
        sleep=socketio.sleep,
    )
    service = QueueService(app, socketio, repository, engine, timers)
    service.tick_seconds = cfg.get('TIMER_TICK_SECONDS', 1.0)
    service.pump_seconds = cfg.get('BRIDGE_PUMP_SECONDS', 0.1)
    if background:
        engine.set_spawner(service.spawn)

    service.attach_bridge(NotificationBridge(
        feed,
        on_games_update=service.on_games_update,
        on_users_update=service.on_users_update,
        on_courts_update=service.on_courts_update,
        on_court_assignment=service.on_court_assignment,
        games_debounce=cfg.get('GAMES_DEBOUNCE_SECONDS', 0.3),
        users_debounce=cfg.get('USERS_DEBOUNCE_SECONDS', 0.5),
        liveness_timeout=cfg.get('LIVENESS_TIMEOUT_SECONDS', 10.0),
        poll_interval=cfg.get('POLL_INTERVAL_SECONDS', 10.0),
    ))
    app.extensions[EXTENSION_KEY] = service
    return service


def get_queue_service():
    return current_app.extensions[EXTENSION_KEY]
