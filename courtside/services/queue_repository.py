"""Queue repository: every store read and write the scheduling core needs.

Writes that touch shared scheduling state are conditional updates keyed on the
state the caller last saw. A write that matches zero rows lost a race with
another worker or tab; claims report that as ``None`` and transitions raise
``Conflict``, which callers absorb as a no-op.
"""
import logging
from datetime import timedelta
from functools import wraps

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import aliased

from courtside.app import db
from courtside.errors import Conflict, InvalidState, NotFound, QueueError, StoreUnavailable
from courtside.models import (
    ACTIVE_GAME_STATUSES, GAME_STATUSES, Court, Game, GamePlayer, User, VenueConfig,
)
from courtside.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

MIN_PLAYERS = 2
MAX_PLAYERS = 4
DELAY_EPSILON = timedelta(seconds=1)


def _store_call(method):
    """Roll back on failure and translate driver errors into ``StoreUnavailable``."""
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except (OperationalError, InterfaceError) as exc:
            self._rollback()
            logger.warning('Store unavailable during %s: %s', method.__name__, exc)
            raise StoreUnavailable('The court database is unavailable, try again shortly') from exc
        except QueueError:
            self._rollback()
            raise
    return wrapper


def _parse_user_ids(raw_ids):
    if not isinstance(raw_ids, (list, tuple)):
        raise InvalidState('Players must be given as a list of user ids')
    ids = []
    for raw in raw_ids:
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise InvalidState(f'Invalid user id: {raw!r}')
        if value <= 0:
            raise InvalidState(f'Invalid user id: {raw!r}')
        ids.append(value)
    if len(set(ids)) != len(ids):
        raise InvalidState('The same player cannot appear twice in a group')
    if not MIN_PLAYERS <= len(ids) <= MAX_PLAYERS:
        raise InvalidState(f'A group needs {MIN_PLAYERS} to {MAX_PLAYERS} players')
    return ids


class QueueRepository:
    def __init__(self, feed):
        self.feed = feed

    # ── transaction helpers ─────────────────────────────────────────────

    def _commit(self):
        db.session.commit()
        self.feed.publish_staged()

    def _rollback(self):
        db.session.rollback()
        self.feed.discard_staged()

    def _stage_game(self, event_type, old_row=None, new_row=None):
        self.feed.stage('game', event_type, old_row, new_row)

    def _get_game(self, game_id):
        game = db.session.get(Game, game_id)
        if game is None:
            raise NotFound(f'Game {game_id} no longer exists')
        return game

    def _set_user_status(self, user_ids, status):
        user_ids = list(user_ids)
        if not user_ids:
            return 0
        users = User.query.filter(User.id.in_(user_ids)).all()
        old_rows = [u.to_dict() for u in users]
        now = utcnow_naive()
        updated = User.query.filter(User.id.in_(user_ids)).update(
            {'user_status': status, 'updated_at': now}, synchronize_session=False,
        )
        for old_row in old_rows:
            self.feed.stage('user', 'UPDATE', old_row, {**old_row, 'user_status': status})
        return updated

    def _occupied_court_ids(self):
        return db.session.query(Game.court_id).filter(
            Game.status.in_(ACTIVE_GAME_STATUSES),
            Game.court_id.isnot(None),
        )

    def _load_group(self, user_ids, exclude_game_id=None):
        users = User.query.filter(User.id.in_(user_ids)).all()
        if len(users) != len(user_ids):
            missing = sorted(set(user_ids) - {u.id for u in users})
            raise NotFound(f'Unknown players: {missing}')

        busy_query = db.session.query(GamePlayer.user_id).join(Game).filter(
            GamePlayer.user_id.in_(user_ids),
            Game.status.in_(ACTIVE_GAME_STATUSES),
        )
        if exclude_game_id is not None:
            busy_query = busy_query.filter(Game.id != exclude_game_id)
        busy = sorted({row.user_id for row in busy_query.all()})
        if busy:
            raise InvalidState(f'Players already queued or playing: {busy}')
        return users

    # ── reads ───────────────────────────────────────────────────────────

    @_store_call
    def get_game(self, game_id):
        return self._get_game(game_id)

    @_store_call
    def list_by_status(self, status):
        """Games in ``status``, oldest first, participants loaded."""
        if status not in GAME_STATUSES:
            raise ValueError(f'Unknown game status: {status}')
        return Game.query.filter(Game.status == status).order_by(
            Game.created_at.asc(), Game.id.asc(),
        ).all()

    @_store_call
    def list_available_courts(self):
        return Court.query.filter(
            Court.is_active.is_(True),
            ~Court.id.in_(self._occupied_court_ids()),
        ).order_by(Court.id.asc()).all()

    def find_available_court(self):
        courts = self.list_available_courts()
        return courts[0] if courts else None

    @_store_call
    def list_courts(self):
        return Court.query.order_by(Court.id.asc()).all()

    @_store_call
    def get_court(self, court_id):
        court = db.session.get(Court, court_id)
        if court is None:
            raise NotFound(f'Court {court_id} does not exist')
        return court

    @_store_call
    def list_users(self, attending_only=False, ready_only=False):
        query = User.query.filter(User.is_active.is_(True))
        if attending_only:
            query = query.filter(User.is_attendance.is_(True))
        if ready_only:
            query = query.filter(User.user_status == 'ready')
        return query.order_by(User.name.asc(), User.id.asc()).all()

    @_store_call
    def get_config(self):
        config = VenueConfig.query.order_by(VenueConfig.id.asc()).first()
        if config is None:
            config = VenueConfig()
            db.session.add(config)
            db.session.flush()
            self.feed.stage('config', 'INSERT', None, config.to_dict())
            self._commit()
        return config

    # ── queue writes ────────────────────────────────────────────────────

    @_store_call
    def create_game(self, user_ids, requested_status='waiting'):
        """Insert a game; returns ``(game, auto_claimed_court_id)``.

        A ``waiting`` request claims a free court straight away when one
        exists. The returned court id is only set when the claim landed on
        this game; an older unclaimed game keeps priority.
        """
        user_ids = _parse_user_ids(user_ids)
        if requested_status not in ('waiting', 'playing'):
            raise InvalidState(f'Games cannot be created as {requested_status}')
        self._load_group(user_ids)

        now = utcnow_naive()
        game = Game(status='waiting', created_at=now, updated_at=now)
        user_status = 'waiting'
        if requested_status == 'playing':
            court = self.find_available_court()
            if court is None:
                raise InvalidState('No free court to start the game on')
            game.status = 'playing'
            game.court_id = court.id
            game.claimed_at = now
            game.start_time = now
            user_status = 'gaming'

        db.session.add(game)
        try:
            db.session.flush()
        except IntegrityError as exc:
            # Another worker put a game on the same court first.
            self._rollback()
            raise Conflict('The court was taken before the game could start') from exc
        for position, user_id in enumerate(user_ids):
            player = GamePlayer(game_id=game.id, user_id=user_id, position=position)
            db.session.add(player)
            db.session.flush()
            self.feed.stage('game_player', 'INSERT', None, player.to_row())
        self._set_user_status(user_ids, user_status)
        self._stage_game('INSERT', None, game.to_row())
        self._commit()
        logger.info('Game %s created for players %s', game.id, user_ids)

        auto_claimed_court_id = None
        if requested_status == 'waiting':
            court = self.find_available_court()
            if court is not None:
                claimed = self.claim_court_for_next_game(court.id)
                if claimed is not None and claimed.id == game.id:
                    auto_claimed_court_id = court.id
        return self._get_game(game.id), auto_claimed_court_id

    @_store_call
    def claim_court_for_next_game(self, court_id):
        """Claim ``court_id`` for the oldest unclaimed waiting game, or return ``None``."""
        candidate = Game.query.filter(
            Game.status == 'waiting',
            Game.court_id.is_(None),
        ).order_by(Game.created_at.asc(), Game.id.asc()).first()
        if candidate is None:
            return None
        return self._claim(candidate, court_id)

    def _claim(self, game, court_id):
        old_row = game.to_row()
        occupant = aliased(Game)
        court_busy = db.session.query(occupant.id).filter(
            occupant.court_id == court_id,
            occupant.status.in_(ACTIVE_GAME_STATUSES),
        ).exists()
        court_usable = db.session.query(Court.id).filter(
            Court.id == court_id,
            Court.is_active.is_(True),
        ).exists()

        now = utcnow_naive()
        try:
            updated = Game.query.filter(
                Game.id == game.id,
                Game.status == 'waiting',
                Game.court_id.is_(None),
                ~court_busy,
                court_usable,
            ).update(
                {'court_id': court_id, 'claimed_at': now, 'updated_at': now},
                synchronize_session=False,
            )
        except IntegrityError:
            # The busy check passed on a stale snapshot; the unique index did not.
            updated = 0
        if not updated:
            self._rollback()
            logger.debug('Claim of court %s for game %s lost the race', court_id, game.id)
            return None

        self._stage_game('UPDATE', old_row, {
            **old_row, 'court_id': court_id,
            'claimed_at': now.isoformat(), 'updated_at': now.isoformat(),
        })
        self._commit()
        logger.info('Court %s claimed for game %s', court_id, old_row['id'])
        return self._get_game(old_row['id'])

    @_store_call
    def transition_status(self, game_id, new_status, court_id=None):
        """Move a game along waiting -> playing -> finished (or back to the queue)."""
        game = self._get_game(game_id)
        old_row = game.to_row()
        user_ids = game.user_ids
        now = utcnow_naive()

        if new_status == 'playing':
            if not game.is_claimed:
                raise InvalidState(f'Game {game_id} has no court claimed and cannot start')
            if court_id is not None and court_id != game.court_id:
                raise Conflict(f'Game {game_id} was moved off court {court_id}')
            criteria = [
                Game.status == 'waiting',
                Game.court_id == game.court_id,
                Game.start_time.is_(None),
            ]
            values = {'status': 'playing', 'start_time': now}
            user_status = 'gaming'
        elif new_status == 'finished':
            if game.status != 'playing':
                raise InvalidState(f'Game {game_id} is {game.status}, only playing games can finish')
            if court_id is not None and court_id != game.court_id:
                raise InvalidState(f'Game {game_id} is not on court {court_id}')
            criteria = [Game.status == 'playing']
            values = {'status': 'finished', 'end_time': now}
            user_status = 'ready'
        elif new_status == 'waiting':
            if game.status != 'playing' and not game.is_claimed:
                raise InvalidState(f'Game {game_id} is already {game.status}')
            criteria = [Game.status == game.status, Game.court_id == game.court_id]
            values = {'status': 'waiting', 'court_id': None, 'claimed_at': None, 'start_time': None}
            user_status = 'waiting'
        else:
            raise InvalidState(f'Unknown game status: {new_status}')

        values['updated_at'] = now
        updated = Game.query.filter(Game.id == game_id, *criteria).update(
            values, synchronize_session=False,
        )
        if not updated:
            raise Conflict(f'Game {game_id} changed before it could become {new_status}')

        self._set_user_status(user_ids, user_status)
        new_row = dict(old_row)
        new_row.update({
            key: value.isoformat() if hasattr(value, 'isoformat') else value
            for key, value in values.items()
        })
        self._stage_game('UPDATE', old_row, new_row)
        self._commit()
        logger.info('Game %s: %s -> %s', game_id, old_row['status'], new_status)
        return self._get_game(game_id)

    @_store_call
    def delay(self, game_id):
        """Move a waiting game to just behind the next one in line."""
        queue = Game.query.filter(Game.status == 'waiting').order_by(
            Game.created_at.asc(), Game.id.asc(),
        ).all()
        index = next((i for i, g in enumerate(queue) if g.id == game_id), None)
        if index is None:
            raise NotFound(f'Game {game_id} is not waiting in the queue')
        game = queue[index]
        if game.court_id is not None:
            raise InvalidState(f'Game {game_id} already has court {game.court_id}')

        old_row = game.to_row()
        new_created_at = self._delayed_created_at(queue, index)
        now = utcnow_naive()
        updated = Game.query.filter(
            Game.id == game_id,
            Game.status == 'waiting',
            Game.court_id.is_(None),
            Game.created_at == game.created_at,
        ).update(
            {'created_at': new_created_at, 'updated_at': now},
            synchronize_session=False,
        )
        if not updated:
            raise Conflict(f'Game {game_id} changed before it could be delayed')

        self._stage_game('UPDATE', old_row, {
            **old_row, 'created_at': new_created_at.isoformat(), 'updated_at': now.isoformat(),
        })
        self._commit()
        logger.info('Game %s delayed to %s', game_id, new_created_at.isoformat())
        return self._get_game(game_id)

    @staticmethod
    def _delayed_created_at(queue, index):
        game = queue[index]
        if index == len(queue) - 1:
            return max(utcnow_naive(), game.created_at) + DELAY_EPSILON
        next_created = queue[index + 1].created_at
        candidate = next_created + DELAY_EPSILON
        if index + 2 < len(queue):
            after = queue[index + 2].created_at
            if candidate >= after:
                # Stay strictly between the next game and the one after it.
                candidate = next_created + (after - next_created) / 2
        if candidate <= next_created:
            # Ties on created_at fall back to id order, so step just past the tie.
            candidate = next_created + timedelta(microseconds=1)
        return candidate

    @_store_call
    def delete_game(self, game_id):
        """Delete a game and its participants; returns the court it held, if any."""
        game = self._get_game(game_id)
        old_row = game.to_row()
        freed_court_id = game.court_id if game.status in ACTIVE_GAME_STATUSES else None
        player_rows = [p.to_row() for p in game.players]

        if game.status in ACTIVE_GAME_STATUSES:
            self._set_user_status(game.user_ids, 'ready')
        db.session.delete(game)
        for row in player_rows:
            self.feed.stage('game_player', 'DELETE', row, None)
        self._stage_game('DELETE', old_row, None)
        self._commit()
        logger.info('Game %s deleted', game_id)
        return freed_court_id

    @_store_call
    def replace_participants(self, game_id, user_ids):
        game = self._get_game(game_id)
        if game.status == 'finished':
            raise InvalidState(f'Game {game_id} is finished and cannot be edited')
        user_ids = _parse_user_ids(user_ids)
        self._load_group(user_ids, exclude_game_id=game_id)

        old_row = game.to_row()
        old_ids = game.user_ids
        old_players = [p.to_row() for p in game.players]
        game.players = []
        db.session.flush()
        for position, user_id in enumerate(user_ids):
            game.players.append(GamePlayer(user_id=user_id, position=position))
        game.updated_at = utcnow_naive()
        db.session.flush()

        removed = [uid for uid in old_ids if uid not in user_ids]
        added = [uid for uid in user_ids if uid not in old_ids]
        self._set_user_status(removed, 'ready')
        self._set_user_status(added, 'gaming' if game.status == 'playing' else 'waiting')

        for row in old_players:
            self.feed.stage('game_player', 'DELETE', row, None)
        for player in game.players:
            self.feed.stage('game_player', 'INSERT', None, player.to_row())
        self._stage_game('UPDATE', old_row, game.to_row())
        self._commit()
        logger.info('Game %s players replaced: %s -> %s', game_id, old_ids, user_ids)
        return self._get_game(game_id)

    # ── admin writes ────────────────────────────────────────────────────

    @_store_call
    def set_court_active(self, court_id, is_active):
        court = db.session.get(Court, court_id)
        if court is None:
            raise NotFound(f'Court {court_id} does not exist')
        old_row = court.to_dict()
        court.is_active = bool(is_active)
        db.session.flush()
        self.feed.stage('court', 'UPDATE', old_row, court.to_dict())
        self._commit()
        return court

    @_store_call
    def update_config(self, **fields):
        config = self.get_config()
        old_row = config.to_dict()
        for name, value in fields.items():
            if name not in VenueConfig.EDITABLE_FIELDS:
                raise InvalidState(f'Unknown config field: {name}')
            setattr(config, name, value)
        if config.warning_time_minutes >= config.danger_time_minutes:
            raise InvalidState('Warning time must be shorter than danger time')
        db.session.flush()
        self.feed.stage('config', 'UPDATE', old_row, config.to_dict())
        self._commit()
        return config
