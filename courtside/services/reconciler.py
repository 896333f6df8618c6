"""Pending-mutation log that keeps local intent visible over stale snapshots.

A mutation is recorded before the store write and carries a ``patch`` that
rewrites a board snapshot the way the write will once it lands. While it is
PENDING, every merged snapshot gets the patch applied. After the write is
acknowledged, the patch keeps applying until a snapshot taken after the
acknowledgement arrives; that snapshot is authoritative and the mutation is
dropped. A snapshot whose copy of the entity is newer than the mutation
supersedes it, and a failed write is dropped at the next merge, which is
the rollback.
"""
import enum
import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from courtside.time_utils import utcnow_naive

logger = logging.getLogger(__name__)


class MutationState(str, enum.Enum):
    PENDING = 'pending'
    ACKNOWLEDGED = 'acknowledged'
    SUPERSEDED = 'superseded'
    FAILED = 'failed'


@dataclass
class PendingMutation:
    token: int
    entity_id: int
    kind: str
    patch: Callable[[dict], dict]
    issued_at: datetime
    state: MutationState = MutationState.PENDING
    acknowledged_at: Optional[datetime] = None


def _updated_at(game):
    raw = game.get('updated_at')
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        return None


class PendingMutationLog:
    def __init__(self, clock=utcnow_naive):
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._mutations: dict[int, PendingMutation] = {}

    def record(self, entity_id, kind, patch):
        mutation = PendingMutation(next(self._tokens), entity_id, kind, patch, self._clock())
        with self._lock:
            previous = self._mutations.get(entity_id)
            if previous is not None and previous.state == MutationState.PENDING:
                previous.state = MutationState.SUPERSEDED
            self._mutations[entity_id] = mutation
        return mutation

    def acknowledge(self, mutation):
        with self._lock:
            if mutation.state == MutationState.PENDING:
                mutation.state = MutationState.ACKNOWLEDGED
                mutation.acknowledged_at = self._clock()

    def fail(self, mutation):
        with self._lock:
            if mutation.state == MutationState.PENDING:
                mutation.state = MutationState.FAILED
                logger.debug('Rolling back %s on game %s', mutation.kind, mutation.entity_id)

    def state_of(self, entity_id):
        with self._lock:
            mutation = self._mutations.get(entity_id)
            return mutation.state if mutation is not None else None

    def pending_ids(self):
        with self._lock:
            return sorted(
                entity_id for entity_id, m in self._mutations.items()
                if m.state in (MutationState.PENDING, MutationState.ACKNOWLEDGED)
            )

    def merge(self, board, taken_at):
        """Apply live mutations to ``board`` (a dict of game lists); returns the merged board."""
        with self._lock:
            live = []
            for entity_id, mutation in list(self._mutations.items()):
                if self._resolved(mutation, board, taken_at):
                    del self._mutations[entity_id]
                else:
                    live.append(mutation)

        merged = {key: list(value) for key, value in board.items()}
        for mutation in sorted(live, key=lambda m: m.token):
            merged = mutation.patch(merged)
        return merged

    @staticmethod
    def _resolved(mutation, board, taken_at):
        if mutation.state in (MutationState.FAILED, MutationState.SUPERSEDED):
            return True
        if mutation.state == MutationState.ACKNOWLEDGED and taken_at >= mutation.acknowledged_at:
            return True
        for games in board.values():
            for game in games:
                if game.get('id') != mutation.entity_id:
                    continue
                updated = _updated_at(game)
                if updated is not None and updated > mutation.issued_at:
                    mutation.state = MutationState.SUPERSEDED
                    return True
        return False


# ── patches for the queue board ─────────────────────────────────────────

def _without(games, game_id):
    return [g for g in games if g.get('id') != game_id]


def _find(board, game_id):
    for games in board.values():
        for game in games:
            if game.get('id') == game_id:
                return game
    return None


def finish_patch(game_id):
    def patch(board):
        board['playing'] = _without(board.get('playing', []), game_id)
        return board
    return patch


def remove_patch(game_id):
    def patch(board):
        board['playing'] = _without(board.get('playing', []), game_id)
        board['waiting'] = _without(board.get('waiting', []), game_id)
        return board
    return patch


def delay_patch(game_id):
    def patch(board):
        waiting = board.get('waiting', [])
        index = next((i for i, g in enumerate(waiting) if g.get('id') == game_id), None)
        if index is None:
            return board
        game = waiting.pop(index)
        waiting.insert(min(index + 1, len(waiting)), game)
        board['waiting'] = waiting
        return board
    return patch


def revert_patch(game_id):
    def patch(board):
        game = _find(board, game_id)
        if game is None:
            return board
        reverted = dict(game, status='waiting', court_id=None, start_time=None, claimed_at=None)
        board['playing'] = _without(board.get('playing', []), game_id)
        waiting = _without(board.get('waiting', []), game_id)
        waiting.append(reverted)
        waiting.sort(key=lambda g: (g.get('created_at') or '', g.get('id') or 0))
        board['waiting'] = waiting
        return board
    return patch


def participants_patch(game_id, users):
    def patch(board):
        for key, games in board.items():
            board[key] = [dict(g, users=users) if g.get('id') == game_id else g for g in games]
        return board
    return patch
