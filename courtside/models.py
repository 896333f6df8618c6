from courtside.app import db
from courtside.time_utils import utcnow_naive

USER_STATUSES = ('ready', 'waiting', 'gaming')
GAME_STATUSES = ('waiting', 'playing', 'finished')
ACTIVE_GAME_STATUSES = ('waiting', 'playing')
ACTIVE_COURT_PREDICATE = "court_id IS NOT NULL AND status IN ('waiting', 'playing')"


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    name = db.Column(db.String(120), default='')
    sex = db.Column(db.String(1), default='M')  # M, F
    skill = db.Column(db.String(1), default='C')  # A, B, C
    is_guest = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_attendance = db.Column(db.Boolean, default=False, nullable=False)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    user_status = db.Column(db.String(20), default='ready', nullable=False)  # ready, waiting, gaming
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive(),
                           onupdate=lambda: utcnow_naive())

    def to_dict(self):
        return {
            'id': self.id, 'username': self.username, 'name': self.name,
            'sex': self.sex, 'skill': self.skill,
            'is_guest': self.is_guest, 'is_active': self.is_active,
            'is_attendance': self.is_attendance, 'is_admin': self.is_admin,
            'user_status': self.user_status,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Court(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), default='')
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive(),
                           onupdate=lambda: utcnow_naive())

    def to_dict(self):
        return {
            'id': self.id, 'name': self.name or f'Court {self.id}',
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Game(db.Model):
    """A group of 2-4 players waiting for, playing on, or done with a court."""
    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), default='waiting', nullable=False)  # waiting, playing, finished
    court_id = db.Column(db.Integer, db.ForeignKey('court.id'), nullable=True)
    claimed_at = db.Column(db.DateTime, nullable=True)
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive(), nullable=False)
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive(),
                           onupdate=lambda: utcnow_naive())

    court = db.relationship('Court', backref='games')
    players = db.relationship('GamePlayer', backref='game', lazy='joined',
                              order_by='GamePlayer.position',
                              cascade='all, delete-orphan')

    __table_args__ = (
        db.Index('ix_game_status_created', 'status', 'created_at'),
        db.Index('ix_game_court_status', 'court_id', 'status'),
        # At most one waiting-with-court or playing game per court.
        db.Index('uq_game_active_court', 'court_id', unique=True,
                 sqlite_where=db.text(ACTIVE_COURT_PREDICATE),
                 postgresql_where=db.text(ACTIVE_COURT_PREDICATE)),
    )

    @property
    def users(self):
        return [p.user for p in self.players if p.user is not None]

    @property
    def user_ids(self):
        return [p.user_id for p in self.players]

    @property
    def is_claimed(self):
        return self.status == 'waiting' and self.court_id is not None

    def to_row(self):
        """Flat column snapshot, the shape carried by change events."""
        return {
            'id': self.id, 'status': self.status, 'court_id': self.court_id,
            'claimed_at': _iso(self.claimed_at),
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def to_dict(self):
        data = self.to_row()
        data['users'] = [u.to_dict() for u in self.users]
        return data


class GamePlayer(db.Model):
    """Participant association; ``position`` keeps the group's order."""
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    position = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    user = db.relationship('User', lazy='joined', backref='game_participations')

    __table_args__ = (
        db.UniqueConstraint('game_id', 'user_id', name='uq_game_player_game_user'),
    )

    def to_row(self):
        return {
            'id': self.id, 'game_id': self.game_id,
            'user_id': self.user_id, 'position': self.position,
        }


class VenueConfig(db.Model):
    """Singleton row of venue-wide display flags and timer thresholds."""
    __tablename__ = 'config'

    id = db.Column(db.Integer, primary_key=True)
    show_sex = db.Column(db.Boolean, default=True, nullable=False)
    show_skill = db.Column(db.Boolean, default=True, nullable=False)
    enable_vs = db.Column(db.Boolean, default=True, nullable=False)
    enable_undo_game_by_user = db.Column(db.Boolean, default=False, nullable=False)
    enable_change_game_by_user = db.Column(db.Boolean, default=False, nullable=False)
    enable_add_user_auto = db.Column(db.Boolean, default=False, nullable=False)
    warning_time_minutes = db.Column(db.Integer, default=20, nullable=False)
    danger_time_minutes = db.Column(db.Integer, default=30, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive(),
                           onupdate=lambda: utcnow_naive())

    EDITABLE_FIELDS = (
        'show_sex', 'show_skill', 'enable_vs', 'enable_undo_game_by_user',
        'enable_change_game_by_user', 'enable_add_user_auto',
        'warning_time_minutes', 'danger_time_minutes',
    )

    def to_dict(self):
        data = {name: getattr(self, name) for name in self.EDITABLE_FIELDS}
        data.update({
            'id': self.id,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        })
        return data
