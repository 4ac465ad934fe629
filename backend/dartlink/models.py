from dartlink import db, bcrypt
from flask_login import UserMixin
from datetime import datetime, timezone
import json
import uuid

from dartlink.statuses import (  # noqa: F401  re-exported for services and tests
    SENT, READY, LOBBY, IN_PROGRESS, COMPLETED, CANCELLED, EXPIRED,
    NON_TERMINAL_STATUSES, TERMINAL_STATUSES, ALLOWED_TRANSITIONS,
    LOCK_READY, LOCK_IN_PROGRESS, is_transition_allowed,
)


def utcnow():
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(64), nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'display_name': self.display_name or self.username,
        }


class Match(db.Model):
    __tablename__ = 'match'
    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    status = db.Column(db.String(32), nullable=False, default=SENT, index=True)
    game_type = db.Column(db.String(32), nullable=False)
    match_format = db.Column(db.Integer, nullable=False, default=1)  # legs, odd
    challenger_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    receiver_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    challenge_expires_at = db.Column(db.DateTime, nullable=True)
    join_window_expires_at = db.Column(db.DateTime, nullable=True)
    current_player_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    challenger_score = db.Column(db.Integer, nullable=True)
    receiver_score = db.Column(db.Integer, nullable=True)
    turn_index_in_leg = db.Column(db.Integer, nullable=False, default=0)
    current_leg = db.Column(db.Integer, nullable=False, default=1)
    challenger_legs = db.Column(db.Integer, nullable=False, default=0)
    receiver_legs = db.Column(db.Integer, nullable=False, default=0)
    leg_starter_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    last_visit_payload = db.Column(db.Text, nullable=True)  # JSON-encoded VisitPayload
    winner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    ended_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    ended_reason = db.Column(db.String(32), nullable=True)  # declined, cancelled, aborted, expired, completed
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    challenger = db.relationship('User', foreign_keys=[challenger_id])
    receiver = db.relationship('User', foreign_keys=[receiver_id])

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @property
    def visit(self):
        return json.loads(self.last_visit_payload) if self.last_visit_payload else None

    def is_participant(self, user_id):
        return user_id in (self.challenger_id, self.receiver_id)

    def opponent_of(self, user_id):
        return self.receiver_id if user_id == self.challenger_id else self.challenger_id

    def deadline(self):
        """The expiry timestamp that applies to the current status, if any."""
        if self.status == SENT:
            return self.challenge_expires_at
        if self.status in (READY, LOBBY):
            return self.join_window_expires_at
        return None

    def is_past_deadline(self, now):
        deadline = self.deadline()
        return deadline is not None and deadline <= now

    def to_dict(self):
        return {
            'id': self.id,
            'status': self.status,
            'game_type': self.game_type,
            'match_format': self.match_format,
            'challenger_id': self.challenger_id,
            'receiver_id': self.receiver_id,
            'challenger_name': self.challenger.to_dict()['display_name'] if self.challenger else None,
            'receiver_name': self.receiver.to_dict()['display_name'] if self.receiver else None,
            'challenge_expires_at': _iso(self.challenge_expires_at),
            'join_window_expires_at': _iso(self.join_window_expires_at),
            'current_player_id': self.current_player_id,
            'challenger_score': self.challenger_score,
            'receiver_score': self.receiver_score,
            'turn_index_in_leg': self.turn_index_in_leg,
            'current_leg': self.current_leg,
            'challenger_legs': self.challenger_legs,
            'receiver_legs': self.receiver_legs,
            'leg_starter_id': self.leg_starter_id,
            'last_visit_payload': self.visit,
            'winner_id': self.winner_id,
            'ended_at': _iso(self.ended_at),
            'ended_by': self.ended_by,
            'ended_reason': self.ended_reason,
            'version': self.version,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class MatchLock(db.Model):
    __tablename__ = 'match_lock'
    # One row per user: the primary key is the "one live match per user" invariant
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), primary_key=True)
    match_id = db.Column(db.String(36), db.ForeignKey('match.id', ondelete='CASCADE'), nullable=False, index=True)
    lock_status = db.Column(db.String(32), nullable=False, default=LOCK_READY)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class MatchParticipant(db.Model):
    """Join record: who has entered the lobby. Never consulted by the state machine."""
    __tablename__ = 'match_participant'
    __table_args__ = (
        db.UniqueConstraint('match_id', 'user_id', name='uq_match_participant_match_user'),
    )
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.String(36), db.ForeignKey('match.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    player_order = db.Column(db.Integer, nullable=False, default=0)
    joined_at = db.Column(db.DateTime, nullable=False, default=utcnow)
