"""Server-authoritative match transitions.

Every mutation is a conditional UPDATE whose WHERE clause restates the state
it was computed from; zero affected rows means another writer got there
first. Roles are always re-derived from the stored row.
"""
import json
from datetime import timedelta
from typing import List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import FlushError

from dartlink import db
from dartlink.errors import (
    Conflict, Expired, InvalidState, NotFound, NotYourTurn, Unauthorized, ValidationError,
)
from dartlink.models import (
    Match, MatchParticipant, User, utcnow, is_transition_allowed,
    SENT, READY, LOBBY, IN_PROGRESS, COMPLETED, CANCELLED, EXPIRED,
    NON_TERMINAL_STATUSES, LOCK_IN_PROGRESS,
)
from . import locks
from .feed import notify, publish_match_change
from .scoring import VisitOutcome, get_engine

VALID_FORMATS = (1, 3, 5, 7)
MAX_DARTS = 3
MAX_DART_SCORE = 60


def legs_needed(match_format: int) -> int:
    return int(match_format) // 2 + 1


def _window(key: str, default: int) -> timedelta:
    return timedelta(seconds=int(current_app.config.get(key, default)))


def _load(match_id) -> Match:
    match = db.session.get(Match, str(match_id)) if match_id else None
    if match is None:
        raise NotFound('Match not found', match_id=match_id)
    return match


def _require_participant(match: Match, user_id: int, action: str) -> None:
    if not match.is_participant(user_id):
        raise Unauthorized(f'Not authorized to {action} this match', match_id=match.id)


def _guarded_update(match_id: str, expected_statuses, values: dict, extra_filters=()) -> int:
    """Conditional UPDATE of one match row; returns the affected row count."""
    new_status = values.get('status')
    if new_status is not None:
        for status in expected_statuses:
            if not is_transition_allowed(status, new_status):
                raise InvalidState(f'Illegal transition {status} -> {new_status}', match_id=match_id)
    values = dict(values)
    values['version'] = Match.version + 1
    values.setdefault('updated_at', utcnow())
    query = Match.query.filter(Match.id == match_id, Match.status.in_(tuple(expected_statuses)), *extra_filters)
    return query.update(values, synchronize_session=False)


def _has_joined(match_id: str, user_id: int) -> bool:
    return MatchParticipant.query.filter_by(match_id=match_id, user_id=user_id).first() is not None


# ---- Reads ----

def get_match_for_user(match_id, user_id: int) -> Match:
    match = _load(match_id)
    _require_participant(match, user_id, 'view')
    return match


def list_matches_for_user(user_id: int, include_terminal: bool = False) -> List[Match]:
    query = Match.query.filter(db.or_(Match.challenger_id == user_id, Match.receiver_id == user_id))
    if not include_terminal:
        query = query.filter(Match.status.in_(NON_TERMINAL_STATUSES))
    return query.order_by(Match.created_at.desc()).all()


def has_joined(match_id, user_id: int) -> bool:
    """Authoritative "have I entered the lobby" query used by client reconciliation."""
    match = get_match_for_user(match_id, user_id)
    return _has_joined(match.id, user_id)


def pending_challenge_count(user_id: int) -> int:
    return Match.query.filter_by(receiver_id=user_id, status=SENT).count()


# ---- Transitions ----

def create_challenge(challenger_id: int, receiver_id, game_type, match_format, now=None) -> Match:
    now = now or utcnow()
    if not receiver_id or not game_type or not match_format:
        raise ValidationError('Missing required fields: receiver_id, game_type, match_format')
    try:
        receiver_id = int(receiver_id)
        match_format = int(match_format)
    except (TypeError, ValueError):
        raise ValidationError('receiver_id and match_format must be integers')
    if receiver_id == challenger_id:
        raise ValidationError('Cannot challenge yourself')
    engine = get_engine(game_type)
    if engine is None:
        raise ValidationError(f'Unsupported game type: {game_type}')
    if match_format not in VALID_FORMATS:
        raise ValidationError(f'match_format must be one of {VALID_FORMATS}')

    locks.cleanup_stale_locks(challenger_id, now)
    lock = locks.find_live_lock(challenger_id)
    if lock:
        raise Conflict(
            'You already have an active match. Cancel it or wait for it to expire.',
            code='already_has_active_match', match_id=lock.match_id,
        )
    if db.session.get(User, receiver_id) is None:
        raise NotFound('Receiver not found')

    match = Match(
        status=SENT,
        game_type=str(game_type),
        match_format=match_format,
        challenger_id=challenger_id,
        receiver_id=receiver_id,
        challenge_expires_at=now + _window('CHALLENGE_EXPIRY_SEC', 86400),
        challenger_score=engine.starting_score,
        receiver_score=engine.starting_score,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.session.add(match)
    db.session.commit()
    current_app.logger.info(
        f"[challenge-created] match={match.id} challenger={challenger_id} receiver={receiver_id} game={game_type} legs={match_format}"
    )
    publish_match_change(match, 'INSERT')
    notify(receiver_id, 'challenge_received', match)
    return match


def accept_challenge(match_id, user_id: int, now=None) -> Match:
    now = now or utcnow()
    locks.cleanup_stale_locks(user_id, now)
    match = _load(match_id)
    if match.receiver_id != user_id:
        raise Unauthorized('Not authorized to accept this challenge', match_id=match.id)
    if match.status != SENT:
        raise InvalidState(f'Challenge is not pending (status: {match.status})', match_id=match.id)
    if match.is_past_deadline(now):
        raise Expired('Challenge has expired', match_id=match.id)
    lock = locks.find_live_lock(user_id)
    if lock:
        raise Conflict(
            'You already have a match ready. Join or cancel it first.',
            code='already_has_active_match', match_id=lock.match_id,
        )

    # Status write and both lock inserts commit together or not at all
    try:
        rows = _guarded_update(match.id, (SENT,), {
            'status': READY,
            'challenge_expires_at': None,
            'join_window_expires_at': now + _window('JOIN_WINDOW_SEC', 300),
            'updated_at': now,
        })
        if rows == 0:
            db.session.rollback()
            raise InvalidState('Challenge is no longer pending', match_id=match.id)
        locks.add_locks(match)
        db.session.commit()
    except (IntegrityError, FlushError) as exc:
        db.session.rollback()
        current_app.logger.warning(f"[accept-rollback] match={match.id} user={user_id} error={exc}")
        raise Conflict(
            'A participant already holds an active match; challenge left pending',
            code='lock_conflict', match_id=match.id,
        )

    current_app.logger.info(f"[challenge-accepted] match={match.id} receiver={user_id}")
    publish_match_change(match)
    notify(match.challenger_id, 'challenge_accepted', match)
    return match


def _join_values(match: Match, user_id: int, now) -> Tuple[str, dict]:
    """Validate a join against the row as stored and derive the next status from it."""
    if match.status not in (READY, LOBBY):
        raise InvalidState(f'Match is not joinable (status: {match.status})', match_id=match.id)
    if match.is_past_deadline(now):
        raise Expired('Join window has expired', match_id=match.id)
    if match.status == READY:
        return READY, {'status': LOBBY, 'updated_at': now}
    if _has_joined(match.id, user_id):
        raise InvalidState('You have already joined this match', code='already_joined', match_id=match.id)
    return LOBBY, {
        'status': IN_PROGRESS,
        'current_player_id': match.challenger_id,
        'leg_starter_id': match.challenger_id,
        'join_window_expires_at': None,
        'turn_index_in_leg': 0,
        'updated_at': now,
    }


def join_match(match_id, user_id: int, now=None) -> Match:
    now = now or utcnow()
    match = _load(match_id)
    _require_participant(match, user_id, 'join')

    try:
        # Two attempts: when both players join at once, the slower request
        # re-reads the row and becomes the second join
        for attempt in range(2):
            previous, values = _join_values(match, user_id, now)
            rows = _guarded_update(match.id, (previous,), values)
            if rows:
                break
            db.session.rollback()
            current_app.logger.info(f"[join-retry] match={match.id} user={user_id} read={previous} attempt={attempt + 1}")
        else:
            raise Conflict('Match changed while joining; re-fetch before retrying', code='stale_state', match_id=match.id)
        if not _has_joined(match.id, user_id):
            db.session.add(MatchParticipant(
                match_id=match.id,
                user_id=user_id,
                player_order=0 if user_id == match.challenger_id else 1,
                joined_at=now,
            ))
        if values['status'] == IN_PROGRESS:
            locks.set_lock_status(match.id, LOCK_IN_PROGRESS)
        db.session.commit()
    except (IntegrityError, FlushError) as exc:
        db.session.rollback()
        current_app.logger.warning(f"[join-rollback] match={match.id} user={user_id} error={exc}")
        raise Conflict('Join could not be recorded', code='stale_state', match_id=match.id)

    current_app.logger.info(f"[match-joined] match={match.id} user={user_id} {previous} -> {match.status}")
    publish_match_change(match)
    if match.status == LOBBY:
        notify(match.opponent_of(user_id), 'opponent_ready', match)
    return match


def _cancel_reason(match: Match, user_id: int) -> str:
    if match.status == SENT:
        return 'declined' if user_id == match.receiver_id else 'cancelled'
    if match.status == READY:
        return 'cancelled'
    return 'aborted'


def cancel_match(match_id, user_id: int, now=None) -> Match:
    """Cancel from any non-terminal status. Idempotent on terminal matches."""
    now = now or utcnow()
    match = _load(match_id)
    _require_participant(match, user_id, 'cancel')
    if match.is_terminal:
        current_app.logger.info(f"[cancel-noop] match={match.id} already {match.status}")
        return match

    rows = _guarded_update(match.id, NON_TERMINAL_STATUSES, {
        'status': CANCELLED,
        'current_player_id': None,
        'challenge_expires_at': None,
        'join_window_expires_at': None,
        'ended_at': now,
        'ended_by': user_id,
        'ended_reason': _cancel_reason(match, user_id),
        'updated_at': now,
    })
    db.session.commit()
    if rows == 0:
        # Went terminal between our read and the update
        current_app.logger.info(f"[cancel-noop] match={match.id} raced to {match.status}")
        return match

    current_app.logger.info(f"[match-cancelled] match={match.id} by={user_id} reason={match.ended_reason}")
    locks.release_locks(match.id)
    publish_match_change(match)
    return match


def _validate_darts(darts) -> List[int]:
    if not isinstance(darts, (list, tuple)) or not 1 <= len(darts) <= MAX_DARTS:
        raise ValidationError(f'darts must be a list of 1 to {MAX_DARTS} scores')
    cleaned = []
    for dart in darts:
        if isinstance(dart, bool) or not isinstance(dart, int) or not 0 <= dart <= MAX_DART_SCORE:
            raise ValidationError(f'Each dart must be an integer between 0 and {MAX_DART_SCORE}')
        cleaned.append(dart)
    return cleaned


def _commit_visit(state: dict, user_id: int, darts: List[int], now) -> Tuple[int, Optional[VisitOutcome]]:
    """Apply a visit computed from ``state`` (a ``Match.to_dict()`` snapshot).

    The UPDATE is guarded on the turn owner, leg and turn index the score was
    computed from, so a duplicate or late submission affects zero rows.
    """
    engine = get_engine(state['game_type'])
    is_challenger = user_id == state['challenger_id']
    score_key = 'challenger_score' if is_challenger else 'receiver_score'
    legs_key = 'challenger_legs' if is_challenger else 'receiver_legs'
    opponent_id = state['receiver_id'] if is_challenger else state['challenger_id']
    score_before = state[score_key]
    outcome = engine.apply(score_before, darts)

    visit = {
        'player_id': user_id,
        'darts': darts,
        'score_before': score_before,
        'score_after': outcome.score_after,
        'bust': outcome.bust,
        'leg': state['current_leg'],
        'timestamp': now.isoformat(),
    }
    values = {
        'last_visit_payload': json.dumps(visit),
        'turn_index_in_leg': state['turn_index_in_leg'] + 1,
        score_key: outcome.score_after,
        'current_player_id': opponent_id,
        'updated_at': now,
    }
    if outcome.checkout:
        legs_won = state[legs_key] + 1
        values[legs_key] = legs_won
        if legs_won >= legs_needed(state['match_format']):
            values.update({
                'status': COMPLETED,
                'current_player_id': None,
                'winner_id': user_id,
                'ended_at': now,
                'ended_reason': 'completed',
            })
        else:
            starter = state['leg_starter_id'] or state['challenger_id']
            next_starter = state['receiver_id'] if starter == state['challenger_id'] else state['challenger_id']
            values.update({
                'challenger_score': engine.starting_score,
                'receiver_score': engine.starting_score,
                'turn_index_in_leg': 0,
                'current_leg': state['current_leg'] + 1,
                'leg_starter_id': next_starter,
                'current_player_id': next_starter,
            })

    rows = _guarded_update(state['id'], (IN_PROGRESS,), values, extra_filters=(
        Match.current_player_id == user_id,
        Match.current_leg == state['current_leg'],
        Match.turn_index_in_leg == state['turn_index_in_leg'],
    ))
    if rows == 0:
        db.session.rollback()
        return 0, None
    db.session.commit()
    return rows, outcome


def save_visit(match_id, user_id: int, darts, now=None) -> Match:
    now = now or utcnow()
    darts = _validate_darts(darts)
    match = _load(match_id)
    _require_participant(match, user_id, 'play in')
    if match.status != IN_PROGRESS:
        raise InvalidState(f'Match is not in progress (status: {match.status})', match_id=match.id)
    if match.current_player_id != user_id:
        raise NotYourTurn('Not your turn', match_id=match.id)
    if get_engine(match.game_type) is None:
        raise InvalidState(f'No rule engine for game type {match.game_type}', match_id=match.id)

    rows, outcome = _commit_visit(match.to_dict(), user_id, darts, now)
    if rows == 0:
        raise NotYourTurn('Not your turn', match_id=match.id)

    current_app.logger.info(
        f"[visit-saved] match={match.id} player={user_id} darts={darts} "
        f"score={outcome.score_after} bust={outcome.bust} next={match.current_player_id} status={match.status}"
    )
    if match.status == COMPLETED:
        current_app.logger.info(f"[match-completed] match={match.id} winner={match.winner_id}")
        locks.release_locks(match.id)
    publish_match_change(match)
    return match


_EXPIRED_VALUES = {
    'status': EXPIRED,
    'current_player_id': None,
    'ended_reason': 'expired',
    'ended_by': None,
}


def _expire_one(match: Match, now) -> int:
    deadline_column = Match.challenge_expires_at if match.status == SENT else Match.join_window_expires_at
    values = dict(_EXPIRED_VALUES, ended_at=now, updated_at=now)
    return _guarded_update(match.id, (match.status,), values, extra_filters=(deadline_column <= now,))


def expire_matches(now=None) -> List[str]:
    """Sweep: expire Sent/Ready/Lobby matches past their deadline and drop terminal locks."""
    now = now or utcnow()
    candidates = Match.query.filter(db.or_(
        db.and_(Match.status == SENT, Match.challenge_expires_at <= now),
        db.and_(Match.status.in_((READY, LOBBY)), Match.join_window_expires_at <= now),
    )).all()
    expired = [match.id for match in candidates if _expire_one(match, now)]
    db.session.commit()
    released = locks.release_locks_for_terminal_matches()
    for match_id in expired:
        publish_match_change(db.session.get(Match, match_id))
    if expired or released:
        current_app.logger.info(f"[expiry-sweep] expired={len(expired)} locks_released={released}")
    return expired


def expire_match(match_id, user_id: int, now=None) -> Match:
    """Participant-triggered expiry once a countdown hits zero on a device."""
    now = now or utcnow()
    match = _load(match_id)
    _require_participant(match, user_id, 'expire')
    if match.is_terminal:
        return match
    if not match.is_past_deadline(now):
        raise InvalidState('Match has not expired yet', match_id=match.id)
    rows = _expire_one(match, now)
    db.session.commit()
    if rows:
        current_app.logger.info(f"[match-expired] match={match.id} triggered_by={user_id}")
        locks.release_locks(match.id)
        publish_match_change(match)
    return match
