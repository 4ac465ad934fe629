from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from dartlink import db
from dartlink.models import Match, MatchLock, LOCK_READY, TERMINAL_STATUSES, utcnow


def cleanup_stale_locks(user_id: int, now=None) -> List[str]:
    """Delete the user's locks whose match is gone, terminal, or past its own deadline.

    Lock deletion on terminal transitions is best-effort, so every operation
    that consumes a lock runs this first.
    """
    now = now or utcnow()
    stale = []
    for lock in MatchLock.query.filter_by(user_id=user_id).all():
        match = db.session.get(Match, lock.match_id)
        if match is None or match.is_terminal or match.is_past_deadline(now):
            stale.append(lock.match_id)
            db.session.delete(lock)
    if stale:
        db.session.commit()
        current_app.logger.info(f"[lock-cleanup] user={user_id} removed={stale}")
    return stale


def find_live_lock(user_id: int) -> Optional[MatchLock]:
    return MatchLock.query.filter_by(user_id=user_id).first()


def add_locks(match: Match, lock_status: str = LOCK_READY) -> None:
    """Stage one lock per participant; the caller commits with its status write."""
    now = utcnow()
    for user_id in (match.challenger_id, match.receiver_id):
        db.session.add(MatchLock(user_id=user_id, match_id=match.id, lock_status=lock_status, updated_at=now))


def set_lock_status(match_id: str, lock_status: str) -> None:
    MatchLock.query.filter_by(match_id=match_id).update(
        {'lock_status': lock_status, 'updated_at': utcnow()}, synchronize_session=False
    )


def release_locks(match_id: str) -> int:
    """Best-effort delete of a match's locks after it went terminal."""
    try:
        removed = MatchLock.query.filter_by(match_id=match_id).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning(f"[lock-release-failed] match={match_id} error={exc}")
        return 0
    if removed:
        current_app.logger.info(f"[lock-release] match={match_id} removed={removed}")
    return removed


def release_locks_for_terminal_matches() -> int:
    terminal_ids = db.select(Match.id).where(Match.status.in_(TERMINAL_STATUSES))
    removed = MatchLock.query.filter(MatchLock.match_id.in_(terminal_ids)).delete(synchronize_session=False)
    db.session.commit()
    return removed
