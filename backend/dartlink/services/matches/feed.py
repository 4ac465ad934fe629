from flask import current_app

from dartlink import socketio
from dartlink.models import Match

NAMESPACE = '/ws'


def user_room(user_id) -> str:
    return f"user:{user_id}"


def publish_match_change(match: Match, event_type: str = 'UPDATE') -> dict:
    """Push the full row to both participants.

    Delivery is at-least-once at best; subscribers apply the row idempotently
    and re-fetch on reconnect.
    """
    payload = {'type': event_type, 'record': match.to_dict()}
    for user_id in (match.challenger_id, match.receiver_id):
        socketio.emit('match_changed', payload, to=user_room(user_id), namespace=NAMESPACE)
    current_app.logger.debug(
        f"[feed] match={match.id} type={event_type} status={match.status} version={match.version}"
    )
    return payload


class PushDispatcher:
    """Default dispatcher: a socket notification for foregrounded clients.

    Deployments swap in an APNs/FCM dispatcher via ``set_push_dispatcher``.
    """

    def notify(self, user_id: int, kind: str, payload: dict) -> None:
        socketio.emit('notification', {'kind': kind, **payload}, to=user_room(user_id), namespace=NAMESPACE)


_dispatcher = PushDispatcher()


def set_push_dispatcher(dispatcher) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def notify(user_id: int, kind: str, match: Match) -> bool:
    """Best-effort: a failed notification never fails the transition."""
    try:
        _dispatcher.notify(user_id, kind, {'match_id': match.id, 'status': match.status})
    except Exception as exc:
        current_app.logger.warning(f"[push-failed] user={user_id} kind={kind} match={match.id} error={exc}")
        return False
    current_app.logger.info(f"[push] user={user_id} kind={kind} match={match.id}")
    return True
