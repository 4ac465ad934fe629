from flask import current_app, request
from flask_login import current_user
from flask_socketio import join_room, emit

from dartlink.errors import MatchError
from dartlink.services.matches import transitions
from dartlink.services.matches.feed import user_room


def handle_connect(auth=None):
    if not current_user.is_authenticated:
        current_app.logger.info(f"[ws-reject] sid={request.sid} unauthenticated")
        return False
    # Every change to a row the user participates in is pushed to this room
    join_room(user_room(current_user.id))
    current_app.logger.info(f"[ws-connect] sid={request.sid} user={current_user.id}")
    emit('connected', {'message': 'Connected to /ws', 'user_id': current_user.id})


def handle_disconnect(*args):
    user_id = current_user.id if current_user.is_authenticated else None
    current_app.logger.info(f"[ws-disconnect] sid={request.sid} user={user_id}")


def handle_subscribe_match(data):
    """Reply with the authoritative row; clients call this on every (re)subscribe."""
    match_id = (data or {}).get('match_id')
    if not match_id:
        emit('error', {'message': 'match_id is required'})
        return
    try:
        match = transitions.get_match_for_user(match_id, current_user.id)
    except MatchError as exc:
        emit('error', {'message': exc.message, 'code': exc.code, 'match_id': match_id})
        return
    emit('match_snapshot', {'record': match.to_dict()})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    from dartlink import socketio

    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
        socketio.on_event('subscribe_match', handle_subscribe_match, namespace=namespace)
        socketio.on_event('ping', handle_ping, namespace=namespace)
