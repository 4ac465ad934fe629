from unittest.mock import MagicMock

import pytest
import requests

from dartlink.client.feed import FeedListener
from dartlink.client.gateway import GatewayUnavailable, HttpMatchGateway, NotAuthenticated
from dartlink.client.snapshot import MatchSnapshot, VisitPayload
from dartlink.errors import Conflict, InvalidState, NotYourTurn, error_from_payload

ROW = {
    'id': 'm-1',
    'status': 'in_progress',
    'game_type': '501',
    'match_format': 3,
    'challenger_id': 1,
    'receiver_id': 2,
    'current_player_id': 2,
    'challenger_score': 441,
    'receiver_score': 501,
    'turn_index_in_leg': 1,
    'current_leg': 1,
    'version': 5,
    'join_window_expires_at': None,
    'updated_at': '2026-01-01T12:04:00',
    'last_visit_payload': {
        'player_id': 1, 'darts': [20, 20, 20], 'score_before': 501, 'score_after': 441,
        'bust': False, 'leg': 1, 'timestamp': '2026-01-01T12:04:00.250000',
    },
}


def response(status, body=None, broken_json=False):
    res = MagicMock()
    res.status_code = status
    if broken_json:
        res.json.side_effect = ValueError('no json')
    else:
        res.json.return_value = body
    return res


def gateway_returning(*responses):
    session = MagicMock()
    session.request.side_effect = list(responses)
    return HttpMatchGateway('http://dartlink.test/', session=session), session


def test_successful_read_is_parsed():
    gw, session = gateway_returning(response(200, ROW))
    match = gw.get_match('m-1')

    session.request.assert_called_once_with(
        'GET', 'http://dartlink.test/api/matches/m-1', json=None, params=None, timeout=10.0,
    )
    assert match.is_turn_of(2)
    assert match.last_visit.darts == (20, 20, 20)
    assert match.last_visit.timestamp.microsecond == 250000


def test_error_kinds_map_back_to_exceptions():
    gw, _ = gateway_returning(
        response(409, {'error': 'Not your turn', 'kind': 'not_your_turn', 'code': 'not_your_turn', 'match_id': 'm-1'}),
        response(409, {'error': 'Match is not joinable', 'kind': 'invalid_state', 'code': 'invalid_state'}),
        response(409, {'error': 'busy', 'kind': 'conflict', 'code': 'already_has_active_match'}),
    )
    with pytest.raises(NotYourTurn) as excinfo:
        gw.save_visit('m-1', [20])
    assert excinfo.value.match_id == 'm-1'
    with pytest.raises(InvalidState):
        gw.join('m-1')
    with pytest.raises(Conflict) as excinfo:
        gw.create_challenge(2, '501', 1)
    assert excinfo.value.code == 'already_has_active_match'


def test_error_without_kind_falls_back_to_status():
    assert type(error_from_payload(409, {'error': 'x'})) is Conflict
    assert type(error_from_payload(418, None)).__name__ == 'MatchError'


def test_transport_failures_are_ambiguous():
    session = MagicMock()
    session.request.side_effect = requests.ConnectionError('connection reset')
    gw = HttpMatchGateway('http://dartlink.test', session=session)
    with pytest.raises(GatewayUnavailable):
        gw.save_visit('m-1', [20])

    gw, _ = gateway_returning(response(502, None, broken_json=True), response(200, None, broken_json=True))
    with pytest.raises(GatewayUnavailable):
        gw.cancel('m-1')
    with pytest.raises(GatewayUnavailable):
        gw.get_match('m-1')


def test_missing_session_raises_not_authenticated():
    gw, _ = gateway_returning(response(401, {'error': 'Login required', 'code': 'unauthenticated'}))
    with pytest.raises(NotAuthenticated):
        gw.list_matches()


def test_login_stores_user():
    gw, session = gateway_returning(response(200, {'success': True, 'user': {'id': 7, 'username': 'alice'}}))
    gw.login('alice', 'password')
    assert gw.user_id == 7
    assert session.request.call_args.kwargs['json'] == {'username': 'alice', 'password': 'password'}


def test_snapshot_ordering():
    older = MatchSnapshot.from_row(ROW)
    newer = MatchSnapshot.from_row(dict(ROW, version=6))
    assert newer.supersedes(older)
    assert not older.supersedes(newer)
    assert not older.supersedes(MatchSnapshot.from_row(ROW))
    assert older.supersedes(None)

    visit = VisitPayload.from_dict(ROW['last_visit_payload'])
    later = VisitPayload.from_dict(dict(ROW['last_visit_payload'], timestamp='2026-01-01T12:05:00Z'))
    assert later.is_newer_than(visit)
    assert not visit.is_newer_than(later)
    assert visit.is_newer_than(None)


def test_feed_listener_filters_and_dispatches():
    client = MagicMock()
    client.connected = True
    listener = FeedListener(user_id=2, client=client)
    received = []

    def broken(record):
        raise RuntimeError('handler bug')

    listener.add_handler(broken)
    listener.add_handler(received.append)

    assert listener.handle_match_changed({'type': 'UPDATE', 'record': ROW}) is True
    assert received == [ROW]
    assert listener.handle_match_changed({'type': 'UPDATE', 'record': dict(ROW, receiver_id=3)}) is False
    assert listener.handle_match_changed({}) is False
    assert received == [ROW]


def test_feed_listener_resubscribes_on_connect():
    client = MagicMock()
    client.connected = False
    listener = FeedListener(user_id=2, client=client)
    listener.watch('m-1')
    client.emit.assert_not_called()

    listener.handle_connect()
    client.emit.assert_called_once_with('subscribe_match', {'match_id': 'm-1'}, namespace='/ws')

    registered = {call.args[0] for call in client.on.call_args_list}
    assert {'connect', 'match_changed', 'match_snapshot', 'notification'} <= registered


def test_pending_count_and_logout():
    gw, session = gateway_returning(
        response(200, {'success': True, 'user': {'id': 7, 'username': 'alice'}}),
        response(200, {'count': 2}),
        response(200, {'success': True}),
    )
    gw.login('alice', 'password')

    assert gw.pending_count() == 2
    assert session.request.call_args.args == ('GET', 'http://dartlink.test/api/matches/pending-count')
    gw.logout()
    assert session.request.call_args.args == ('POST', 'http://dartlink.test/logout')
    assert gw.user_id is None


def test_feed_listener_handler_registry():
    client = MagicMock()
    client.connected = True
    listener = FeedListener(user_id=2, client=client)
    rows, notes, connects = [], [], []
    on_row = rows.append

    def broken_reload():
        raise GatewayUnavailable('still offline')

    listener.add_handler(on_row)
    listener.add_notification_handler(notes.append)
    listener.add_connect_handler(broken_reload)
    listener.add_connect_handler(lambda: connects.append('reload'))

    listener.handle_notification({'kind': 'challenge_received', 'match_id': 'm-1'})
    assert notes == [{'kind': 'challenge_received', 'match_id': 'm-1'}]

    listener.remove_handler(on_row)
    assert listener.handle_match_changed({'type': 'UPDATE', 'record': ROW}) is True
    assert rows == []

    listener.watch('m-1')
    client.emit.assert_called_once_with('subscribe_match', {'match_id': 'm-1'}, namespace='/ws')
    listener.unwatch('m-1')
    client.emit.reset_mock()
    listener.handle_connect()
    client.emit.assert_not_called()
    assert connects == ['reload']
