from datetime import datetime, timedelta

import pytest

from dartlink import db
from dartlink.client.lobby import LobbyCoordinator, ManualScheduler
from dartlink.client.navigation import NavigationGuard, ScreenGuard, StatusDeduplicator
from dartlink.errors import Conflict
from dartlink.models import Match, utcnow


class Screen:
    """Records what a lobby screen was told to do."""

    def __init__(self):
        self.entered = []
        self.exited = []

    def enter(self, match):
        self.entered.append(match)

    def exit(self, match):
        self.exited.append(match)


def ready_match(gateways, users):
    match = gateways['alice'].create_challenge(users['bob'], '501', 1)
    return gateways['bob'].accept(match.id)


def lobby_for(gateways, users, name, match, scheduler, guard, screen=None):
    screen = screen or Screen()
    coordinator = LobbyCoordinator(
        gateways[name], users[name], match,
        on_enter_gameplay=screen.enter, on_exit=screen.exit,
        scheduler=scheduler, guard=guard,
    )
    return coordinator, screen


def test_both_joined_enters_gameplay_after_delay(gateways, users, scheduler, nav_guard):
    match = ready_match(gateways, users)
    lobby, screen = lobby_for(gateways, users, 'alice', match, scheduler, nav_guard)

    lobby.join()
    assert lobby.processing is True
    assert lobby.join() is None
    lobby.on_match_changed(gateways['alice'].get_match(match.id))
    assert lobby.match.status == 'lobby'
    assert lobby.processing is False

    gateways['bob'].join(match.id)
    lobby.on_match_changed(gateways['alice'].get_match(match.id))
    assert lobby.transition_scheduled

    scheduler.advance(1.0)
    assert screen.entered == []
    scheduler.advance(0.5)
    assert [m.status for m in screen.entered] == ['in_progress']
    assert nav_guard.has_navigated(match.id)


def test_cancel_inside_delay_aborts_scheduled_transition(gateways, users, scheduler, nav_guard):
    match = ready_match(gateways, users)
    gateways['alice'].join(match.id)
    lobby, screen = lobby_for(gateways, users, 'bob', gateways['bob'].get_match(match.id), scheduler, nav_guard)

    gateways['bob'].join(match.id)
    lobby.on_match_changed(gateways['bob'].get_match(match.id))
    assert lobby.transition_scheduled

    gateways['alice'].cancel(match.id)
    lobby.on_match_changed(gateways['bob'].get_match(match.id))
    assert [m.status for m in screen.exited] == ['cancelled']
    assert not lobby.transition_scheduled

    scheduler.advance(5)
    assert screen.entered == []
    assert not nav_guard.has_navigated(match.id)


def test_fire_time_check_sees_late_cancellation(gateways, users, nav_guard):
    scheduler = ManualScheduler()
    match = ready_match(gateways, users)
    gateways['alice'].join(match.id)
    lobby, screen = lobby_for(gateways, users, 'bob', gateways['bob'].get_match(match.id), scheduler, nav_guard)

    gateways['bob'].join(match.id)
    lobby.on_match_changed(gateways['bob'].get_match(match.id))
    handle = scheduler.pending[0]

    # Cancellation recorded on the row while the timer callback was already due
    gateways['alice'].cancel(match.id)
    lobby.match = gateways['bob'].get_match(match.id)
    handle.callback()

    assert screen.entered == []


def test_duplicate_status_events_are_dropped(gateways, users, scheduler, nav_guard):
    match = ready_match(gateways, users)
    gateways['alice'].join(match.id)
    lobby, screen = lobby_for(gateways, users, 'bob', gateways['bob'].get_match(match.id), scheduler, nav_guard)
    gateways['bob'].join(match.id)

    row = gateways['bob'].get_match(match.id)
    assert lobby.on_match_changed(row) is True
    assert lobby.on_match_changed(row) is False
    assert lobby.on_match_changed(row.raw) is False
    assert len(scheduler.pending) == 1

    scheduler.advance(2)
    assert len(screen.entered) == 1


def test_only_one_screen_navigates(gateways, users, scheduler, nav_guard):
    match = ready_match(gateways, users)
    gateways['alice'].join(match.id)
    lobby_row = gateways['bob'].get_match(match.id)
    first, first_screen = lobby_for(gateways, users, 'bob', lobby_row, scheduler, nav_guard)
    second, second_screen = lobby_for(gateways, users, 'bob', lobby_row, scheduler, nav_guard)

    gateways['bob'].join(match.id)
    row = gateways['bob'].get_match(match.id)
    first.on_match_changed(row)
    second.on_match_changed(row)
    scheduler.advance(2)

    assert len(first_screen.entered) + len(second_screen.entered) == 1


def test_teardown_cancels_timer_and_clears_guard(gateways, users, scheduler, nav_guard):
    match = ready_match(gateways, users)
    gateways['alice'].join(match.id)
    lobby, screen = lobby_for(gateways, users, 'bob', gateways['bob'].get_match(match.id), scheduler, nav_guard)
    gateways['bob'].join(match.id)
    lobby.on_match_changed(gateways['bob'].get_match(match.id))

    lobby.teardown()
    scheduler.advance(2)
    assert screen.entered == []
    assert not nav_guard.has_navigated(match.id)


def test_join_with_lost_response_refetches(gateways, users, flaky_gateway, scheduler, nav_guard):
    match = ready_match(gateways, users)
    screen_calls = []
    gw = flaky_gateway('alice', method='POST', after_send=True)
    lobby = LobbyCoordinator(
        gw, users['alice'], match, on_enter_gameplay=screen_calls.append, on_exit=screen_calls.append,
        scheduler=scheduler, guard=nav_guard,
    )

    assert lobby.join() is None
    assert lobby.processing is False
    assert lobby.match.status == 'lobby'
    assert [c for c in gw.calls if c[0] == 'POST'] == [('POST', f'/api/matches/{match.id}/join')]


def test_stale_join_refetches_instead_of_failing(gateways, users, scheduler, nav_guard, monkeypatch):
    match = ready_match(gateways, users)
    gateways['alice'].join(match.id)
    lobby, screen = lobby_for(gateways, users, 'bob', match, scheduler, nav_guard)
    real_join = gateways['bob'].join

    def stale_once(match_id):
        monkeypatch.setattr(gateways['bob'], 'join', real_join)
        raise Conflict('Match changed while joining; re-fetch before retrying', code='stale_state', match_id=match_id)

    monkeypatch.setattr(gateways['bob'], 'join', stale_once)
    assert lobby.join() is None
    assert lobby.processing is False
    assert lobby.match.status == 'lobby'

    started = lobby.join()
    assert started.status == 'in_progress'
    lobby.on_match_changed(started)
    scheduler.advance(2)
    assert [m.status for m in screen.entered] == ['in_progress']


def test_other_conflicts_still_surface(gateways, users, scheduler, nav_guard, monkeypatch):
    match = ready_match(gateways, users)
    lobby, _ = lobby_for(gateways, users, 'alice', match, scheduler, nav_guard)

    def lock_conflict(match_id):
        raise Conflict('busy', code='lock_conflict', match_id=match_id)

    monkeypatch.setattr(gateways['alice'], 'join', lock_conflict)
    with pytest.raises(Conflict):
        lobby.join()
    assert lobby.processing is False


def test_coordinator_restored_in_progress_enters_gameplay(gateways, users, scheduler, nav_guard):
    match = ready_match(gateways, users)
    gateways['alice'].join(match.id)
    started = gateways['bob'].join(match.id)

    lobby, screen = lobby_for(gateways, users, 'bob', started, scheduler, nav_guard)
    assert lobby.transition_scheduled
    assert lobby.on_match_changed(started) is False

    scheduler.advance(2)
    assert [m.status for m in screen.entered] == ['in_progress']


def test_expire_when_countdown_runs_out(flask_app, gateways, users, scheduler, nav_guard):
    match = ready_match(gateways, users)
    lobby, screen = lobby_for(gateways, users, 'alice', match, scheduler, nav_guard)

    assert lobby.expire_if_due(match.join_window_expires_at - timedelta(seconds=1)) is None
    assert screen.exited == []

    with flask_app.app_context():
        row = db.session.get(Match, match.id)
        row.join_window_expires_at = utcnow() - timedelta(seconds=1)
        db.session.commit()

    lobby.expire_if_due(datetime(2100, 1, 1))
    lobby.on_match_changed(gateways['alice'].get_match(match.id))
    assert [m.status for m in screen.exited] == ['expired']


def test_expire_refused_by_server_clock(gateways, users, scheduler, nav_guard):
    match = ready_match(gateways, users)
    lobby, screen = lobby_for(gateways, users, 'alice', match, scheduler, nav_guard)

    assert lobby.expire_if_due(match.join_window_expires_at + timedelta(seconds=1)) is None
    assert lobby.processing is False
    assert lobby.match.status == 'ready'
    assert screen.exited == []


def test_navigation_guard_is_check_and_set():
    guard = NavigationGuard()
    assert guard.try_navigate('m1') is True
    assert guard.try_navigate('m1') is False
    assert guard.try_navigate('m2') is True
    guard.clear('m1')
    assert guard.try_navigate('m1') is True
    guard.reset()
    assert not guard.has_navigated('m2')


def test_screen_guard_and_deduplicator():
    screen = ScreenGuard()
    assert screen.try_fire() is True
    assert screen.try_fire() is False

    dedup = StatusDeduplicator()
    assert dedup.is_new('m1', 'lobby') is True
    assert dedup.is_new('m1', 'lobby') is False
    assert dedup.is_new('m1', 'in_progress') is True
    assert dedup.is_new('m2', 'lobby') is True
    dedup.forget('m1')
    assert dedup.is_new('m1', 'in_progress') is True
