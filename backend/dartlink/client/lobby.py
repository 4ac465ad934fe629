"""Lobby screen coordination.

When the row reaches ``in_progress`` the lobby waits a short beat before
entering gameplay. That scheduled transition re-checks the latest row when it
fires, so a ``cancelled`` or ``expired`` event arriving inside the delay wins.
"""
import logging
import threading

from dartlink.errors import Conflict, InvalidState, MatchError
from dartlink.statuses import IN_PROGRESS, TERMINAL_STATUSES
from dartlink.client.gateway import GatewayUnavailable
from dartlink.client.navigation import ScreenGuard, StatusDeduplicator, navigation_guard
from dartlink.client.snapshot import MatchSnapshot

logger = logging.getLogger(__name__)

LOBBY_TRANSITION_DELAY_SEC = 1.5


class ThreadingScheduler:
    def schedule(self, delay, callback):
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class _ManualHandle:
    def __init__(self, due, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Deterministic scheduler: nothing fires until ``advance`` is called."""

    def __init__(self):
        self.now = 0.0
        self._handles = []

    def schedule(self, delay, callback):
        handle = _ManualHandle(self.now + delay, callback)
        self._handles.append(handle)
        return handle

    @property
    def pending(self):
        return [h for h in self._handles if not h.cancelled]

    def advance(self, seconds):
        self.now += seconds
        due = [h for h in self._handles if h.due <= self.now]
        self._handles = [h for h in self._handles if h.due > self.now]
        for handle in sorted(due, key=lambda h: h.due):
            if not handle.cancelled:
                handle.callback()


class LobbyCoordinator:
    def __init__(self, gateway, user_id, match, on_enter_gameplay, on_exit,
                 scheduler=None, guard=None, transition_delay=LOBBY_TRANSITION_DELAY_SEC):
        self.gateway = gateway
        self.user_id = user_id
        self.match = match if isinstance(match, MatchSnapshot) else MatchSnapshot.from_row(match)
        self.match_id = self.match.id
        self.on_enter_gameplay = on_enter_gameplay
        self.on_exit = on_exit
        self.scheduler = scheduler or ThreadingScheduler()
        self.guard = guard or navigation_guard
        self.transition_delay = transition_delay
        self.processing = False
        self._lock = threading.RLock()
        self._dedup = StatusDeduplicator()
        self._screen = ScreenGuard()
        self._pending = None
        self._aborted = False
        self._exited = False
        self._dedup.is_new(self.match_id, self.match.status)
        if self.match.status == IN_PROGRESS:
            # Restored after both joins; the in_progress echo may never come again
            self._schedule_gameplay()

    @property
    def transition_scheduled(self):
        return self._pending is not None

    def on_match_changed(self, row) -> bool:
        match = row if isinstance(row, MatchSnapshot) else MatchSnapshot.from_row(row)
        if match.id != self.match_id:
            return False
        # Repeated status deliveries are dropped before any side effect
        if not self._dedup.is_new(match.id, match.status):
            return False
        with self._lock:
            if not match.supersedes(self.match):
                return False
            self.match = match
            self.processing = False
            if match.status == IN_PROGRESS:
                self._schedule_gameplay()
            elif match.status in TERMINAL_STATUSES:
                self._abort()
        return True

    def _schedule_gameplay(self):
        if self._pending is not None or self._aborted:
            return
        logger.info("match %s in progress; entering gameplay in %ss", self.match_id, self.transition_delay)
        self._pending = self.scheduler.schedule(self.transition_delay, self._fire)

    def _fire(self):
        with self._lock:
            self._pending = None
            if self._aborted or self.match.status != IN_PROGRESS:
                logger.info("scheduled gameplay transition for %s skipped (status=%s)", self.match_id, self.match.status)
                return False
            if not self._screen.try_fire():
                return False
            if not self.guard.try_navigate(self.match_id):
                return False
            match = self.match
        self.on_enter_gameplay(match)
        return True

    def _abort(self):
        self._aborted = True
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if not self._exited:
            self._exited = True
            logger.info("match %s ended in lobby (%s)", self.match_id, self.match.status)
            self.on_exit(self.match)

    def _run(self, action):
        """Run one transition call; a second call while one is in flight is rejected."""
        with self._lock:
            if self.processing:
                logger.info("transition for %s already in flight", self.match_id)
                return None
            self.processing = True
        try:
            return action(self.match_id)
        except GatewayUnavailable:
            # Outcome unknown: re-read instead of retrying
            self.processing = False
            self.refresh()
            return None
        except Conflict as exc:
            self.processing = False
            if exc.code != 'stale_state':
                raise
            # The row moved under us; the latest one decides what happens next
            logger.info("transition for %s hit a stale row; refreshing", self.match_id)
            self.refresh()
            return None
        except MatchError:
            self.processing = False
            raise

    def join(self):
        return self._run(self.gateway.join)

    def cancel(self):
        return self._run(self.gateway.cancel)

    def expire_if_due(self, now):
        """Ask the server to expire the match once the local countdown runs out."""
        deadline = self.match.join_window_expires_at
        if deadline is None or deadline > now or self.match.is_terminal:
            return None
        try:
            return self._run(self.gateway.expire)
        except InvalidState:
            # Device clock ahead of the server; the row is authoritative
            self.refresh()
            return None

    def refresh(self):
        match = self.gateway.get_match(self.match_id)
        self.on_match_changed(match)
        return match

    def teardown(self):
        with self._lock:
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
            if not self._screen.fired:
                self.guard.clear(self.match_id)
