"""Turn handoff on one device.

The submitter never applies its own RPC response. Both devices advance only
when the authoritative row arrives on the change feed (or from a re-fetch):
reveal the new visit, then update scores, then re-derive whose turn it is.
"""
import logging
import threading

from dartlink.errors import NotYourTurn
from dartlink.statuses import COMPLETED
from dartlink.client.gateway import GatewayUnavailable
from dartlink.client.navigation import navigation_guard
from dartlink.client.snapshot import MatchSnapshot

logger = logging.getLogger(__name__)


def _noop(*args, **kwargs):
    return None


class GameplaySession:
    def __init__(self, gateway, user_id, match, on_reveal=None, on_scores=None,
                 on_turn=None, on_end=None, guard=None):
        self.gateway = gateway
        self.user_id = user_id
        self.match = match if isinstance(match, MatchSnapshot) else MatchSnapshot.from_row(match)
        self.match_id = self.match.id
        self.on_reveal = on_reveal or _noop
        self.on_scores = on_scores or _noop
        self.on_turn = on_turn or _noop
        self.on_end = on_end or _noop
        self.guard = guard or navigation_guard
        self.processing = False
        self.ended = False
        self._lock = threading.RLock()

    @property
    def is_my_turn(self) -> bool:
        return self.match.is_turn_of(self.user_id)

    @property
    def my_score(self):
        return self.match.score_of(self.user_id)

    @property
    def opponent_score(self):
        return self.match.score_of(self.match.opponent_of(self.user_id))

    def submit_visit(self, darts) -> bool:
        """Send one visit. Returns True if the server accepted it.

        Local state is left untouched until the echo arrives.
        """
        with self._lock:
            if self.processing or self.ended:
                return False
            if not self.is_my_turn:
                logger.info("visit for %s held back: not our turn locally", self.match_id)
                return False
            self.processing = True
        try:
            self.gateway.save_visit(self.match_id, darts)
        except NotYourTurn:
            logger.info("visit for %s rejected as not_your_turn; re-fetching", self.match_id)
            self.processing = False
            self.reconnect()
            return False
        except GatewayUnavailable:
            self.processing = False
            self.reconnect()
            return False
        except Exception:
            self.processing = False
            raise
        return True

    def on_match_changed(self, row) -> bool:
        match = row if isinstance(row, MatchSnapshot) else MatchSnapshot.from_row(row)
        if match.id != self.match_id:
            return False
        with self._lock:
            if not match.supersedes(self.match):
                return False
            self._apply(match)
        return True

    def _apply(self, match: MatchSnapshot) -> None:
        previous = self.match
        visit = match.last_visit
        if visit is not None and visit.is_newer_than(previous.last_visit):
            self.on_reveal(visit, match)
        self.match = match
        self.processing = False
        if (match.challenger_score, match.receiver_score, match.current_leg) != (
                previous.challenger_score, previous.receiver_score, previous.current_leg):
            self.on_scores(match)
        self.on_turn(self.is_my_turn, match)
        if match.is_terminal and not self.ended:
            self.ended = True
            if match.status == COMPLETED:
                logger.info("match %s completed, winner=%s", self.match_id, match.winner_id)
            else:
                logger.info("match %s ended during play (%s)", self.match_id, match.status)
            self.on_end(match)

    def reconnect(self) -> MatchSnapshot:
        """Authoritative re-fetch; local state is overwritten if it differs."""
        match = self.gateway.get_match(self.match_id)
        with self._lock:
            if match.version != self.match.version:
                logger.info(
                    "resync %s: local v%s -> server v%s", self.match_id, self.match.version, match.version,
                )
                self._apply(match)
            else:
                self.processing = False
        return self.match

    def close(self) -> None:
        self.guard.clear(self.match_id)
