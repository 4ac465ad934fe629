"""Client-side sorting of a user's matches into the four list buckets.

A match id lives in at most one bucket. ``active_match`` takes priority over
any stale challenge-list membership, and terminal rows are simply removed.
"""
import logging
import threading
import time
from typing import Dict, Optional

from dartlink.errors import MatchError
from dartlink.statuses import SENT, READY, LOBBY, IN_PROGRESS
from dartlink.client.gateway import GatewayUnavailable
from dartlink.client.snapshot import MatchSnapshot

logger = logging.getLogger(__name__)

RECONCILE_RETRIES = 3

PENDING = 'pending_challenges'
SENT_CHALLENGES = 'sent_challenges'
READY_MATCHES = 'ready_matches'
ACTIVE = 'active_match'


class MatchReconciler:
    def __init__(self, gateway, user_id, retries=RECONCILE_RETRIES, retry_delay=0.5):
        self.gateway = gateway
        self.user_id = user_id
        self.retries = retries
        self.retry_delay = retry_delay
        self._lock = threading.RLock()
        self.pending_challenges: Dict[str, MatchSnapshot] = {}
        self.sent_challenges: Dict[str, MatchSnapshot] = {}
        self.ready_matches: Dict[str, MatchSnapshot] = {}
        self.active_match: Optional[MatchSnapshot] = None
        self.processing = False
        self._versions: Dict[str, int] = {}

    def _read(self, fn, *args):
        """Run a read-only gateway call, retrying transport failures."""
        for attempt in range(self.retries + 1):
            try:
                return fn(*args)
            except GatewayUnavailable as exc:
                if attempt >= self.retries:
                    raise
                logger.warning("reconcile read failed (attempt %s/%s): %s", attempt + 1, self.retries, exc)
                if self.retry_delay:
                    time.sleep(self.retry_delay)

    def classify(self, match: MatchSnapshot, joined: bool = False) -> Optional[str]:
        if match.is_terminal or not match.is_participant(self.user_id):
            return None
        if match.status == SENT:
            return PENDING if match.receiver_id == self.user_id else SENT_CHALLENGES
        if match.status == READY:
            return READY_MATCHES
        if match.status == LOBBY:
            return ACTIVE if joined else READY_MATCHES
        if match.status == IN_PROGRESS:
            return ACTIVE
        return None

    def bucket_of(self, match_id) -> Optional[str]:
        with self._lock:
            if self.active_match is not None and self.active_match.id == match_id:
                return ACTIVE
            for name in (PENDING, SENT_CHALLENGES, READY_MATCHES):
                if match_id in getattr(self, name):
                    return name
            return None

    def _remove(self, match_id) -> None:
        for name in (PENDING, SENT_CHALLENGES, READY_MATCHES):
            getattr(self, name).pop(match_id, None)
        if self.active_match is not None and self.active_match.id == match_id:
            self.active_match = None

    def _place(self, match: MatchSnapshot, bucket: Optional[str]) -> None:
        if bucket is None:
            return
        if bucket == ACTIVE:
            if self.active_match is not None and self.active_match.id != match.id:
                # Keep the more advanced of the two; the other drops out of view
                if self.active_match.is_in_progress and not match.is_in_progress:
                    logger.warning("ignoring second active match %s (active=%s)", match.id, self.active_match.id)
                    return
                logger.warning("replacing active match %s with %s", self.active_match.id, match.id)
            self.active_match = match
            return
        getattr(self, bucket)[match.id] = match

    def reload(self) -> dict:
        """Full authoritative rebuild; lobby membership is resolved before returning.

        Rows applied from the feed while the list was in flight are newer than
        what the list returned, so they keep their snapshot and bucket.
        """
        with self._lock:
            baseline = dict(self._versions)
        rows = self._read(self.gateway.list_matches)
        placements = []
        for match in rows:
            joined = False
            if match.status == LOBBY and match.is_participant(self.user_id):
                joined = self._read(self.gateway.has_joined, match.id)
            placements.append((match, self.classify(match, joined)))

        with self._lock:
            held = self._held()
            listed = {match.id for match, _ in placements}
            fresh = []
            for match, bucket in placements:
                if match.version < self._versions.get(match.id, 0):
                    logger.debug("reload kept newer local row %s v%s", match.id, self._versions[match.id])
                    if match.id in held:
                        fresh.append(held[match.id])
                    continue
                fresh.append((match, bucket))
            for match_id, entry in held.items():
                if match_id not in listed and self._versions.get(match_id, 0) > baseline.get(match_id, 0):
                    fresh.append(entry)

            self.pending_challenges = {}
            self.sent_challenges = {}
            self.ready_matches = {}
            self.active_match = None
            # Active rows first so they win over any list membership
            for match, bucket in sorted(fresh, key=lambda item: item[1] != ACTIVE):
                self._versions[match.id] = max(match.version, self._versions.get(match.id, 0))
                self._place(match, bucket)
            if self.active_match is not None:
                self._remove_from_lists(self.active_match.id)
            logger.info(
                "reconciled user=%s pending=%s sent=%s ready=%s active=%s",
                self.user_id, len(self.pending_challenges), len(self.sent_challenges),
                len(self.ready_matches), self.active_match.id if self.active_match else None,
            )
            return self.buckets()

    def _held(self) -> dict:
        entries = {}
        for name in (PENDING, SENT_CHALLENGES, READY_MATCHES):
            for match_id, match in getattr(self, name).items():
                entries[match_id] = (match, name)
        if self.active_match is not None:
            entries[self.active_match.id] = (self.active_match, ACTIVE)
        return entries

    def _remove_from_lists(self, match_id) -> None:
        for name in (PENDING, SENT_CHALLENGES, READY_MATCHES):
            getattr(self, name).pop(match_id, None)

    def apply(self, row, joined: Optional[bool] = None) -> bool:
        """Apply one feed row. Returns False if it was stale or not ours."""
        match = row if isinstance(row, MatchSnapshot) else MatchSnapshot.from_row(row)
        if not match.is_participant(self.user_id):
            return False
        with self._lock:
            if match.version <= self._versions.get(match.id, 0):
                logger.debug("dropping stale row %s v%s", match.id, match.version)
                return False
            previous_bucket = self.bucket_of(match.id)

        if match.status == LOBBY and joined is None:
            joined = previous_bucket == ACTIVE or self._read(self.gateway.has_joined, match.id)

        with self._lock:
            # Re-check: a newer row may have landed during the joined query
            if match.version <= self._versions.get(match.id, 0):
                return False
            self._versions[match.id] = match.version
            self._remove(match.id)
            self._place(match, self.classify(match, bool(joined)))
            if self.active_match is not None:
                self._remove_from_lists(self.active_match.id)
        return True

    def buckets(self) -> dict:
        with self._lock:
            return {
                PENDING: list(self.pending_challenges.values()),
                SENT_CHALLENGES: list(self.sent_challenges.values()),
                READY_MATCHES: list(self.ready_matches.values()),
                ACTIVE: self.active_match,
            }

    def attach(self, listener) -> None:
        """Follow a ``FeedListener``: rows are applied and every (re)connect reloads."""
        listener.add_handler(self.apply)
        listener.add_connect_handler(self.reload)

    def _submit(self, action, *args):
        """Run one list-screen transition; a second call while one is in flight is rejected."""
        with self._lock:
            if self.processing:
                logger.info("list transition already in flight for user %s", self.user_id)
                return None
            self.processing = True
        try:
            match = action(*args)
        except GatewayUnavailable:
            # Outcome unknown: rebuild from the server instead of retrying
            self.processing = False
            self.reload()
            return None
        except MatchError:
            self.processing = False
            raise
        self.processing = False
        self.apply(match)
        return match

    def accept(self, match_id):
        return self._submit(self.gateway.accept, match_id)

    def challenge(self, receiver_id, game_type, match_format):
        return self._submit(self.gateway.create_challenge, receiver_id, game_type, match_format)
