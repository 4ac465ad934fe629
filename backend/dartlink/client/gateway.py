"""RPC gateway used by the client layers.

Error responses are mapped back onto the same exception classes the server
raises, so callers handle ``Conflict`` or ``NotYourTurn`` identically on both
sides of the wire. A transport failure is ambiguous (the transition may or may
not have committed) and surfaces as ``GatewayUnavailable``; callers re-fetch
rather than retry.
"""
import logging
from typing import List, Optional, Tuple

import requests

from dartlink.errors import error_from_payload
from dartlink.client.snapshot import MatchSnapshot

logger = logging.getLogger(__name__)


class GatewayUnavailable(Exception):
    """The request may or may not have reached the server."""


class NotAuthenticated(Exception):
    """The session cookie is missing or no longer valid."""


class MatchGateway:
    """Operations the client layers need; implemented over HTTP below."""

    def list_matches(self, include_terminal=False) -> List[MatchSnapshot]:
        raise NotImplementedError

    def get_match(self, match_id) -> MatchSnapshot:
        raise NotImplementedError

    def has_joined(self, match_id) -> bool:
        raise NotImplementedError

    def pending_count(self) -> int:
        raise NotImplementedError

    def create_challenge(self, receiver_id, game_type, match_format) -> MatchSnapshot:
        raise NotImplementedError

    def accept(self, match_id) -> MatchSnapshot:
        raise NotImplementedError

    def join(self, match_id) -> MatchSnapshot:
        raise NotImplementedError

    def cancel(self, match_id) -> MatchSnapshot:
        raise NotImplementedError

    def save_visit(self, match_id, darts) -> MatchSnapshot:
        raise NotImplementedError

    def expire(self, match_id) -> MatchSnapshot:
        raise NotImplementedError


class HttpMatchGateway(MatchGateway):
    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout
        self.user = None

    @property
    def user_id(self):
        return self.user['id'] if self.user else None

    def _send(self, method: str, path: str, payload=None, params=None) -> Tuple[int, Optional[dict]]:
        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", json=payload, params=params, timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("gateway transport failure %s %s: %s", method, path, exc)
            raise GatewayUnavailable(str(exc)) from exc
        try:
            body = response.json()
        except ValueError:
            body = None
        return response.status_code, body

    def _call(self, method: str, path: str, payload=None, params=None):
        status, body = self._send(method, path, payload, params)
        if status == 401:
            raise NotAuthenticated((body or {}).get('error') or 'Login required')
        if status >= 500 or body is None:
            # The server may have committed before failing
            raise GatewayUnavailable(f"{method} {path} returned {status}")
        if status >= 400:
            error = error_from_payload(status, body)
            logger.info("rpc %s %s rejected: %s (%s)", method, path, error.kind, error.code)
            raise error
        return body

    # ---- Session ----

    def login(self, username: str, password: str) -> dict:
        body = self._call('POST', '/login', {'username': username, 'password': password})
        self.user = body['user']
        return self.user

    def logout(self) -> None:
        self._call('POST', '/logout')
        self.user = None

    # ---- Reads (safe to retry) ----

    def list_matches(self, include_terminal=False) -> List[MatchSnapshot]:
        params = {'include_terminal': '1'} if include_terminal else None
        return [MatchSnapshot.from_row(row) for row in self._call('GET', '/api/matches', params=params)]

    def get_match(self, match_id) -> MatchSnapshot:
        return MatchSnapshot.from_row(self._call('GET', f'/api/matches/{match_id}'))

    def has_joined(self, match_id) -> bool:
        return bool(self._call('GET', f'/api/matches/{match_id}/joined')['joined'])

    def pending_count(self) -> int:
        return int(self._call('GET', '/api/matches/pending-count')['count'])

    # ---- Transitions (never retried) ----

    def create_challenge(self, receiver_id, game_type, match_format) -> MatchSnapshot:
        body = self._call('POST', '/api/matches/challenge', {
            'receiver_id': receiver_id,
            'game_type': game_type,
            'match_format': match_format,
        })
        return MatchSnapshot.from_row(body)

    def accept(self, match_id) -> MatchSnapshot:
        return MatchSnapshot.from_row(self._call('POST', f'/api/matches/{match_id}/accept')['match'])

    def join(self, match_id) -> MatchSnapshot:
        return MatchSnapshot.from_row(self._call('POST', f'/api/matches/{match_id}/join'))

    def cancel(self, match_id) -> MatchSnapshot:
        return MatchSnapshot.from_row(self._call('POST', f'/api/matches/{match_id}/cancel')['match'])

    def save_visit(self, match_id, darts) -> MatchSnapshot:
        return MatchSnapshot.from_row(self._call('POST', f'/api/matches/{match_id}/visit', {'darts': list(darts)}))

    def expire(self, match_id) -> MatchSnapshot:
        return MatchSnapshot.from_row(self._call('POST', f'/api/matches/{match_id}/expire')['match'])
