"""Error taxonomy shared by the transition functions, the RPC layer and the client gateway.

Every error carries an HTTP status, a taxonomy ``kind`` and a more specific
machine ``code`` (``already_has_active_match``, ``not_your_turn``, ...) so a
client can map a response back to the same exception class and still pick a
specific user-facing message.
"""


class MatchError(Exception):
    status_code = 500
    kind = 'match_error'
    code = 'match_error'

    def __init__(self, message=None, code=None, match_id=None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)
        if code:
            self.code = code
        self.match_id = match_id

    def to_dict(self):
        payload = {'error': self.message, 'kind': self.kind, 'code': self.code}
        if self.match_id:
            payload['match_id'] = self.match_id
        return payload


class ValidationError(MatchError):
    status_code = 400
    kind = code = 'validation_error'


class Unauthorized(MatchError):
    """Caller is not a participant (or not the participant allowed to act)."""
    status_code = 403
    kind = code = 'unauthorized'


class NotFound(MatchError):
    status_code = 404
    kind = code = 'not_found'


class InvalidState(MatchError):
    status_code = 409
    kind = code = 'invalid_state'


class Conflict(MatchError):
    status_code = 409
    kind = code = 'conflict'


class NotYourTurn(Conflict):
    kind = code = 'not_your_turn'


class Expired(MatchError):
    status_code = 410
    kind = code = 'expired'


_BY_KIND = {
    cls.kind: cls
    for cls in (ValidationError, Unauthorized, NotFound, InvalidState, Conflict, NotYourTurn, Expired)
}

_BY_STATUS = {
    400: ValidationError,
    403: Unauthorized,
    404: NotFound,
    409: Conflict,
    410: Expired,
}


def error_from_payload(status_code, payload):
    """Rebuild a taxonomy error from an RPC error response."""
    payload = payload or {}
    cls = _BY_KIND.get(payload.get('kind')) or _BY_STATUS.get(status_code, MatchError)
    return cls(payload.get('error'), code=payload.get('code'), match_id=payload.get('match_id'))
