"""Immutable client-side views of a match row as delivered by the RPC layer or the feed."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from dartlink.statuses import IN_PROGRESS, is_terminal


def parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00')).replace(tzinfo=None)


@dataclass(frozen=True)
class VisitPayload:
    player_id: int
    darts: tuple
    score_before: int
    score_after: int
    bust: bool = False
    leg: int = 1
    timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data):
        if not data:
            return None
        return cls(
            player_id=data.get('player_id'),
            darts=tuple(data.get('darts') or ()),
            score_before=data.get('score_before'),
            score_after=data.get('score_after'),
            bust=bool(data.get('bust')),
            leg=data.get('leg') or 1,
            timestamp=parse_timestamp(data.get('timestamp')),
        )

    def is_newer_than(self, other: Optional['VisitPayload']) -> bool:
        if other is None or other.timestamp is None:
            return self.timestamp is not None
        return self.timestamp is not None and self.timestamp > other.timestamp


@dataclass(frozen=True)
class MatchSnapshot:
    id: str
    status: str
    challenger_id: int
    receiver_id: int
    game_type: str
    match_format: int = 1
    version: int = 0
    current_player_id: Optional[int] = None
    challenger_score: Optional[int] = None
    receiver_score: Optional[int] = None
    turn_index_in_leg: int = 0
    current_leg: int = 1
    challenger_legs: int = 0
    receiver_legs: int = 0
    winner_id: Optional[int] = None
    ended_reason: Optional[str] = None
    challenge_expires_at: Optional[datetime] = None
    join_window_expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_visit: Optional[VisitPayload] = None
    challenger_name: Optional[str] = None
    receiver_name: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_row(cls, row: dict) -> 'MatchSnapshot':
        return cls(
            id=str(row['id']),
            status=row['status'],
            challenger_id=row['challenger_id'],
            receiver_id=row['receiver_id'],
            game_type=row.get('game_type'),
            match_format=row.get('match_format') or 1,
            version=row.get('version') or 0,
            current_player_id=row.get('current_player_id'),
            challenger_score=row.get('challenger_score'),
            receiver_score=row.get('receiver_score'),
            turn_index_in_leg=row.get('turn_index_in_leg') or 0,
            current_leg=row.get('current_leg') or 1,
            challenger_legs=row.get('challenger_legs') or 0,
            receiver_legs=row.get('receiver_legs') or 0,
            winner_id=row.get('winner_id'),
            ended_reason=row.get('ended_reason'),
            challenge_expires_at=parse_timestamp(row.get('challenge_expires_at')),
            join_window_expires_at=parse_timestamp(row.get('join_window_expires_at')),
            updated_at=parse_timestamp(row.get('updated_at')),
            last_visit=VisitPayload.from_dict(row.get('last_visit_payload')),
            challenger_name=row.get('challenger_name'),
            receiver_name=row.get('receiver_name'),
            raw=dict(row),
        )

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def is_in_progress(self) -> bool:
        return self.status == IN_PROGRESS

    def is_participant(self, user_id) -> bool:
        return user_id in (self.challenger_id, self.receiver_id)

    def opponent_of(self, user_id):
        return self.receiver_id if user_id == self.challenger_id else self.challenger_id

    def score_of(self, user_id):
        return self.challenger_score if user_id == self.challenger_id else self.receiver_score

    def is_turn_of(self, user_id) -> bool:
        return self.is_in_progress and self.current_player_id == user_id

    def supersedes(self, other: Optional['MatchSnapshot']) -> bool:
        """True when this row should replace ``other`` in local state.

        Rows are ordered by their server version; an equal version is a
        duplicate delivery and is not applied again.
        """
        if other is None:
            return True
        return self.version > other.version
