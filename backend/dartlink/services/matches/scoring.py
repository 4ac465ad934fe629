from typing import Dict, List, NamedTuple, Optional


class VisitOutcome(NamedTuple):
    score_after: int
    bust: bool
    checkout: bool


class CountdownEngine:
    """Minimal x01 rule engine: subtract the visit, bust below zero or on one."""

    def __init__(self, starting_score: int):
        self.starting_score = starting_score

    def apply(self, score_before: int, darts: List[int]) -> VisitOutcome:
        remaining = score_before - sum(darts)
        if remaining < 0 or remaining == 1:
            return VisitOutcome(score_after=score_before, bust=True, checkout=False)
        return VisitOutcome(score_after=remaining, bust=False, checkout=remaining == 0)


_engines: Dict[str, CountdownEngine] = {
    '301': CountdownEngine(301),
    '501': CountdownEngine(501),
}


def get_engine(game_type: str) -> Optional[CountdownEngine]:
    return _engines.get(str(game_type))
