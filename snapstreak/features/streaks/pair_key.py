from __future__ import annotations

from dataclasses import dataclass

from snapstreak.core.errors import InvalidPairError, ValidationError
from snapstreak.models.pair_streak import PairSide


@dataclass(frozen=True)
class PairKey:
    low: str
    high: str
    is_low_side: bool  # True when the first argument to canonicalize() was `low`

    @property
    def first_side(self) -> PairSide:
        return "a" if self.is_low_side else "b"

    @property
    def second_side(self) -> PairSide:
        return "b" if self.is_low_side else "a"

    def side_of(self, user_id: str) -> PairSide:
        if user_id == self.low:
            return "a"
        if user_id == self.high:
            return "b"
        raise ValidationError(f"{user_id} is not a member of pair ({self.low}, {self.high})")


def canonicalize(id_a: str, id_b: str) -> PairKey:
    """Order an unordered pair so both directions map to one record."""
    if not id_a or not id_b:
        raise ValidationError("user ids must be non-empty")
    if id_a == id_b:
        raise InvalidPairError(f"user {id_a} cannot streak with themself")
    if id_a < id_b:
        return PairKey(low=id_a, high=id_b, is_low_side=True)
    return PairKey(low=id_b, high=id_a, is_low_side=False)
