"""
Data models for match confirmation and ratings.

Records are immutable: every state change produces a new value through
`dataclasses.replace`, and the store persists it with a conditional write.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping


class Discipline(str, Enum):
    SINGLES = "singles"
    DOUBLES = "doubles"
    MIXED = "mixed"

    @property
    def side_size(self) -> int:
        return 1 if self is Discipline.SINGLES else 2


class MatchStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class Action(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


SIDES = ("A", "B")


@dataclass(frozen=True)
class SetScore:
    a: int
    b: int

    @property
    def winner(self) -> str | None:
        if self.a == self.b:
            return None
        return "A" if self.a > self.b else "B"

    def as_dict(self) -> dict:
        return {"A": self.a, "B": self.b}


@dataclass(frozen=True)
class MatchRecord:
    id: int
    discipline: Discipline
    side_a: tuple[int, ...]
    side_b: tuple[int, ...]
    set_scores: tuple[SetScore, ...]
    declared_winner: str
    status: MatchStatus
    submitted_by: int
    awaiting_confirmation_from: frozenset[int]
    created_at: datetime
    confirmed_by: frozenset[int] = frozenset()
    resolved_by: int | None = None
    resolved_action: Action | None = None
    resolved_at: datetime | None = None
    reject_reason: str | None = None
    rating_delta: Mapping[int, int] | None = field(default=None, hash=False)
    version: int = 1

    @property
    def participants(self) -> tuple[int, ...]:
        return self.side_a + self.side_b

    @property
    def is_terminal(self) -> bool:
        return self.status is not MatchStatus.PENDING

    def side_of(self, account_id: int) -> str | None:
        if account_id in self.side_a:
            return "A"
        if account_id in self.side_b:
            return "B"
        return None

    def members(self, side: str) -> tuple[int, ...]:
        return self.side_a if side == "A" else self.side_b

    @property
    def required_confirmers(self) -> frozenset[int]:
        """Everyone on the side opposite the submitter."""
        own = self.side_of(self.submitted_by)
        return frozenset(self.members("B" if own == "A" else "A"))

    def sets_won(self) -> tuple[int, int]:
        wins_a = sum(1 for s in self.set_scores if s.winner == "A")
        wins_b = sum(1 for s in self.set_scores if s.winner == "B")
        return wins_a, wins_b


@dataclass(frozen=True)
class Account:
    """Rating view of a player account. Written only by the rating transaction."""

    user_id: int
    username: str
    gender: Gender | None
    ratings: Mapping[Discipline, int] = field(hash=False)
    games_played: int = 0
    games_won: int = 0
    win_rate: float = 0.0
    version: int = 1
    discipline_games: Mapping[Discipline, int] = field(default_factory=dict, hash=False)

    def rating(self, discipline: Discipline) -> int:
        return self.ratings[discipline]

    def games(self, discipline: Discipline) -> int:
        return self.discipline_games.get(discipline, 0)


@dataclass(frozen=True)
class Signature:
    match_id: int
    user_id: int
    decision: Action
    reason: str | None
    signed_at: str
