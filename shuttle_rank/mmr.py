"""
MMR (Matchmaking Rating) calculations using the ELO system.
Pure functions: the rating transaction may call them again on retry and must
get the same answer.
"""

from __future__ import annotations

import math
from typing import Mapping


def expected(ra: float, rb: float, scale: float = 400.0) -> float:
    """
    Calculate the expected score for side A against side B.

    Args:
        ra: Rating of side A
        rb: Rating of side B
        scale: Rating difference at which A is ten times as likely to win

    Returns:
        Expected score (probability) for side A to win (0.0 to 1.0)
    """
    return 1 / (1 + math.pow(10, (rb - ra) / scale))


def team_rating(ratings: list[float]) -> float:
    """Effective rating of a side: the mean of its members' ratings."""
    if not ratings:
        raise ValueError("a side needs at least one rating")
    return sum(ratings) / len(ratings)


def side_delta(ra: float, rb: float, a_won: bool, k: float = 32) -> int:
    """Rounded rating change for side A; side B moves by the negation."""
    actual_a = 1.0 if a_won else 0.0
    return int(round(k * (actual_a - expected(ra, rb))))


def compute_deltas(
    side_a_ratings: Mapping[int, float],
    side_b_ratings: Mapping[int, float],
    side_a_won: bool,
    k: float = 32,
) -> dict[int, int]:
    """
    Per-account rating deltas for a finished match.

    Both members of a doubles side move together, and the two sides move by
    exactly opposite amounts, so the deltas always sum to zero for equal-size
    sides.

    Args:
        side_a_ratings: {account_id: discipline rating} for side A
        side_b_ratings: {account_id: discipline rating} for side B
        side_a_won: True if side A won the match
        k: K-factor for the discipline

    Returns:
        {account_id: signed integer delta}
    """
    if len(side_a_ratings) != len(side_b_ratings):
        raise ValueError(
            f"sides must be the same size ({len(side_a_ratings)} v {len(side_b_ratings)})"
        )
    if set(side_a_ratings) & set(side_b_ratings):
        raise ValueError("an account cannot be on both sides")

    ra = team_rating(list(side_a_ratings.values()))
    rb = team_rating(list(side_b_ratings.values()))
    delta_a = side_delta(ra, rb, side_a_won, k)

    deltas = {uid: delta_a for uid in side_a_ratings}
    deltas.update({uid: -delta_a for uid in side_b_ratings})
    return deltas
