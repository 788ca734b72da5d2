"""Scoreline and roster rules for submitted matches."""

from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional, Sequence

from .errors import ValidationError
from .models import Discipline, Gender, SetScore


def default_cap(target: int) -> int:
    """Badminton caps: 30 for games to 21, 15 for games to 11."""
    return 30 if target >= 21 else 15


def valid_set(a: int, b: int, target: int, win_by: int = 2, cap: Optional[int] = None) -> bool:
    """
    Returns True if the set score (a, b) is a finished badminton set.
    - max(a, b) >= target
    - abs(a - b) >= win_by unless cap is reached
    - If cap is reached, next point wins (e.g., 30-29 or 15-14)
    """
    if a < 0 or b < 0:
        return False
    m = max(a, b)
    d = abs(a - b)
    if cap is not None and m > cap:
        return False
    if m < target:
        return False
    if cap is not None and m == cap:
        return d >= 1
    return d >= win_by


def _as_points(value) -> int:
    # bool is an int subclass; True-19 is not a scoreline
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"set points must be integers, got {value!r}")
    if value < 0:
        raise ValidationError(f"set points must be non-negative, got {value}")
    return value


def normalize_set_scores(raw: Iterable) -> tuple[SetScore, ...]:
    """Accept [[21, 19], ...], [{"A": 21, "B": 19}, ...] or SetScore values."""
    if raw is None or isinstance(raw, (str, bytes)):
        raise ValidationError("set scores must be a sequence of (A, B) pairs")
    try:
        items = list(raw)
    except TypeError:
        raise ValidationError("set scores must be a sequence of (A, B) pairs") from None
    out: list[SetScore] = []
    for i, s in enumerate(items, start=1):
        if isinstance(s, SetScore):
            a, b = s.a, s.b
        elif isinstance(s, Mapping):
            if "A" not in s or "B" not in s:
                raise ValidationError(f"set {i} must have A and B points")
            a, b = s["A"], s["B"]
        else:
            try:
                a, b = s
            except (TypeError, ValueError):
                raise ValidationError(f"set {i} must be a pair of points, got {s!r}") from None
        score = SetScore(_as_points(a), _as_points(b))
        if score.winner is None:
            raise ValidationError(f"set {i} is tied ({score.a}-{score.b}); every set needs a winner")
        out.append(score)
    if not out:
        raise ValidationError("at least one set score is required")
    return tuple(out)


_SET_RE = re.compile(r"(\d+)\s*[-:]\s*(\d+)")


def parse_set_scores(text: str) -> tuple[SetScore, ...]:
    """Parse chat input such as "21-19 18-21 21-15" (commas also accepted)."""
    text = (text or "").strip()
    leftover = _SET_RE.sub("", text)
    if leftover.strip(" ,;"):
        raise ValidationError(f"could not read set scores {text!r}; use e.g. 21-19 18-21")
    pairs = [(int(a), int(b)) for a, b in _SET_RE.findall(text)]
    return normalize_set_scores(pairs)


def check_strict_sets(
    set_scores: Sequence[SetScore],
    target: int,
    win_by: int = 2,
    cap: Optional[int] = None,
) -> None:
    """Raise ValidationError unless every set is a finished badminton set."""
    cap = cap if cap is not None else default_cap(target)
    for i, s in enumerate(set_scores, start=1):
        if not valid_set(s.a, s.b, target, win_by, cap):
            raise ValidationError(
                f"set {i} ({s.a}-{s.b}) is not a finished game to {target} (win by {win_by}, cap {cap})"
            )


def match_winner(set_scores: Sequence[SetScore]) -> tuple[str, int, int]:
    """
    Determines the match winner from set scores.
    Returns (winner, sets_a, sets_b); raises ValidationError when neither side
    won more sets.
    """
    sets_a = sum(1 for s in set_scores if s.winner == "A")
    sets_b = sum(1 for s in set_scores if s.winner == "B")
    if sets_a == sets_b:
        raise ValidationError(f"no side won a majority of sets ({sets_a}-{sets_b})")
    return ("A" if sets_a > sets_b else "B"), sets_a, sets_b


def normalize_winner(declared: str) -> str:
    value = str(declared or "").strip().upper()
    if value in ("SIDEA", "SIDE_A", "TEAMA"):
        value = "A"
    elif value in ("SIDEB", "SIDE_B", "TEAMB"):
        value = "B"
    if value not in ("A", "B"):
        raise ValidationError(f"declared winner must be side A or side B, got {declared!r}")
    return value


def parse_discipline(value) -> Discipline:
    if isinstance(value, Discipline):
        return value
    try:
        return Discipline(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"unknown discipline {value!r}") from None


def check_sides(discipline: Discipline, side_a: Sequence[int], side_b: Sequence[int]) -> None:
    size = discipline.side_size
    if len(side_a) != size or len(side_b) != size:
        raise ValidationError(
            f"{discipline.value} needs {size} v {size}, got {len(side_a)} v {len(side_b)}"
        )
    everyone = list(side_a) + list(side_b)
    if len(set(everyone)) != len(everyone):
        raise ValidationError("a player can appear only once in a match")


def _is_mixed_pair(genders: Sequence[Gender | None]) -> bool:
    return sorted(g.value for g in genders if g is not None) == [Gender.FEMALE.value, Gender.MALE.value]


def derive_discipline(
    requested: Discipline,
    genders_a: Sequence[Gender | None],
    genders_b: Sequence[Gender | None],
) -> Discipline:
    """Pairs of one man and one woman on both sides play mixed doubles."""
    if requested is Discipline.SINGLES:
        return requested
    mixed = _is_mixed_pair(genders_a) and _is_mixed_pair(genders_b)
    if requested is Discipline.MIXED and not mixed:
        raise ValidationError("mixed doubles needs one man and one woman on each side")
    return Discipline.MIXED if mixed else Discipline.DOUBLES
