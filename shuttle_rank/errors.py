"""Typed failures raised by the confirmation engine.

The engine raises, the front-end translates. None of these carry user-facing
wording beyond a short description.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import MatchRecord


class MatchError(Exception):
    """Base class for every error raised by shuttle_rank."""


class ValidationError(MatchError):
    """A submission is malformed; resubmitting a corrected one is fine."""


class UnauthorizedError(MatchError):
    """The acting account may not perform this action on this match."""


class NotFoundError(MatchError):
    """Unknown match id or account id."""


class AlreadyResolvedError(MatchError):
    """The match reached a terminal state through a different action."""

    def __init__(self, match: "MatchRecord", message: str | None = None):
        self.match = match
        super().__init__(
            message
            or f"match {match.id} already {match.status.value} "
            f"(by {match.resolved_by}, action={match.resolved_action.value if match.resolved_action else None})"
        )


class ConflictError(MatchError):
    """Optimistic retries were exhausted; the caller may try again later."""


class StaleWriteError(MatchError):
    """A conditional write lost its race. Internal: triggers a fresh read and retry."""
