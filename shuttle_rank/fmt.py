"""Markdown snippets for Discord messages about matches."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from .errors import AlreadyResolvedError, ConflictError, MatchError, NotFoundError, UnauthorizedError
from .models import MatchRecord, SetScore


def bold(t: str) -> str:
    return f"**{t}**"


def code(t: str) -> str:
    return f"`{t}`"


def block(t: str, lang: str | None = None) -> str:
    return f"```{lang or ''}\n{t}\n```"


def mention(uid: int) -> str:
    return f"<@{uid}>"


def score_sets(sets: Sequence[SetScore]) -> str:
    return " | ".join(f"{s.a}–{s.b}" for s in sets)


def side(ids: Iterable[int]) -> str:
    return "/".join(mention(uid) for uid in ids)


def signed(delta: int) -> str:
    return f"{delta:+d}"


def match_line(match: MatchRecord) -> str:
    """`#12 doubles: @a/@b vs @c/@d · 21–19 | 18–21 | 21–15 · winner A`"""
    return (
        f"#{match.id} {match.discipline.value}: {side(match.side_a)} vs {side(match.side_b)}"
        f" · {score_sets(match.set_scores)} · winner {match.declared_winner}"
    )


def confirmation_request(match: MatchRecord, emoji_approve: str = "✅", emoji_reject: str = "❌") -> str:
    tip = block(f"/confirm match_id:{match.id}\n/reject match_id:{match.id} reason:<optional>", "md")
    return (
        f"{bold(f'Please confirm Match #{match.id}')} (reported by {mention(match.submitted_by)})\n"
        f"{match_line(match)}\n"
        f"React {emoji_approve} to confirm or {emoji_reject} to reject.\n\n{tip}"
    )


def confirmed_notice(match: MatchRecord, account_id: int) -> str:
    delta = (match.rating_delta or {}).get(account_id)
    change = f" Your {match.discipline.value} rating: {code(signed(delta))}" if delta is not None else ""
    return f"{bold(f'Match #{match.id} confirmed.')}{change}\n{match_line(match)}"


def rejected_notice(match: MatchRecord) -> str:
    reason = f" Reason: {match.reject_reason}" if match.reject_reason else ""
    by = mention(match.resolved_by) if match.resolved_by is not None else "an opponent"
    return f"{bold(f'Match #{match.id} rejected')} by {by}.{reason}\n{match_line(match)}"


def mono_table(rows: list[list[str]], headers: Optional[list[str]] = None) -> str:
    """Render rows as a padded monospaced table inside a code block."""
    table = [[str(c) for c in r] for r in ([headers] if headers else []) + rows]
    if not table:
        return block("", "md")
    cols = max(len(r) for r in table)
    table = [r + [""] * (cols - len(r)) for r in table]
    widths = [max(len(r[i]) for r in table) for i in range(cols)]

    lines = [" | ".join(cell.ljust(w) for cell, w in zip(r, widths)) for r in table]
    if headers:
        lines.insert(1, "-+-".join("-" * w for w in widths))
    return block("\n".join(lines), "md")


def error_message(err: MatchError) -> str:
    """One-line reply for a typed engine failure."""
    if isinstance(err, AlreadyResolvedError):
        return f"❌ Match #{err.match.id} was already {err.match.status.value}."
    if isinstance(err, NotFoundError):
        return f"❌ Not found: {err}. New players can run /register first."
    if isinstance(err, UnauthorizedError):
        return f"❌ Not allowed: {err}."
    if isinstance(err, ConflictError):
        return "⏳ Too many people are updating this match right now. Please try again."
    return f"❌ Invalid match: {err}"
