"""Per-player views over confirmed matches."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .db import Store, utcnow
from .models import MatchRecord


def week_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Sunday 00:00 of the week containing `now`, and the following Sunday.

    A naive `now` is read as UTC, like every timestamp the store writes.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = (now - timedelta(days=(now.weekday() + 1) % 7)).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=7)


def set_wins(match: MatchRecord, account_id: int) -> list[int]:
    """[sets won by the account's side, sets won by the other side]"""
    wins_a, wins_b = match.sets_won()
    return [wins_a, wins_b] if match.side_of(account_id) == "A" else [wins_b, wins_a]


async def weekly_games(store: Store, account_id: int, now: datetime | None = None) -> list[dict]:
    """Confirmed matches of this Sunday-to-Saturday week, newest first."""
    start, end = week_bounds(now or utcnow())
    matches = await store.confirmed_for(
        account_id, start.astimezone(timezone.utc), end.astimezone(timezone.utc)
    )
    accounts = await store.get_accounts(uid for m in matches for uid in m.participants)

    games = []
    for m in matches:
        won = m.side_of(account_id) == m.declared_winner
        games.append(
            {
                "id": m.id,
                "time": m.resolved_at.isoformat(),
                "discipline": m.discipline.value,
                "players": [accounts[uid].username if uid in accounts else "Unknown Player" for uid in m.participants],
                "scores": set_wins(m, account_id),
                "result": "win" if won else "loss",
                "rating_delta": (m.rating_delta or {}).get(account_id, 0),
            }
        )
    return games
