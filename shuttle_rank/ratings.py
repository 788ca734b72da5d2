"""Applies a confirmed match's rating exchange to every participant at once.

One attempt reads fresh account ratings, computes the deltas and writes the
match's terminal state plus all account changes inside a single SQLite
transaction. Every write is conditional on the version read at the start; if
any condition fails the whole transaction rolls back and `StaleWriteError`
tells the caller to start over from a fresh read.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from . import mmr
from .db import Store, utcnow
from .errors import NotFoundError, StaleWriteError
from .logging_config import get_logger
from .models import Action, MatchRecord, MatchStatus

log = get_logger(__name__)


async def apply_confirmation(
    store: Store,
    match: MatchRecord,
    acting_account: int,
    k_factor: float,
    now: datetime | None = None,
) -> MatchRecord:
    """Confirm `match` (read at `match.version`) and apply its rating deltas.

    Returns the confirmed record. Raises StaleWriteError if the match or any
    account changed since it was read; nothing is written in that case.
    """
    accounts = await store.get_accounts(match.participants)
    missing = [uid for uid in match.participants if uid not in accounts]
    if missing:
        raise NotFoundError(f"accounts {missing} of match {match.id} no longer exist")

    discipline = match.discipline
    deltas = mmr.compute_deltas(
        {uid: accounts[uid].rating(discipline) for uid in match.side_a},
        {uid: accounts[uid].rating(discipline) for uid in match.side_b},
        side_a_won=match.declared_winner == "A",
        k=k_factor,
    )
    winners = set(match.members(match.declared_winner))

    confirmed = replace(
        match,
        status=MatchStatus.CONFIRMED,
        awaiting_confirmation_from=frozenset(),
        confirmed_by=match.confirmed_by | {acting_account},
        resolved_by=acting_account,
        resolved_action=Action.CONFIRM,
        resolved_at=now or utcnow(),
        rating_delta=deltas,
        version=match.version + 1,
    )

    async with store.transaction() as conn:
        if not await store.update_match(confirmed, expected_version=match.version, conn=conn):
            raise StaleWriteError(f"match {match.id} moved past version {match.version}")
        await store.add_signature(conn, match.id, acting_account, Action.CONFIRM)
        for uid in match.participants:
            applied = await store.apply_rating_change(
                uid,
                discipline,
                deltas[uid],
                won=uid in winners,
                expected_version=accounts[uid].version,
                conn=conn,
            )
            if not applied:
                raise StaleWriteError(f"account {uid} changed while confirming match {match.id}")

    log.info(
        "Match #%s confirmed by %s (%s, winner=%s) deltas=%s",
        match.id, acting_account, discipline.value, match.declared_winner, deltas,
    )
    return confirmed
