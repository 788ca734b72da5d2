"""
Match result confirmation workflow.

    pending --confirm (last awaited opponent)--> confirmed
    pending --reject (any awaited opponent)----> rejected

A submitted match waits for every player on the side opposite the submitter.
Each confirm removes one account from the awaiting set; the confirm that
empties it also applies the rating exchange, in the same commit. A single
reject vetoes the match, in doubles too.

Every write is a conditional update on the record's version, retried from a
fresh read when another request got there first.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Sequence

from . import history, ratings, rules
from .config import Settings
from .db import Store, utcnow
from .errors import (
    AlreadyResolvedError,
    ConflictError,
    NotFoundError,
    StaleWriteError,
    UnauthorizedError,
    ValidationError,
)
from .logging_config import get_logger
from .models import Action, Discipline, MatchRecord, MatchStatus
from .notify import EventType, LogNotifier, MatchEvent, Notifier

log = get_logger(__name__)


def _account_ids(side: Iterable, label: str) -> tuple[int, ...]:
    if side is None or isinstance(side, (str, bytes)):
        raise ValidationError(f"{label} must be a list of account ids")
    try:
        ids = tuple(side)
    except TypeError:
        raise ValidationError(f"{label} must be a list of account ids") from None
    for uid in ids:
        if isinstance(uid, bool) or not isinstance(uid, int):
            raise ValidationError(f"{label} contains a non-integer account id {uid!r}")
    return ids


class ConfirmationService:
    def __init__(self, store: Store, notifier: Notifier | None = None, settings: Settings | None = None):
        self.store = store
        self.notifier = notifier or LogNotifier()
        self.settings = settings or Settings()

    # ----------------------------------------
    # Submission
    # ----------------------------------------

    async def submit(
        self,
        discipline: Discipline | str,
        side_a: Sequence[int],
        side_b: Sequence[int],
        set_scores: Iterable,
        declared_winner: str,
        submitted_by: int,
    ) -> MatchRecord:
        """Validate a reported result and open it for confirmation."""
        requested = rules.parse_discipline(discipline)
        side_a = _account_ids(side_a, "side A")
        side_b = _account_ids(side_b, "side B")
        rules.check_sides(requested, side_a, side_b)
        if submitted_by not in side_a + side_b:
            raise UnauthorizedError(f"account {submitted_by} did not play in this match")

        sets = rules.normalize_set_scores(set_scores)
        if self.settings.scoring_strict:
            rules.check_strict_sets(
                sets, self.settings.points_target, self.settings.points_win_by, self.settings.points_cap
            )
        winner, sets_a, sets_b = rules.match_winner(sets)
        declared = rules.normalize_winner(declared_winner)
        if declared != winner:
            raise ValidationError(
                f"declared winner is side {declared} but side {winner} won the sets {sets_a}-{sets_b}"
            )

        accounts = await self.store.get_accounts(side_a + side_b)
        missing = [uid for uid in side_a + side_b if uid not in accounts]
        if missing:
            raise NotFoundError(f"unknown accounts {missing}")
        resolved = rules.derive_discipline(
            requested,
            [accounts[uid].gender for uid in side_a],
            [accounts[uid].gender for uid in side_b],
        )

        awaiting = frozenset(side_b if submitted_by in side_a else side_a)
        record = await self.store.insert_match(
            MatchRecord(
                id=0,
                discipline=resolved,
                side_a=side_a,
                side_b=side_b,
                set_scores=sets,
                declared_winner=declared,
                status=MatchStatus.PENDING,
                submitted_by=submitted_by,
                awaiting_confirmation_from=awaiting,
                created_at=utcnow(),
            )
        )
        log.info(
            "Match #%s submitted by %s (%s) awaiting %s",
            record.id, submitted_by, resolved.value, sorted(awaiting),
        )
        await self._emit(EventType.CONFIRMATION_REQUESTED, record, sorted(awaiting))
        return record

    # ----------------------------------------
    # Confirm / reject
    # ----------------------------------------

    async def confirm(self, match_id: int, acting_account: int) -> MatchRecord:
        """Record one opponent's confirmation; the last one confirms the match."""
        attempts = self.settings.max_apply_retries
        for attempt in range(1, attempts + 1):
            match = await self._load_for(match_id, acting_account)
            if match.is_terminal:
                return self._resolved(match, Action.CONFIRM)
            if acting_account not in match.awaiting_confirmation_from:
                # retried confirm while teammates are still outstanding
                return match

            remaining = match.awaiting_confirmation_from - {acting_account}
            try:
                if remaining:
                    return await self._record_partial_confirm(match, acting_account, remaining)
                confirmed = await ratings.apply_confirmation(
                    self.store, match, acting_account, self.settings.k_factor(match.discipline)
                )
            except StaleWriteError as e:
                log.warning("confirm match=%s attempt %s/%s lost a race: %s", match_id, attempt, attempts, e)
                continue

            await self._emit(EventType.MATCH_CONFIRMED, confirmed, confirmed.participants)
            return confirmed

        raise ConflictError(f"could not confirm match {match_id} after {attempts} attempts; try again")

    async def reject(self, match_id: int, acting_account: int, reason: str | None = None) -> MatchRecord:
        """Veto the match. No ratings change."""
        attempts = self.settings.max_apply_retries
        for attempt in range(1, attempts + 1):
            match = await self._load_for(match_id, acting_account)
            if match.is_terminal:
                return self._resolved(match, Action.REJECT)
            if acting_account not in match.awaiting_confirmation_from:
                raise UnauthorizedError(
                    f"account {acting_account} already confirmed match {match_id} and cannot reject it"
                )

            rejected = replace(
                match,
                status=MatchStatus.REJECTED,
                awaiting_confirmation_from=frozenset(),
                resolved_by=acting_account,
                resolved_action=Action.REJECT,
                resolved_at=utcnow(),
                reject_reason=(reason or "").strip() or None,
                version=match.version + 1,
            )
            try:
                async with self.store.transaction() as conn:
                    if not await self.store.update_match(rejected, expected_version=match.version, conn=conn):
                        raise StaleWriteError(f"match {match_id} moved past version {match.version}")
                    await self.store.add_signature(conn, match_id, acting_account, Action.REJECT, rejected.reject_reason)
            except StaleWriteError as e:
                log.warning("reject match=%s attempt %s/%s lost a race: %s", match_id, attempt, attempts, e)
                continue

            log.info("Match #%s rejected by %s", match_id, acting_account)
            await self._emit(EventType.MATCH_REJECTED, rejected, rejected.participants)
            return rejected

        raise ConflictError(f"could not reject match {match_id} after {attempts} attempts; try again")

    # ----------------------------------------
    # Reads
    # ----------------------------------------

    async def get_match(self, match_id: int) -> MatchRecord:
        match = await self.store.get_match(match_id)
        if match is None:
            raise NotFoundError(f"match {match_id} not found")
        return match

    async def pending_for(self, account_id: int) -> list[MatchRecord]:
        return await self.store.pending_for(account_id)

    async def weekly_games(self, account_id: int) -> list[dict]:
        return await history.weekly_games(self.store, account_id)

    # ----------------------------------------
    # Internals
    # ----------------------------------------

    async def _load_for(self, match_id: int, acting_account: int) -> MatchRecord:
        match = await self.get_match(match_id)
        if acting_account not in match.required_confirmers:
            raise UnauthorizedError(f"account {acting_account} is not asked to confirm match {match_id}")
        return match

    @staticmethod
    def _resolved(match: MatchRecord, action: Action) -> MatchRecord:
        """Same action as the one that resolved the match is a harmless retry."""
        if match.resolved_action is action:
            log.debug("match=%s already %s; returning record", match.id, match.status.value)
            return match
        raise AlreadyResolvedError(match)

    async def _record_partial_confirm(
        self, match: MatchRecord, acting_account: int, remaining: frozenset[int]
    ) -> MatchRecord:
        updated = replace(
            match,
            awaiting_confirmation_from=remaining,
            confirmed_by=match.confirmed_by | {acting_account},
            version=match.version + 1,
        )
        async with self.store.transaction() as conn:
            if not await self.store.update_match(updated, expected_version=match.version, conn=conn):
                raise StaleWriteError(f"match {match.id} moved past version {match.version}")
            await self.store.add_signature(conn, match.id, acting_account, Action.CONFIRM)
        log.info("Match #%s confirmed by %s; still awaiting %s", match.id, acting_account, sorted(remaining))
        return updated

    async def _emit(self, kind: EventType, match: MatchRecord, accounts: Iterable[int]) -> None:
        # the transition is already committed; a delivery failure must not undo it
        for uid in accounts:
            try:
                await self.notifier.emit(MatchEvent(kind, match.id, uid))
            except Exception:
                log.exception("Failed to emit %s for match=%s account=%s", kind.value, match.id, uid)
