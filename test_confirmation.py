"""Tests for the submit / confirm / reject workflow."""

from __future__ import annotations

import asyncio

import aiosqlite
import pytest

from shuttle_rank.config import Settings
from shuttle_rank.confirmation import ConfirmationService
from shuttle_rank.db import Store
from shuttle_rank.errors import (
    AlreadyResolvedError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from shuttle_rank.models import Action, Discipline, Gender, MatchStatus
from shuttle_rank.notify import EventType
from test_ratings import BumpingStore

WIN_A = [[21, 15], [21, 18]]
WIN_B = [[15, 21], [18, 21]]


def _ratings(store: Store, discipline: Discipline, *ids) -> dict[int, int]:
    accounts = asyncio.run(store.get_accounts(ids))
    return {uid: accounts[uid].rating(discipline) for uid in ids}


def _games(store: Store, *ids) -> dict[int, int]:
    accounts = asyncio.run(store.get_accounts(ids))
    return {uid: accounts[uid].games_played for uid in ids}


# ----------------------------------------
# submit
# ----------------------------------------


def test_submit_awaits_the_opposite_side(service, notifier, add_players):
    add_players(1, 2, 3, 4)
    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_A, "A", submitted_by=3))

    assert match.status is MatchStatus.PENDING
    assert match.awaiting_confirmation_from == frozenset({1, 2})
    assert match.discipline is Discipline.DOUBLES
    assert match.version == 1
    assert notifier.of(EventType.CONFIRMATION_REQUESTED) == [(match.id, 1), (match.id, 2)]
    assert asyncio.run(service.get_match(match.id)) == match


def test_submit_singles_awaits_the_opponent(service, notifier, add_players):
    add_players(1, 2)
    match = asyncio.run(service.submit(Discipline.SINGLES, [1], [2], WIN_A, "A", submitted_by=1))
    assert match.awaiting_confirmation_from == frozenset({2})
    assert [m.id for m in asyncio.run(service.pending_for(2))] == [match.id]
    assert asyncio.run(service.pending_for(1)) == []


def test_declared_winner_must_match_the_sets(service, notifier, add_players):
    add_players(1, 2)
    with pytest.raises(ValidationError):
        asyncio.run(service.submit("singles", [1], [2], WIN_B, "A", submitted_by=1))
    assert asyncio.run(service.pending_for(2)) == []
    assert notifier.events == []


@pytest.mark.parametrize(
    "discipline,side_a,side_b,sets,winner",
    [
        ("singles", [1, 2], [3], WIN_A, "A"),
        ("doubles", [1, 2], [2, 3], WIN_A, "A"),
        ("singles", [1], [2], [[21, 21]], "A"),
        ("singles", [1], [2], [[21, 19], [19, 21]], "A"),
        ("singles", [1], [2], [], "A"),
        ("singles", [1], [2], [[-3, 21]], "B"),
        ("singles", [1], ["2"], WIN_A, "A"),
        ("squash", [1], [2], WIN_A, "A"),
        ("singles", [1], [2], WIN_A, "C"),
        ("singles", 5, [2], WIN_A, "A"),
        ("singles", [1], None, WIN_A, "A"),
        ("singles", [1], [2], 7, "A"),
    ],
)
def test_invalid_submissions(service, add_players, discipline, side_a, side_b, sets, winner):
    add_players(1, 2, 3)
    with pytest.raises(ValidationError):
        asyncio.run(service.submit(discipline, side_a, side_b, sets, winner, submitted_by=1))


def test_submitter_must_have_played(service, add_players):
    add_players(1, 2, 3)
    with pytest.raises(UnauthorizedError):
        asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=3))


def test_unknown_participant_is_not_found(service, add_players):
    add_players(1)
    with pytest.raises(NotFoundError):
        asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))


def test_mixed_pairs_are_recorded_as_mixed(service, store, add_players):
    m, f = Gender.MALE, Gender.FEMALE
    add_players(1, 2, 3, 4, genders=[m, f, f, m])
    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_A, "A", submitted_by=1))
    assert match.discipline is Discipline.MIXED

    asyncio.run(service.confirm(match.id, 3))
    confirmed = asyncio.run(service.confirm(match.id, 4))
    assert confirmed.status is MatchStatus.CONFIRMED
    assert _ratings(store, Discipline.MIXED, 1, 2, 3, 4) == {1: 1016, 2: 1016, 3: 984, 4: 984}
    assert _ratings(store, Discipline.DOUBLES, 1, 3) == {1: 1000, 3: 1000}


def test_mixed_requested_for_same_gender_pairs_is_invalid(service, add_players):
    add_players(1, 2, 3, 4, genders=[Gender.MALE] * 4)
    with pytest.raises(ValidationError):
        asyncio.run(service.submit("mixed", [1, 2], [3, 4], WIN_A, "A", submitted_by=1))


def test_strict_scoring_rejects_unfinished_sets(store, notifier, add_players):
    add_players(1, 2)
    strict = ConfirmationService(store, notifier, Settings(scoring_strict=True))
    with pytest.raises(ValidationError):
        asyncio.run(strict.submit("singles", [1], [2], [[15, 10], [21, 3]], "A", submitted_by=1))
    match = asyncio.run(strict.submit("singles", [1], [2], [[21, 10], [30, 29]], "A", submitted_by=1))
    assert match.status is MatchStatus.PENDING


# ----------------------------------------
# confirm
# ----------------------------------------


def test_equal_singles_confirmation_moves_sixteen_points(service, store, notifier, add_players):
    add_players(1, 2)
    match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    confirmed = asyncio.run(service.confirm(match.id, 2))

    assert confirmed.status is MatchStatus.CONFIRMED
    assert confirmed.awaiting_confirmation_from == frozenset()
    assert confirmed.resolved_by == 2
    assert confirmed.rating_delta == {1: 16, 2: -16}
    assert _ratings(store, Discipline.SINGLES, 1, 2) == {1: 1016, 2: 984}

    accounts = asyncio.run(store.get_accounts([1, 2]))
    assert (accounts[1].games_played, accounts[1].games_won, accounts[1].win_rate) == (1, 1, 100.0)
    assert (accounts[2].games_played, accounts[2].games_won, accounts[2].win_rate) == (1, 0, 0.0)
    assert notifier.of(EventType.MATCH_CONFIRMED) == [(match.id, 1), (match.id, 2)]


def test_underdogs_winning_doubles_move_twenty_points(service, store, add_players, set_rating):
    add_players(1, 2, 3, 4)
    for uid, r in ((1, 1050), (2, 1050), (3, 950), (4, 950)):
        set_rating(uid, Discipline.DOUBLES, r)

    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_B, "B", submitted_by=3))
    first = asyncio.run(service.confirm(match.id, 1))
    assert first.status is MatchStatus.PENDING
    assert first.awaiting_confirmation_from == frozenset({2})
    assert _ratings(store, Discipline.DOUBLES, 1, 3) == {1: 1050, 3: 950}

    confirmed = asyncio.run(service.confirm(match.id, 2))
    assert confirmed.rating_delta == {1: -20, 2: -20, 3: 20, 4: 20}
    assert sum(confirmed.rating_delta.values()) == 0
    assert _ratings(store, Discipline.DOUBLES, 1, 2, 3, 4) == {1: 1030, 2: 1030, 3: 970, 4: 970}


def test_confirm_retry_is_idempotent(service, store, add_players):
    add_players(1, 2)
    match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    first = asyncio.run(service.confirm(match.id, 2))
    again = asyncio.run(service.confirm(match.id, 2))

    assert again == first
    assert _ratings(store, Discipline.SINGLES, 1, 2) == {1: 1016, 2: 984}
    assert _games(store, 1, 2) == {1: 1, 2: 1}


def test_partial_confirm_retry_returns_pending_record(service, store, add_players):
    add_players(1, 2, 3, 4)
    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_A, "A", submitted_by=1))
    first = asyncio.run(service.confirm(match.id, 3))
    again = asyncio.run(service.confirm(match.id, 3))

    assert again == first
    assert again.status is MatchStatus.PENDING
    assert again.confirmed_by == frozenset({3})
    assert [m.id for m in asyncio.run(service.pending_for(4))] == [match.id]
    assert asyncio.run(service.pending_for(3)) == []


@pytest.mark.parametrize("actor", [1, 2, 99])
def test_only_the_opposing_side_may_confirm(service, add_players, actor):
    add_players(1, 2, 3, 4)
    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_A, "A", submitted_by=1))
    with pytest.raises(UnauthorizedError):
        asyncio.run(service.confirm(match.id, actor))
    with pytest.raises(UnauthorizedError):
        asyncio.run(service.reject(match.id, actor))


def test_unknown_match_is_not_found(service):
    with pytest.raises(NotFoundError):
        asyncio.run(service.confirm(404, 1))
    with pytest.raises(NotFoundError):
        asyncio.run(service.reject(404, 1))


# ----------------------------------------
# reject
# ----------------------------------------


def test_single_reject_vetoes_doubles(service, store, notifier, add_players):
    add_players(1, 2, 3, 4)
    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_A, "A", submitted_by=1))
    asyncio.run(service.confirm(match.id, 3))
    rejected = asyncio.run(service.reject(match.id, 4, reason="  we won the second set  "))

    assert rejected.status is MatchStatus.REJECTED
    assert rejected.resolved_by == 4
    assert rejected.reject_reason == "we won the second set"
    assert rejected.rating_delta is None
    assert _games(store, 1, 2, 3, 4) == {1: 0, 2: 0, 3: 0, 4: 0}
    assert notifier.of(EventType.MATCH_REJECTED) == [(match.id, uid) for uid in (1, 2, 3, 4)]

    sigs = asyncio.run(store.get_signatures(match.id))
    assert [(s.user_id, s.decision) for s in sigs] == [(3, Action.CONFIRM), (4, Action.REJECT)]


def test_confirmer_cannot_reject_after_confirming(service, add_players):
    add_players(1, 2, 3, 4)
    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_A, "A", submitted_by=1))
    asyncio.run(service.confirm(match.id, 3))
    with pytest.raises(UnauthorizedError):
        asyncio.run(service.reject(match.id, 3))


def test_reject_then_confirm_is_already_resolved(service, store, add_players):
    add_players(1, 2, 3, 4)
    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_A, "A", submitted_by=1))
    asyncio.run(service.reject(match.id, 3))

    with pytest.raises(AlreadyResolvedError) as exc:
        asyncio.run(service.confirm(match.id, 4))
    assert exc.value.match.status is MatchStatus.REJECTED
    assert exc.value.match.resolved_by == 3
    assert _ratings(store, Discipline.DOUBLES, 1, 3) == {1: 1000, 3: 1000}


def test_reject_retry_returns_record(service, add_players):
    add_players(1, 2)
    match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    first = asyncio.run(service.reject(match.id, 2))
    assert asyncio.run(service.reject(match.id, 2)) == first


def test_reject_after_confirm_is_already_resolved(service, add_players):
    add_players(1, 2)
    match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    asyncio.run(service.confirm(match.id, 2))
    with pytest.raises(AlreadyResolvedError) as exc:
        asyncio.run(service.reject(match.id, 2))
    assert exc.value.match.status is MatchStatus.CONFIRMED


# ----------------------------------------
# concurrency
# ----------------------------------------


def test_racing_confirmers_apply_ratings_once(service, store, add_players):
    add_players(1, 2, 3, 4)
    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_A, "A", submitted_by=1))

    async def race():
        return await asyncio.gather(service.confirm(match.id, 3), service.confirm(match.id, 4))

    results = asyncio.run(race())
    assert MatchStatus.CONFIRMED in {r.status for r in results}

    final = asyncio.run(service.get_match(match.id))
    assert final.status is MatchStatus.CONFIRMED
    assert final.confirmed_by == frozenset({3, 4})
    assert _ratings(store, Discipline.DOUBLES, 1, 2, 3, 4) == {1: 1016, 2: 1016, 3: 984, 4: 984}
    assert _games(store, 1, 2, 3, 4) == {1: 1, 2: 1, 3: 1, 4: 1}


def test_confirm_racing_reject_in_doubles_ends_rejected(service, store, add_players):
    add_players(1, 2, 3, 4)
    match = asyncio.run(service.submit("doubles", [1, 2], [3, 4], WIN_A, "A", submitted_by=1))

    async def race():
        return await asyncio.gather(
            service.confirm(match.id, 3), service.reject(match.id, 4), return_exceptions=True
        )

    confirm_result, reject_result = asyncio.run(race())
    assert reject_result.status is MatchStatus.REJECTED
    assert isinstance(confirm_result, AlreadyResolvedError) or confirm_result.status is MatchStatus.PENDING
    assert asyncio.run(service.get_match(match.id)).status is MatchStatus.REJECTED
    assert _games(store, 1, 2, 3, 4) == {1: 0, 2: 0, 3: 0, 4: 0}


def test_final_confirm_racing_reject_resolves_once(service, store, add_players):
    add_players(1, 2)

    async def race(match_id):
        return await asyncio.gather(
            service.confirm(match_id, 2), service.reject(match_id, 2), return_exceptions=True
        )

    confirmed = 0
    for _ in range(10):
        match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
        confirm_result, reject_result = asyncio.run(race(match.id))
        final = asyncio.run(service.get_match(match.id))

        assert final.is_terminal
        assert (final.rating_delta is not None) == (final.status is MatchStatus.CONFIRMED)
        if final.status is MatchStatus.CONFIRMED:
            confirmed += 1
            assert confirm_result == final
            assert isinstance(reject_result, AlreadyResolvedError)
        else:
            assert reject_result == final
            assert isinstance(confirm_result, AlreadyResolvedError)
        assert sum(_ratings(store, Discipline.SINGLES, 1, 2).values()) == 2000

    assert _games(store, 1, 2) == {1: confirmed, 2: confirmed}


def test_lost_account_race_is_retried(tmp_path, notifier, add_players):
    store = BumpingStore(str(tmp_path / "race.sqlite"), bump_user=1, times=2)
    asyncio.run(store.init_db())
    asyncio.run(store.get_or_create_player(1, "P1"))
    asyncio.run(store.get_or_create_player(2, "P2"))
    service = ConfirmationService(store, notifier, Settings(max_apply_retries=3))

    match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    store.times = 2
    confirmed = asyncio.run(service.confirm(match.id, 2))
    assert confirmed.status is MatchStatus.CONFIRMED
    assert _ratings(store, Discipline.SINGLES, 1, 2) == {1: 1016, 2: 984}
    assert _games(store, 1, 2) == {1: 1, 2: 1}


def test_exhausted_retries_raise_conflict(tmp_path, notifier):
    class AlwaysStale(Store):
        async def update_match(self, record, expected_version, conn=None):
            return False

    store = AlwaysStale(str(tmp_path / "conflict.sqlite"))
    asyncio.run(store.init_db())
    asyncio.run(store.get_or_create_player(1, "P1"))
    asyncio.run(store.get_or_create_player(2, "P2"))
    service = ConfirmationService(store, notifier, Settings(max_apply_retries=2))

    match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    with pytest.raises(ConflictError):
        asyncio.run(service.confirm(match.id, 2))
    with pytest.raises(ConflictError):
        asyncio.run(service.reject(match.id, 2))

    assert asyncio.run(store.get_match(match.id)).status is MatchStatus.PENDING
    assert _games(store, 1, 2) == {1: 0, 2: 0}


# ----------------------------------------
# settings and emitters
# ----------------------------------------


def test_k_factor_is_per_discipline(store, notifier, add_players):
    add_players(1, 2)
    k = {Discipline.SINGLES: 16, Discipline.DOUBLES: 32, Discipline.MIXED: 32}
    service = ConfirmationService(store, notifier, Settings(k_factors=k))
    match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    assert asyncio.run(service.confirm(match.id, 2)).rating_delta == {1: 8, 2: -8}


def test_failing_emitter_does_not_undo_transitions(store, add_players):
    class Broken:
        async def emit(self, event):
            raise RuntimeError("mail server down")

    add_players(1, 2)
    service = ConfirmationService(store, Broken(), Settings())
    match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    confirmed = asyncio.run(service.confirm(match.id, 2))
    assert confirmed.status is MatchStatus.CONFIRMED
    assert asyncio.run(store.get_match(match.id)).status is MatchStatus.CONFIRMED
    assert _ratings(store, Discipline.SINGLES, 1, 2) == {1: 1016, 2: 984}


def test_pending_for_is_newest_first(service, add_players):
    add_players(1, 2, 3)
    older = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    newer = asyncio.run(service.submit("singles", [3], [2], WIN_B, "B", submitted_by=3))
    assert [m.id for m in asyncio.run(service.pending_for(2))] == [newer.id, older.id]


def test_signature_trail_survives_in_store(service, store, add_players):
    add_players(1, 2)
    match = asyncio.run(service.submit("singles", [1], [2], WIN_A, "A", submitted_by=1))
    asyncio.run(service.confirm(match.id, 2))

    async def count():
        async with aiosqlite.connect(store.path) as db:
            async with db.execute("SELECT COUNT(*) FROM match_signatures WHERE match_id = ?", (match.id,)) as cur:
                return (await cur.fetchone())[0]

    assert asyncio.run(count()) == 1
