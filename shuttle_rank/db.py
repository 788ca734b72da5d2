"""SQLite persistence for matches, signatures and player rating accounts.

Every write that touches a match is conditional on the record's `version` and
on it still being pending; callers learn from the boolean result whether they
won the race. Rating columns on `players` are only written through
`apply_rating_change`, which is conditional on the account's `version`.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional

import aiosqlite

from .errors import NotFoundError
from .logging_config import get_logger
from .models import (
    Account,
    Action,
    Discipline,
    Gender,
    MatchRecord,
    MatchStatus,
    SetScore,
    Signature,
)

log = get_logger(__name__)

_RATING_COLUMNS = {
    Discipline.SINGLES: "rating_singles",
    Discipline.DOUBLES: "rating_doubles",
    Discipline.MIXED: "rating_mixed",
}

_GAMES_COLUMNS = {
    Discipline.SINGLES: "games_singles",
    Discipline.DOUBLES: "games_doubles",
    Discipline.MIXED: "games_mixed",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ids_to_csv(ids: Iterable[int]) -> str:
    return ",".join(map(str, ids))


def _csv_to_ids(text: Optional[str]) -> tuple[int, ...]:
    return tuple(int(x) for x in (text or "").split(",") if x)


def _dt(text: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(text) if text else None


def _like_params(user_id: int) -> tuple[str, str, str, str]:
    # ids are stored as CSV, so match first, middle, last and sole positions
    return (f"{user_id},%", f"%,{user_id},%", f"%,{user_id}", str(user_id))


def _row_to_match(row) -> MatchRecord:
    delta = json.loads(row["rating_delta"]) if row["rating_delta"] else None
    return MatchRecord(
        id=row["id"],
        discipline=Discipline(row["discipline"]),
        side_a=_csv_to_ids(row["team_a"]),
        side_b=_csv_to_ids(row["team_b"]),
        set_scores=tuple(SetScore(int(s["A"]), int(s["B"])) for s in json.loads(row["set_scores"])),
        declared_winner=row["winner"],
        status=MatchStatus(row["status"]),
        submitted_by=row["reporter"],
        awaiting_confirmation_from=frozenset(_csv_to_ids(row["awaiting"])),
        confirmed_by=frozenset(_csv_to_ids(row["confirmed_by"])),
        resolved_by=row["resolved_by"],
        resolved_action=Action(row["resolved_action"]) if row["resolved_action"] else None,
        resolved_at=_dt(row["resolved_at"]),
        reject_reason=row["reject_reason"],
        rating_delta={int(k): int(v) for k, v in delta.items()} if delta is not None else None,
        created_at=_dt(row["created_at"]),
        version=row["version"],
    )


def _row_to_account(row) -> Account:
    return Account(
        user_id=row["user_id"],
        username=row["username"],
        gender=Gender(row["gender"]) if row["gender"] else None,
        ratings={d: int(row[col]) for d, col in _RATING_COLUMNS.items()},
        games_played=row["games_played"],
        games_won=row["games_won"],
        win_rate=float(row["win_rate"]),
        version=row["version"],
        discipline_games={d: row[col] for d, col in _GAMES_COLUMNS.items()},
    )


class Store:
    """Match record store and account store over one SQLite file."""

    def __init__(self, path: str = "shuttle_rank.sqlite", default_rating: int = 1000, timeout: float = 5.0):
        self.path = path
        self.default_rating = default_rating
        self.timeout = timeout

    def _connect(self, **kwargs) -> aiosqlite.Connection:
        return aiosqlite.connect(self.path, timeout=self.timeout, **kwargs)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Short write transaction; everything inside commits or nothing does."""
        async with self._connect(isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def init_db(self) -> None:
        """Create tables and indexes if they do not exist."""
        async with self._connect() as db:
            await db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS players (
                    user_id INTEGER PRIMARY KEY,
                    username TEXT NOT NULL,
                    gender TEXT CHECK(gender IN ('male','female')),
                    rating_singles INTEGER NOT NULL DEFAULT {int(self.default_rating)},
                    rating_doubles INTEGER NOT NULL DEFAULT {int(self.default_rating)},
                    rating_mixed INTEGER NOT NULL DEFAULT {int(self.default_rating)},
                    games_played INTEGER NOT NULL DEFAULT 0,
                    games_won INTEGER NOT NULL DEFAULT 0,
                    games_singles INTEGER NOT NULL DEFAULT 0,
                    games_doubles INTEGER NOT NULL DEFAULT 0,
                    games_mixed INTEGER NOT NULL DEFAULT 0,
                    win_rate REAL NOT NULL DEFAULT 0,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS matches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    discipline TEXT CHECK(discipline IN ('singles','doubles','mixed')) NOT NULL,
                    team_a TEXT NOT NULL,
                    team_b TEXT NOT NULL,
                    set_scores TEXT NOT NULL,
                    winner TEXT CHECK(winner IN ('A','B')) NOT NULL,
                    status TEXT CHECK(status IN ('pending','confirmed','rejected')) NOT NULL DEFAULT 'pending',
                    reporter INTEGER NOT NULL,
                    awaiting TEXT NOT NULL DEFAULT '',
                    confirmed_by TEXT NOT NULL DEFAULT '',
                    resolved_by INTEGER,
                    resolved_action TEXT CHECK(resolved_action IN ('confirm','reject')),
                    resolved_at TEXT,
                    reject_reason TEXT,
                    rating_delta TEXT,
                    created_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_matches_status ON matches(status)")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS match_signatures (
                    match_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    decision TEXT CHECK(decision IN ('confirm','reject')) NOT NULL,
                    reason TEXT,
                    signed_at TEXT NOT NULL,
                    PRIMARY KEY(match_id, user_id)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS verification_messages (
                    message_id INTEGER PRIMARY KEY,
                    match_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now'))
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_verif_match ON verification_messages(match_id)")
            await db.commit()
        log.debug("Initialized database at %s", self.path)

    # ----------------------------------------
    # Accounts
    # ----------------------------------------

    async def get_or_create_player(self, user_id: int, username: str, gender: Gender | None = None) -> Account:
        """Get an existing player account or create one at the default ratings."""
        now = utcnow().isoformat()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                """
                INSERT INTO players (user_id, username, gender, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO NOTHING
                """,
                (user_id, username, gender.value if gender else None, now, now),
            )
            await db.commit()
            async with db.execute("SELECT * FROM players WHERE user_id = ?", (user_id,)) as cursor:
                row = await cursor.fetchone()
        account = _row_to_account(row)
        log.debug("get_or_create_player user_id=%s version=%s", user_id, account.version)
        return account

    async def update_profile(self, user_id: int, username: str, gender: Gender | None) -> None:
        """Change display name and gender. Ratings are not touched."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE players SET username = ?, gender = ?, updated_at = ? WHERE user_id = ?",
                (username, gender.value if gender else None, utcnow().isoformat(), user_id),
            )
            await db.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"account {user_id} not found")
        log.debug("update_profile user_id=%s gender=%s", user_id, gender)

    async def get_account(self, user_id: int) -> Account | None:
        accounts = await self.get_accounts([user_id])
        return accounts.get(user_id)

    async def get_accounts(self, user_ids: Iterable[int]) -> dict[int, Account]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(f"SELECT * FROM players WHERE user_id IN ({placeholders})", ids) as cursor:
                rows = await cursor.fetchall()
        out = {row["user_id"]: _row_to_account(row) for row in rows}
        log.debug("get_accounts ids=%s -> found=%s", ids, len(out))
        return out

    async def read_rating(self, user_id: int, discipline: Discipline) -> int:
        account = await self.get_account(user_id)
        if account is None:
            raise NotFoundError(f"account {user_id} not found")
        return account.rating(discipline)

    async def apply_rating_change(
        self,
        user_id: int,
        discipline: Discipline,
        delta: int,
        won: bool,
        expected_version: int,
        conn: aiosqlite.Connection | None = None,
    ) -> bool:
        """Add `delta` and count the game, only if the account is still at `expected_version`.

        win_rate is recomputed from the new counters on every game.
        """
        if conn is None:
            async with self.transaction() as conn:
                return await self.apply_rating_change(user_id, discipline, delta, won, expected_version, conn)
        col = _RATING_COLUMNS[discipline]
        games_col = _GAMES_COLUMNS[discipline]
        won_inc = 1 if won else 0
        cursor = await conn.execute(
            f"""
            UPDATE players
            SET {col} = {col} + ?,
                games_played = games_played + 1,
                {games_col} = {games_col} + 1,
                games_won = games_won + ?,
                win_rate = CAST(games_won + ? AS REAL) / (games_played + 1) * 100,
                version = version + 1,
                updated_at = ?
            WHERE user_id = ? AND version = ?
            """,
            (delta, won_inc, won_inc, utcnow().isoformat(), user_id, expected_version),
        )
        applied = cursor.rowcount == 1
        log.debug(
            "apply_rating_change user=%s %s delta=%+d won=%s expected_version=%s -> %s",
            user_id, discipline.value, delta, won, expected_version, applied,
        )
        return applied

    async def top_players(self, discipline: Discipline, limit: int = 10) -> list[Account]:
        """Accounts that have played `discipline`, ordered by their rating in it."""
        col = _RATING_COLUMNS[discipline]
        games_col = _GAMES_COLUMNS[discipline]
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT * FROM players WHERE {games_col} > 0 ORDER BY {col} DESC, user_id LIMIT ?",
                (limit,),
            ) as cursor:
                rows = await cursor.fetchall()
        out = [_row_to_account(r) for r in rows]
        log.debug("top_players discipline=%s limit=%s -> %s", discipline.value, limit, len(out))
        return out

    # ----------------------------------------
    # Matches
    # ----------------------------------------

    async def insert_match(self, record: MatchRecord) -> MatchRecord:
        """Persist a new pending record and return it with its assigned id."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO matches (discipline, team_a, team_b, set_scores, winner, status, reporter,
                                     awaiting, confirmed_by, created_at, version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.discipline.value,
                    _ids_to_csv(record.side_a),
                    _ids_to_csv(record.side_b),
                    json.dumps([s.as_dict() for s in record.set_scores]),
                    record.declared_winner,
                    record.status.value,
                    record.submitted_by,
                    _ids_to_csv(sorted(record.awaiting_confirmation_from)),
                    _ids_to_csv(sorted(record.confirmed_by)),
                    record.created_at.isoformat(),
                    record.version,
                ),
            )
            await db.commit()
        match_id = cursor.lastrowid
        log.debug(
            "Inserted pending match id=%s %s A=%s B=%s reporter=%s",
            match_id, record.discipline.value, record.side_a, record.side_b, record.submitted_by,
        )
        return replace(record, id=match_id)

    async def get_match(self, match_id: int) -> MatchRecord | None:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM matches WHERE id = ?", (match_id,)) as cursor:
                row = await cursor.fetchone()
        log.debug("Fetched match id=%s -> found=%s", match_id, bool(row))
        return _row_to_match(row) if row else None

    async def update_match(
        self,
        record: MatchRecord,
        expected_version: int,
        conn: aiosqlite.Connection | None = None,
    ) -> bool:
        """Write `record` over a still-pending row at `expected_version`.

        Terminal rows never match the condition, so a match resolves at most once.
        """
        if conn is None:
            async with self.transaction() as conn:
                return await self.update_match(record, expected_version, conn)
        cursor = await conn.execute(
            """
            UPDATE matches
            SET status = ?, awaiting = ?, confirmed_by = ?, resolved_by = ?, resolved_action = ?,
                resolved_at = ?, reject_reason = ?, rating_delta = ?, version = ?
            WHERE id = ? AND version = ? AND status = 'pending'
            """,
            (
                record.status.value,
                _ids_to_csv(sorted(record.awaiting_confirmation_from)),
                _ids_to_csv(sorted(record.confirmed_by)),
                record.resolved_by,
                record.resolved_action.value if record.resolved_action else None,
                record.resolved_at.isoformat() if record.resolved_at else None,
                record.reject_reason,
                json.dumps({str(k): v for k, v in record.rating_delta.items()})
                if record.rating_delta is not None
                else None,
                record.version,
                record.id,
                expected_version,
            ),
        )
        updated = cursor.rowcount == 1
        log.debug(
            "update_match id=%s status=%s expected_version=%s -> %s",
            record.id, record.status.value, expected_version, updated,
        )
        return updated

    async def pending_for(self, user_id: int) -> list[MatchRecord]:
        """Pending matches still waiting on `user_id`, newest first."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT * FROM matches
                WHERE status = 'pending' AND (
                    awaiting LIKE ? OR awaiting LIKE ? OR awaiting LIKE ? OR awaiting = ?
                )
                ORDER BY id DESC
                """,
                _like_params(user_id),
            ) as cursor:
                rows = await cursor.fetchall()
        out = [m for m in map(_row_to_match, rows) if user_id in m.awaiting_confirmation_from]
        log.debug("Pending matches for user=%s -> %s", user_id, len(out))
        return out

    async def confirmed_for(self, user_id: int, since: datetime, until: datetime) -> list[MatchRecord]:
        """Confirmed matches of `user_id` resolved in [since, until), newest first."""
        like = _like_params(user_id)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT * FROM matches
                WHERE status = 'confirmed' AND resolved_at >= ? AND resolved_at < ? AND (
                    team_a LIKE ? OR team_a LIKE ? OR team_a LIKE ? OR team_a = ? OR
                    team_b LIKE ? OR team_b LIKE ? OR team_b LIKE ? OR team_b = ?
                )
                ORDER BY resolved_at DESC
                """,
                (since.isoformat(), until.isoformat(), *like, *like),
            ) as cursor:
                rows = await cursor.fetchall()
        out = [m for m in map(_row_to_match, rows) if user_id in m.participants]
        log.debug("Confirmed matches for user=%s since=%s -> %s", user_id, since.date(), len(out))
        return out

    # ----------------------------------------
    # Signatures (audit trail of confirm/reject)
    # ----------------------------------------

    async def add_signature(
        self,
        conn: aiosqlite.Connection,
        match_id: int,
        user_id: int,
        decision: Action,
        reason: str | None = None,
    ) -> None:
        await conn.execute(
            """
            INSERT INTO match_signatures (match_id, user_id, decision, reason, signed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (match_id, user_id, decision.value, reason, utcnow().isoformat()),
        )
        log.debug("Signature recorded match=%s user=%s decision=%s", match_id, user_id, decision.value)

    async def get_signatures(self, match_id: int) -> list[Signature]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM match_signatures WHERE match_id = ? ORDER BY signed_at", (match_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        out = [
            Signature(r["match_id"], r["user_id"], Action(r["decision"]), r["reason"], r["signed_at"])
            for r in rows
        ]
        log.debug("Fetched %s signatures for match=%s", len(out), match_id)
        return out

    # ----------------------------------------
    # Verification prompts delivered over Discord
    # ----------------------------------------

    async def record_verification_message(self, message_id: int, match_id: int, user_id: int) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO verification_messages (message_id, match_id, user_id)
                VALUES (?, ?, ?)
                """,
                (message_id, match_id, user_id),
            )
            await db.commit()
        log.debug("Recorded verification_message id=%s match=%s user=%s", message_id, match_id, user_id)

    async def get_verification_message(self, message_id: int) -> dict | None:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM verification_messages WHERE message_id = ?", (message_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return dict(row) if row else None

    async def delete_verification_messages(self, match_id: int) -> None:
        """Drop every prompt for a match once it is resolved."""
        async with self._connect() as db:
            await db.execute("DELETE FROM verification_messages WHERE match_id = ?", (match_id,))
            await db.commit()
        log.debug("Deleted verification_messages for match=%s", match_id)
