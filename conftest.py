"""Shared fixtures: a throwaway SQLite store per test and a recording event sink."""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import pytest

from shuttle_rank.config import Settings
from shuttle_rank.confirmation import ConfirmationService
from shuttle_rank.db import Store
from shuttle_rank.models import Discipline


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def emit(self, event) -> None:
        self.events.append(event)

    def of(self, kind) -> list[tuple[int, int]]:
        return [(e.match_id, e.account_id) for e in self.events if e.type is kind]


@pytest.fixture
def store(tmp_path: Path) -> Store:
    s = Store(str(tmp_path / "shuttle_rank_test.sqlite"))
    asyncio.run(s.init_db())
    return s


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(store: Store, notifier: RecordingNotifier) -> ConfirmationService:
    return ConfirmationService(store, notifier, Settings())


@pytest.fixture
def add_players(store: Store):
    """add_players(1, 2, genders=[...]) creates accounts at the default ratings."""

    def _add(*ids, genders=None):
        async def go():
            for i, uid in enumerate(ids):
                await store.get_or_create_player(uid, f"Player{uid}", genders[i] if genders else None)

        asyncio.run(go())

    return _add


@pytest.fixture
def set_rating(store: Store):
    """Overwrite one stored rating without touching counters or version."""

    def _set(user_id: int, discipline: Discipline, value: int):
        async def go():
            async with aiosqlite.connect(store.path) as db:
                await db.execute(
                    f"UPDATE players SET rating_{discipline.value} = ? WHERE user_id = ?", (value, user_id)
                )
                await db.commit()

        asyncio.run(go())

    return _set
