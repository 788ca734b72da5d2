"""Match events and the emitters that deliver them.

The engine only promises to call `emit` once per affected account after a
state change has been committed. Delivery, ordering and retries belong to the
emitter.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Protocol

import discord

from . import fmt
from .logging_config import get_logger

if TYPE_CHECKING:
    from .db import Store

log = get_logger(__name__)


class EventType(str, Enum):
    CONFIRMATION_REQUESTED = "confirmation_requested"
    MATCH_CONFIRMED = "match_confirmed"
    MATCH_REJECTED = "match_rejected"


@dataclass(frozen=True)
class MatchEvent:
    type: EventType
    match_id: int
    account_id: int


class Notifier(Protocol):
    async def emit(self, event: MatchEvent) -> None: ...


class LogNotifier:
    """Writes every event to the log; the default when nothing else is wired."""

    async def emit(self, event: MatchEvent) -> None:
        log.info("event %s match=%s account=%s", event.type.value, event.match_id, event.account_id)


class FanoutNotifier:
    """Sends each event to several emitters; one failing does not stop the rest."""

    def __init__(self, notifiers: Iterable[Notifier]):
        self.notifiers = list(notifiers)

    async def emit(self, event: MatchEvent) -> None:
        for n in self.notifiers:
            try:
                await n.emit(event)
            except Exception:
                log.exception("%s failed to emit %s for match=%s", type(n).__name__, event.type.value, event.match_id)


class DiscordNotifier:
    """Direct-messages the affected account through a discord.py client.

    Confirmation requests get approve/reject reactions and are recorded in
    `verification_messages` so a reaction can be mapped back to the match.
    """

    def __init__(
        self,
        client: discord.Client,
        store: "Store",
        emoji_approve: str = "✅",
        emoji_reject: str = "❌",
    ):
        self.client = client
        self.store = store
        self.emoji_approve = emoji_approve
        self.emoji_reject = emoji_reject

    async def emit(self, event: MatchEvent) -> None:
        match = await self.store.get_match(event.match_id)
        if match is None:
            log.error("Notify failed: match not found id=%s", event.match_id)
            return

        if event.type is EventType.CONFIRMATION_REQUESTED:
            text = fmt.confirmation_request(match, self.emoji_approve, self.emoji_reject)
        else:
            # resolved; outstanding prompts must no longer map to the match
            await self.store.delete_verification_messages(match.id)
            if event.type is EventType.MATCH_CONFIRMED:
                text = fmt.confirmed_notice(match, event.account_id)
            else:
                text = fmt.rejected_notice(match)

        try:
            user = await self.client.fetch_user(event.account_id)
            dm = await user.send(text, allowed_mentions=discord.AllowedMentions.none())
        except discord.Forbidden:
            log.warning("Cannot DM user=%s for match=%s (DMs closed)", event.account_id, event.match_id)
            return
        except discord.NotFound:
            log.warning("Unknown Discord user=%s for match=%s", event.account_id, event.match_id)
            return

        if event.type is EventType.CONFIRMATION_REQUESTED:
            await self.store.record_verification_message(dm.id, match.id, event.account_id)
            try:
                await dm.add_reaction(self.emoji_approve)
                await dm.add_reaction(self.emoji_reject)
            except discord.HTTPException:
                log.debug("Could not add reactions to DM for match=%s", match.id, exc_info=True)
        log.debug("DM sent type=%s match=%s user=%s", event.type.value, match.id, event.account_id)
