# app.py
# Discord badminton bot: report matches, opponents confirm or reject, ELO on confirmation

from __future__ import annotations

import discord
from discord import app_commands

from shuttle_rank import fmt, rules
from shuttle_rank.config import Settings
from shuttle_rank.confirmation import ConfirmationService
from shuttle_rank.db import Store
from shuttle_rank.errors import MatchError
from shuttle_rank.logging_config import get_logger, setup_logging
from shuttle_rank.models import Discipline, Gender, MatchRecord, MatchStatus
from shuttle_rank.notify import DiscordNotifier, FanoutNotifier, LogNotifier

# --- Env / Config ---
settings = Settings.from_env()
setup_logging(mode="test" if settings.test_mode else None)
log = get_logger("shuttle_rank.app")

ALLOWED_MENTIONS = discord.AllowedMentions(users=True, roles=False, everyone=False)

# Intents
intents = discord.Intents.none()
intents.guilds = True
intents.reactions = True   # for on_raw_reaction_add
intents.dm_reactions = True

# Discord client + tree
bot = discord.Client(intents=intents)
tree = app_commands.CommandTree(bot)

store = Store(settings.database_path, default_rating=settings.default_rating)
service = ConfirmationService(
    store,
    FanoutNotifier([
        LogNotifier(),
        DiscordNotifier(bot, store, settings.emoji_approve, settings.emoji_reject),
    ]),
    settings,
)

WINNER_CHOICES = [
    app_commands.Choice(name="Side A", value="A"),
    app_commands.Choice(name="Side B", value="B"),
]


# --- Helpers ---
def _display(u: discord.abc.User) -> str:
    return (getattr(u, "display_name", None) or u.name)[:60]


async def _ensure_players(*users: discord.abc.User) -> None:
    """Everyone named in a report gets an account at the default ratings."""
    for u in users:
        await store.get_or_create_player(u.id, _display(u))


async def _reply(inter: discord.Interaction, text: str) -> None:
    if inter.response.is_done():
        await inter.followup.send(text, ephemeral=True, allowed_mentions=ALLOWED_MENTIONS)
    else:
        await inter.response.send_message(text, ephemeral=True, allowed_mentions=ALLOWED_MENTIONS)


async def _report(
    inter: discord.Interaction,
    discipline: Discipline,
    side_a: list[discord.abc.User],
    side_b: list[discord.abc.User],
    scores: str,
    winner: str,
) -> None:
    await inter.response.defer(ephemeral=True)
    try:
        sets = rules.parse_set_scores(scores)
        await _ensure_players(*side_a, *side_b)
        match = await service.submit(
            discipline,
            [u.id for u in side_a],
            [u.id for u in side_b],
            sets,
            winner,
            submitted_by=inter.user.id,
        )
    except MatchError as e:
        log.info("Report by %s refused: %s", inter.user.id, e)
        return await _reply(inter, fmt.error_message(e))

    waiting = " ".join(fmt.mention(uid) for uid in sorted(match.awaiting_confirmation_from))
    await _reply(
        inter,
        f"{fmt.bold(f'Match #{match.id} created')} ({match.discipline.value}).\n"
        f"{fmt.match_line(match)}\nWaiting for: {waiting}",
    )


async def _latest_pending(user_id: int) -> MatchRecord | None:
    matches = await service.pending_for(user_id)
    return matches[0] if matches else None


async def _resolve(user_id: int, match_id: int, approve: bool, reason: str | None = None) -> str:
    try:
        if approve:
            match = await service.confirm(match_id, user_id)
        else:
            match = await service.reject(match_id, user_id, reason)
    except MatchError as e:
        log.info("%s of match=%s by %s refused: %s", "confirm" if approve else "reject", match_id, user_id, e)
        return fmt.error_message(e)

    if match.status is MatchStatus.PENDING:
        left = " ".join(fmt.mention(uid) for uid in sorted(match.awaiting_confirmation_from))
        return f"Confirmation recorded for Match #{match.id}. Still waiting for: {left}"
    if match.rating_delta:
        return f"{fmt.bold(f'Match #{match.id} confirmed.')} Your rating: {fmt.code(fmt.signed(match.rating_delta.get(user_id, 0)))}"
    return f"{fmt.bold(f'Match #{match.id} {match.status.value}.')}"


# --- Discord events ---
@bot.event
async def on_ready():
    await store.init_db()

    # Sync commands
    if settings.test_mode and settings.test_guild_id:
        await tree.sync(guild=discord.Object(id=settings.test_guild_id))
        log.info("Commands synced to test guild %s", settings.test_guild_id)
    else:
        await tree.sync()
        log.info("Commands synced globally")

    status = "Badminton 🏸 [TEST MODE]" if settings.test_mode else "Badminton 🏸"
    await bot.change_presence(activity=discord.Game(name=status))
    log.info("Bot ready as %s | guilds=%s | DB=%s", bot.user, len(bot.guilds), settings.database_path)


# Reaction-based confirmation
@bot.event
async def on_raw_reaction_add(payload: discord.RawReactionActionEvent):
    if not bot.user or payload.user_id == bot.user.id:
        return

    row = await store.get_verification_message(payload.message_id)
    if not row or payload.user_id != row["user_id"]:
        return

    emoji = str(payload.emoji)
    if emoji == settings.emoji_approve:
        approve = True
    elif emoji == settings.emoji_reject:
        approve = False
    else:
        return

    text = await _resolve(payload.user_id, row["match_id"], approve)
    try:
        ch = await bot.fetch_channel(payload.channel_id)
        msg = await ch.fetch_message(payload.message_id)
        await msg.reply(text, mention_author=False, allowed_mentions=ALLOWED_MENTIONS)
    except discord.HTTPException:
        log.debug("Could not reply to reaction on message=%s", payload.message_id, exc_info=True)


# --- Commands ---
@tree.command(name="register", description="Create your player profile (gender is used for mixed doubles)")
@app_commands.describe(gender="Used to recognise mixed doubles pairs")
@app_commands.choices(gender=[
    app_commands.Choice(name="male", value="male"),
    app_commands.Choice(name="female", value="female"),
])
async def register(inter: discord.Interaction, gender: str | None = None):
    name = _display(inter.user)
    await store.get_or_create_player(inter.user.id, name)
    await store.update_profile(inter.user.id, name, Gender(gender) if gender else None)
    await inter.response.send_message(
        f"{fmt.bold('Registered.')} Name: {fmt.code(name)} · Gender: {fmt.code(gender or 'not set')}",
        ephemeral=True,
    )


@tree.command(name="report_singles", description="Report a singles match for your opponent to confirm")
@app_commands.describe(a="Player A", b="Player B", scores="Set scores A-B, e.g. 21-19 18-21 21-15", winner="Winning side")
@app_commands.choices(winner=WINNER_CHOICES)
async def report_singles(inter: discord.Interaction, a: discord.User, b: discord.User, scores: str, winner: str):
    await _report(inter, Discipline.SINGLES, [a], [b], scores, winner)


@tree.command(name="report_doubles", description="Report a 2v2 match for the other side to confirm")
@app_commands.describe(
    a1="Side A - Player 1", a2="Side A - Player 2",
    b1="Side B - Player 1", b2="Side B - Player 2",
    scores="Set scores A-B, e.g. 21-19 21-17",
    winner="Winning side",
    mixed="Report as mixed doubles (detected from profiles otherwise)",
)
@app_commands.choices(winner=WINNER_CHOICES)
async def report_doubles(
    inter: discord.Interaction,
    a1: discord.User, a2: discord.User,
    b1: discord.User, b2: discord.User,
    scores: str,
    winner: str,
    mixed: bool = False,
):
    discipline = Discipline.MIXED if mixed else Discipline.DOUBLES
    await _report(inter, discipline, [a1, a2], [b1, b2], scores, winner)


@tree.command(name="confirm", description="Confirm a reported match")
@app_commands.describe(match_id="Match ID (optional; defaults to your latest pending match)")
async def confirm(inter: discord.Interaction, match_id: int | None = None):
    await inter.response.defer(ephemeral=True)
    if match_id is None:
        latest = await _latest_pending(inter.user.id)
        if latest is None:
            return await _reply(inter, "No pending matches to confirm.")
        match_id = latest.id
    await _reply(inter, await _resolve(inter.user.id, match_id, approve=True))


@tree.command(name="reject", description="Reject a reported match")
@app_commands.describe(match_id="Match ID", reason="Why the result is wrong (optional)")
async def reject(inter: discord.Interaction, match_id: int, reason: str | None = None):
    await inter.response.defer(ephemeral=True)
    await _reply(inter, await _resolve(inter.user.id, match_id, approve=False, reason=reason))


@tree.command(name="pending", description="List matches awaiting your confirmation")
async def pending(inter: discord.Interaction):
    await inter.response.defer(ephemeral=True)
    matches = await service.pending_for(inter.user.id)
    if not matches:
        return await _reply(inter, "You have no pending matches to confirm!")

    headers = ["Match", "Discipline", "Sets", "Winner"]
    rows = [[f"#{m.id}", m.discipline.value, fmt.score_sets(m.set_scores), m.declared_winner] for m in matches]
    hint = fmt.block("/confirm match_id:<ID>\n/reject match_id:<ID> reason:<optional>", "md")
    await _reply(inter, fmt.mono_table(rows, headers=headers) + "\n" + hint)


@tree.command(name="stats", description="Show player statistics")
@app_commands.describe(user="The user to show stats for (defaults to you)")
async def stats(inter: discord.Interaction, user: discord.User | None = None):
    user = user or inter.user
    account = await store.get_account(user.id)
    if account is None or account.games_played == 0:
        return await inter.response.send_message(f"📊 {_display(user)} has no games recorded yet.", ephemeral=True)

    lines = [f"## 📊 Stats for {_display(user)}"]
    for d in Discipline:
        lines.append(f"{fmt.bold(d.value.capitalize())}: {fmt.code(str(account.rating(d)))} ({account.games(d)} games)")
    lines.append(
        f"{fmt.bold('Record')}: {fmt.code(f'{account.games_won}-{account.games_played - account.games_won}')}"
        f" ({fmt.code(f'{account.win_rate:.1f}%')})"
    )
    await inter.response.send_message("\n".join(lines), ephemeral=True)


@tree.command(name="weekly", description="Confirmed matches this week (Sunday to Saturday)")
@app_commands.describe(user="The user to show (defaults to you)")
async def weekly(inter: discord.Interaction, user: discord.User | None = None):
    user = user or inter.user
    await inter.response.defer(ephemeral=True)
    games = await service.weekly_games(user.id)
    if not games:
        return await _reply(inter, f"{_display(user)} has no confirmed matches this week.")

    headers = ["Match", "Players", "Sets", "Result", "Δ"]
    rows = [
        [f"#{g['id']}", ", ".join(g["players"]), f"{g['scores'][0]}-{g['scores'][1]}", g["result"].upper(), fmt.signed(g["rating_delta"])]
        for g in games
    ]
    await _reply(inter, fmt.mono_table(rows, headers=headers))


@tree.command(name="leaderboard", description="Show top players by rating")
@app_commands.describe(discipline="Which rating to rank by", limit="How many players to show (1-50)")
@app_commands.choices(discipline=[app_commands.Choice(name=d.value, value=d.value) for d in Discipline])
async def leaderboard(
    inter: discord.Interaction,
    discipline: str = Discipline.SINGLES.value,
    limit: app_commands.Range[int, 1, 50] = 20,
):
    d = Discipline(discipline)
    rows = await store.top_players(d, int(limit))
    if not rows:
        return await inter.response.send_message("No players found yet.", ephemeral=True)

    lines = [f"**🏆 {d.value.capitalize()} Leaderboard (Top {int(limit)})**"]
    for i, p in enumerate(rows, start=1):
        lines.append(f"{i}. {fmt.mention(p.user_id)} · {p.username} · {p.rating(d)} ({p.games(d)} games)")
    await inter.response.send_message("\n".join(lines), allowed_mentions=discord.AllowedMentions.none())


# --- Entrypoint ---
if __name__ == "__main__":
    if not settings.discord_token:
        log.error("DISCORD_TOKEN not set. Put it in environment or .env")
        raise SystemExit(1)
    bot.run(settings.discord_token, log_handler=None)
