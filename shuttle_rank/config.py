"""Environment-driven settings (.env is loaded if present)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

from .logging_config import get_logger
from .models import Discipline

log = get_logger(__name__)


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("Invalid %s value %r, using default %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        log.warning("%s must be >= %s, using default %s", name, minimum, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    database_path: str = "./shuttle_rank.sqlite"
    k_factors: Mapping[Discipline, int] = field(
        default_factory=lambda: {d: 32 for d in Discipline}
    )
    default_rating: int = 1000
    max_apply_retries: int = 5
    scoring_strict: bool = False
    points_target: int = 21
    points_win_by: int = 2
    points_cap: int | None = None
    discord_token: str | None = None
    test_mode: bool = False
    test_guild_id: int | None = None
    emoji_approve: str = "✅"
    emoji_reject: str = "❌"

    def k_factor(self, discipline: Discipline) -> int:
        return self.k_factors.get(discipline, 32)

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        test_mode = _flag("TEST_MODE")
        k_default = _int("K_FACTOR", 32, minimum=1)
        k_factors = {
            d: _int(f"K_FACTOR_{d.name}", k_default, minimum=1) for d in Discipline
        }
        cap = os.getenv("POINTS_CAP")
        return cls(
            database_path=os.getenv(
                "DATABASE_PATH",
                "./test_shuttle_rank.sqlite" if test_mode else "./shuttle_rank.sqlite",
            ),
            k_factors=k_factors,
            default_rating=_int("DEFAULT_RATING", 1000, minimum=1),
            max_apply_retries=_int("MAX_APPLY_RETRIES", 5, minimum=1),
            scoring_strict=_flag("SCORING_STRICT"),
            points_target=_int("POINTS_TARGET_DEFAULT", 21, minimum=1),
            points_win_by=_int("POINTS_WIN_BY", 2, minimum=1),
            points_cap=int(cap) if cap and cap.strip().isdigit() else None,
            discord_token=os.getenv("DISCORD_TOKEN"),
            test_mode=test_mode,
            test_guild_id=_int("TEST_GUILD_ID", 0) or None,
            emoji_approve=os.getenv("EMOJI_APPROVE", "✅"),
            emoji_reject=os.getenv("EMOJI_REJECT", "❌"),
        )
