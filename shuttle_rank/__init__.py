"""Shuttle Rank core package.

Exports commonly used modules for convenience.
"""

from . import db as db
from . import mmr as mmr
from . import rules as rules
from . import logging_config as logging_config
from .confirmation import ConfirmationService
from .models import Account, Discipline, MatchRecord, MatchStatus, SetScore

__all__ = [
    "db",
    "mmr",
    "rules",
    "logging_config",
    "ConfirmationService",
    "Account",
    "Discipline",
    "MatchRecord",
    "MatchStatus",
    "SetScore",
]
