"""Rank engine — leaderboard position by best score.

Rank is one plus the number of accounts with a strictly better (smaller)
best score, so tied scores share a rank. Accounts without a best score are
unranked.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .utils import require_identity

if TYPE_CHECKING:
    from .config import GameConfig
    from .database import GameDatabase


class RankEngine:
    """Derives ranks and the live leaderboard from the Account Store."""

    def __init__(
        self,
        config: GameConfig,
        database: GameDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    async def get_rank(self, account_id: int | None) -> int | None:
        """Rank of an account, or ``None`` if it has no best score."""
        return await self._db.get_rank(require_identity(account_id))

    async def rank_for_score(self, best_score: float | None) -> int | None:
        return await self._db.get_rank_for_score(best_score)

    async def get_leaderboard(self, limit: int | None = None) -> list[dict]:
        """Top named accounts by best score, with their rank.

        Returns list of dicts with: rank, account_id, nickname, best_score.
        """
        size = self._config.leaderboard.size
        limit = size if limit is None else max(1, min(limit, size))
        rows = await self._db.get_leaderboard(limit)

        # Unnamed accounts still count toward rank, so ask the store for the
        # first row of each score group instead of numbering positions.
        ranked: list[dict] = []
        prev_score: float | None = None
        rank: int | None = None
        for row in rows:
            if row["best_score"] != prev_score:
                rank = await self._db.get_rank_for_score(row["best_score"])
                prev_score = row["best_score"]
            ranked.append({"rank": rank, **row})
        return ranked
