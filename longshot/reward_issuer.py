"""Reward issuer — idempotent coin credit for rewarded actions (ad views).

The client generates an opaque key per rewarded action. The first grant for
a key credits ``rewards.ad_reward`` coins; any later grant with the same key
raises DuplicateReward and credits nothing, so clients can retry freely.
A per-account cooldown limits how often grants land.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import Cooldown, DuplicateReward, NoRewardKey
from .utils import now_utc, require_identity

if TYPE_CHECKING:
    from .config import GameConfig
    from .database import GameDatabase

MAX_KEY_LENGTH = 128


@dataclass(frozen=True)
class RewardGrant:
    grant_id: int
    amount: int
    coins: int


class RewardIssuer:
    """Credits rewarded actions exactly once per idempotency key."""

    def __init__(
        self,
        config: GameConfig,
        database: GameDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger
        self.grants_total = 0

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    async def grant(self, account_id: int | None, idempotency_key: str | None) -> RewardGrant:
        """Credit one rewarded action.

        Raises Unauthenticated, NoRewardKey, AccountNotFound, DuplicateReward
        or Cooldown (with ``retry_after`` seconds).
        """
        account_id = require_identity(account_id)
        key = (idempotency_key or "").strip()
        if not key or len(key) > MAX_KEY_LENGTH:
            raise NoRewardKey("A reward key of 1-128 characters is required.")

        cfg = self._config.rewards
        try:
            row = await self._db.grant_reward(
                account_id, key, cfg.ad_reward, cfg.cooldown_seconds, now_utc(),
            )
        except DuplicateReward:
            self._logger.debug("Duplicate reward key from account %s", account_id)
            raise
        except Cooldown as e:
            self._logger.debug("Reward cooldown for account %s (%.1fs)", account_id, e.retry_after)
            raise

        self.grants_total += 1
        self._logger.info(
            "Reward: account=%s +%d coins (balance %d)", account_id, row["amount"], row["coins"],
        )
        return RewardGrant(grant_id=row["grant_id"], amount=row["amount"], coins=row["coins"])
