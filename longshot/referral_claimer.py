"""Referral claimer — one referral claim per account, ever."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import AlreadyClaimed, NoRef, ReferrerNotFound, SelfReferral
from .utils import require_identity

if TYPE_CHECKING:
    from .config import GameConfig
    from .database import GameDatabase


@dataclass(frozen=True)
class ReferralClaim:
    referrer_id: int
    referrer_reward: int
    claimant_coins: int


def parse_referrer(ref: int | str | None) -> int:
    """Turn a client-supplied referral code into an account id."""
    if ref is None or (isinstance(ref, str) and not ref.strip()):
        raise NoRef("A referral code is required.")
    if isinstance(ref, bool):
        raise ReferrerNotFound(f"Unknown referral code: {ref!r}")
    try:
        return int(str(ref).strip())
    except ValueError as e:
        raise ReferrerNotFound(f"Unknown referral code: {ref!r}") from e


class ReferralClaimer:
    """Credits a referrer once per claimant."""

    def __init__(
        self,
        config: GameConfig,
        database: GameDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger
        self.claims_total = 0

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    async def claim(self, account_id: int | None, ref: int | str | None) -> ReferralClaim:
        """Claim a referral for ``account_id``.

        Raises NoRef, SelfReferral, ReferrerNotFound or AlreadyClaimed. A
        claimant that has claimed once gets AlreadyClaimed for every
        referrer afterwards.
        """
        account_id = require_identity(account_id)
        referrer_id = parse_referrer(ref)
        if referrer_id == account_id:
            raise SelfReferral("You cannot refer yourself.")

        cfg = self._config.referrals
        try:
            row = await self._db.claim_referral(
                account_id,
                referrer_id,
                referrer_reward=cfg.referrer_reward,
                claimant_reward=cfg.claimant_reward,
                points=cfg.points_per_claim,
            )
        except (AlreadyClaimed, ReferrerNotFound) as e:
            self._logger.debug("Referral claim by %s rejected: %s", account_id, e)
            raise

        self.claims_total += 1
        self._logger.info(
            "Referral: claimant=%s referrer=%s +%d coins", account_id, referrer_id, row["amount"],
        )
        return ReferralClaim(
            referrer_id=referrer_id,
            referrer_reward=row["amount"],
            claimant_coins=row["claimant_coins"],
        )
