"""Play engine — one compounding-probability wager.

A player picks a success probability p in (0, 1) and carries a running
score from their current streak. On success the score is multiplied by p
(smaller is rarer, rarer is better) and may become the new best score; on
failure the streak resets. Coins are charged according to the configured
``CoinDebitPolicy``.

The coin check, draw, debit, best-score update and play record are applied
in one store transaction, so a play is either fully committed or not at all.
"""

from __future__ import annotations

import logging
import random
import sys
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .config import CoinDebitPolicy
from .errors import InvalidProbability, InvalidScore, NoCoins
from .utils import now_utc, require_identity

# Floor for a successful score so repeated products never underflow to 0.0
MIN_SCORE = sys.float_info.min

if TYPE_CHECKING:
    from .config import GameConfig
    from .database import GameDatabase


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════


class PlayOutcome(Enum):
    SUCCESS = "success"
    FAIL = "fail"


@dataclass(frozen=True)
class PlayDecision:
    """What a wager does to the account, decided under the account lock."""

    chosen_probability: float
    success: bool
    new_score: float
    coins_spent: int


@dataclass
class PlayResult:
    """Result of a single play."""

    outcome: PlayOutcome
    chosen_probability: float
    new_score: float
    best_score: float | None
    rank: int | None
    coins: int
    coins_spent: int

    def to_dict(self) -> dict:
        return {
            "result": self.outcome.value,
            "current_score": self.new_score,
            "best_score": self.best_score,
            "rank": self.rank,
            "coins": self.coins,
        }


def coins_due(policy: CoinDebitPolicy, success: bool, cost: int) -> int:
    """Coins a play costs under ``policy``."""
    if policy is CoinDebitPolicy.PER_ATTEMPT:
        return cost
    return 0 if success else cost


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════


class PlayEngine:
    """Executes wagers against the Account Store and Ledger."""

    def __init__(
        self,
        config: GameConfig,
        database: GameDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

        # Counters (for metrics)
        self.plays_total = 0
        self.successes_total = 0

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    @staticmethod
    def validate_probability(chosen_probability: float) -> float:
        try:
            p = float(chosen_probability)
        except (TypeError, ValueError) as e:
            raise InvalidProbability("Probability must be a number.") from e
        # NaN fails both comparisons
        if not 0.0 < p < 1.0:
            raise InvalidProbability(
                "Probability must be strictly between 0 and 1.", {"chosen": chosen_probability},
            )
        return p

    def validate_previous_score(self, previous_score: float | None) -> float:
        if previous_score is None:
            return self._config.play.fresh_score
        try:
            score = float(previous_score)
        except (TypeError, ValueError) as e:
            raise InvalidScore("Score must be a number.") from e
        if not 0.0 < score <= 1.0:
            raise InvalidScore(
                "Score must be in (0, 1].", {"current": previous_score},
            )
        return score

    async def play(
        self,
        account_id: int | None,
        chosen_probability: float,
        previous_score: float | None = None,
    ) -> PlayResult:
        """Execute one wager.

        Raises Unauthenticated, InvalidProbability, InvalidScore,
        AccountNotFound or NoCoins. Nothing is written when it raises.
        """
        account_id = require_identity(account_id)
        p = self.validate_probability(chosen_probability)
        current = self.validate_previous_score(previous_score)
        cfg = self._config.play

        def decide(account: dict) -> PlayDecision:
            if account["coins"] <= 0 or account["coins"] < cfg.coin_cost:
                raise NoCoins("Out of coins.", {"coins": account["coins"]})
            success = random.random() < p
            new_score = max(current * p, MIN_SCORE) if success else cfg.fresh_score
            return PlayDecision(
                chosen_probability=p,
                success=success,
                new_score=new_score,
                coins_spent=coins_due(cfg.coin_debit_policy, success, cfg.coin_cost),
            )

        try:
            applied = await self._db.record_play(account_id, decide, now_utc())
        except NoCoins:
            self._logger.debug("Play rejected for %s: no coins", account_id)
            raise

        decision: PlayDecision = applied["decision"]
        self.plays_total += 1
        if decision.success:
            self.successes_total += 1

        result = PlayResult(
            outcome=PlayOutcome.SUCCESS if decision.success else PlayOutcome.FAIL,
            chosen_probability=p,
            new_score=decision.new_score,
            best_score=applied["best_score"],
            rank=applied["rank"],
            coins=applied["coins"],
            coins_spent=decision.coins_spent,
        )
        self._logger.info(
            "Play: account=%s p=%g %s score=%g best=%s rank=%s coins=%d",
            account_id, p, result.outcome.value, result.new_score,
            result.best_score, result.rank, result.coins,
        )
        return result
