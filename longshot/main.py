"""Service orchestrator — GameApp.

config → DB init → engines → payout capability → admin server → run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from .account_service import AccountService
from .admin_server import AdminServer
from .config import GameConfig, load_config
from .database import GameDatabase
from .payout_client import PointsPayoutClient, SimulatedPayoutClient, build_payout_client
from .payout_processor import PayoutProcessor
from .play_engine import PlayEngine
from .rank_engine import RankEngine
from .referral_claimer import ReferralClaimer
from .reward_issuer import RewardIssuer
from .tournament import TournamentScheduler


class GameApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str | None = None, config: GameConfig | None = None) -> None:
        self.config_path = Path(config_path) if config_path else None
        self.logger = logging.getLogger("longshot")

        # Components (initialized in start())
        self.config: GameConfig | None = config
        self.db: GameDatabase | None = None
        self.accounts: AccountService | None = None
        self.play_engine: PlayEngine | None = None
        self.rank_engine: RankEngine | None = None
        self.reward_issuer: RewardIssuer | None = None
        self.referral_claimer: ReferralClaimer | None = None
        self.tournament: TournamentScheduler | None = None
        self.payout_client: PointsPayoutClient | SimulatedPayoutClient | None = None
        self.payout_processor: PayoutProcessor | None = None
        self.admin_server: AdminServer | None = None

        self._start_time: float | None = None
        self._stopped = asyncio.Event()

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    def counters(self) -> dict[str, float]:
        """Metric values exposed on /metrics."""
        data: dict[str, float] = {"uptime_seconds": round(self.uptime_seconds, 1)}
        if self.play_engine:
            data["plays_total"] = self.play_engine.plays_total
            data["play_successes_total"] = self.play_engine.successes_total
        if self.reward_issuer:
            data["reward_grants_total"] = self.reward_issuer.grants_total
        if self.referral_claimer:
            data["referral_claims_total"] = self.referral_claimer.claims_total
        if self.tournament:
            data["window_closes_total"] = self.tournament.closes_total
        if self.payout_processor:
            data["payouts_sent_total"] = self.payout_processor.sent_total
            data["payouts_failed_total"] = self.payout_processor.failed_total
        return data

    async def setup(self) -> None:
        """Load config, initialize the database and wire every engine."""
        if self.config is None:
            if self.config_path is None:
                raise ValueError("GameApp needs a config path or a config object")
            self.config = load_config(str(self.config_path))
        cfg = self.config

        self.db = GameDatabase(cfg.database.path, logging.getLogger("longshot.database"))
        await self.db.initialize()

        self.accounts = AccountService(cfg, self.db, logging.getLogger("longshot.accounts"))
        self.play_engine = PlayEngine(cfg, self.db, logging.getLogger("longshot.play"))
        self.rank_engine = RankEngine(cfg, self.db, logging.getLogger("longshot.rank"))
        self.reward_issuer = RewardIssuer(cfg, self.db, logging.getLogger("longshot.rewards"))
        self.referral_claimer = ReferralClaimer(cfg, self.db, logging.getLogger("longshot.referrals"))
        self.tournament = TournamentScheduler(cfg, self.db, logging.getLogger("longshot.tournament"))

        self.payout_client = build_payout_client(cfg.payout, logging.getLogger("longshot.payout_client"))
        await self.payout_client.start()
        self.payout_processor = PayoutProcessor(
            self.db, self.payout_client, logging.getLogger("longshot.payouts"),
        )
        if cfg.payout.dry_run:
            self.logger.warning("Payouts run in dry-run mode; no points will be sent")

    async def start(self) -> None:
        """Set up, serve the admin surface and block until ``stop()``."""
        await self.setup()
        self.admin_server = AdminServer(
            self.config.admin,
            self.tournament,
            self.payout_processor,
            logging.getLogger("longshot.admin"),
            counters=self.counters,
        )
        await self.admin_server.start()
        self._start_time = time.time()
        self.logger.info("longshot started")
        await self._stopped.wait()

    async def stop(self) -> None:
        """Tear down in reverse order. Safe to call more than once."""
        if self.admin_server:
            await self.admin_server.stop()
            self.admin_server = None
        if self.payout_client:
            await self.payout_client.stop()
            self.payout_client = None
        if not self._stopped.is_set():
            self._stopped.set()
            self.logger.info("longshot stopped")
