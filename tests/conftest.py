"""Shared test fixtures for longshot."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

from longshot.account_service import AccountService
from longshot.config import GameConfig
from longshot.database import GameDatabase
from longshot.payout_client import SimulatedPayoutClient
from longshot.payout_processor import PayoutProcessor
from longshot.play_engine import PlayEngine
from longshot.rank_engine import RankEngine
from longshot.referral_claimer import ReferralClaimer
from longshot.reward_issuer import RewardIssuer
from longshot.tournament import TournamentScheduler
from longshot.utils import to_db_timestamp


# ── Minimal config dict matching GameConfig schema ───────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "database": {"path": ":memory:"},
        "accounts": {"starting_coins": 0, "nickname_max_length": 20},
        "play": {"coin_cost": 1, "coin_debit_policy": "per_attempt", "fresh_score": 1.0},
        "rewards": {"ad_reward": 20, "cooldown_seconds": 30},
        "referrals": {"referrer_reward": 10, "claimant_reward": 0, "points_per_claim": 1},
        "leaderboard": {"size": 100},
        "tournament": {
            "timezone": "Asia/Seoul",
            "anchor_hour": 22,
            "anchor_minute": 0,
            "participant_threshold": 1000,
            "max_prize": 50000,
            "snapshot_size": 100,
            "daily_coin_floor": 10,
            "retention_days": 30,
        },
        "payout": {"dry_run": True},
        "admin": {"host": "127.0.0.1", "port": 0, "secret": "s3cret"},
    }
    for section, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(section), dict):
            base[section] = {**base[section], **value}
        else:
            base[section] = value
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> GameConfig:
    """Return a parsed GameConfig."""
    return GameConfig(**sample_config_dict)


@pytest.fixture
def config_factory() -> Callable[..., GameConfig]:
    """Build a GameConfig with per-section overrides."""
    def _make(**overrides) -> GameConfig:
        return GameConfig(**make_config_dict(**overrides))
    return _make


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_longshot.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[GameDatabase, None]:
    """Provide an initialized database with temp file."""
    db = GameDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


# ── Seeding helpers ─────────────────────────────────────────

async def _run_sql(db: GameDatabase, fn: Callable) -> None:
    loop = asyncio.get_running_loop()

    def _sync() -> None:
        conn = db._get_connection()
        try:
            conn.execute("BEGIN")
            fn(conn)
            conn.execute("COMMIT")
        finally:
            conn.close()

    await loop.run_in_executor(None, _sync)


@pytest.fixture
def seed_account(database: GameDatabase) -> Callable[..., Awaitable[int]]:
    """Create an account with exact coins / best score. Returns its id."""
    async def _seed(
        coins: int = 0,
        nickname: str | None = None,
        identity_key: str | None = None,
        best_score: float | None = None,
    ) -> int:
        account = await database.create_account(0, nickname=nickname, identity_key=identity_key)
        if coins:
            await database.credit(account["id"], coins, "seed")
        if best_score is not None:
            await _run_sql(database, lambda conn: conn.execute(
                "UPDATE accounts SET best_score = ? WHERE id = ?", (best_score, account["id"]),
            ))
        return account["id"]
    return _seed


@pytest.fixture
def seed_plays(database: GameDatabase) -> Callable[..., Awaitable[None]]:
    """Insert raw play rows: iterable of (account_id, score, outcome, created_at)."""
    async def _seed(rows: list[tuple[int, float, str, datetime]]) -> None:
        params = [
            (account_id, score, 0.5, outcome, 1, to_db_timestamp(at))
            for account_id, score, outcome, at in rows
        ]
        await _run_sql(database, lambda conn: conn.executemany(
            "INSERT INTO plays (account_id, resulting_score, chosen_probability, outcome, "
            "coins_spent, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            params,
        ))
    return _seed


@pytest.fixture
def seed_many_accounts(database: GameDatabase) -> Callable[..., Awaitable[list[int]]]:
    """Bulk-create ``count`` accounts with identity keys. Returns their ids."""
    async def _seed(count: int, coins: int = 5) -> list[int]:
        rows = [(f"ident-{i}", coins) for i in range(count)]
        await _run_sql(database, lambda conn: conn.executemany(
            "INSERT INTO accounts (identity_key, coins) VALUES (?, ?)", rows,
        ))
        loop = asyncio.get_running_loop()

        def _ids() -> list[int]:
            conn = database._get_connection()
            try:
                return [r["id"] for r in conn.execute(
                    "SELECT id FROM accounts WHERE identity_key LIKE 'ident-%' ORDER BY id",
                ).fetchall()]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _ids)
    return _seed


# ── Engine fixtures ─────────────────────────────────────────

@pytest_asyncio.fixture
async def account_service(sample_config: GameConfig, database: GameDatabase) -> AccountService:
    return AccountService(sample_config, database, logging.getLogger("test"))


@pytest_asyncio.fixture
async def play_engine(sample_config: GameConfig, database: GameDatabase) -> PlayEngine:
    return PlayEngine(sample_config, database, logging.getLogger("test"))


@pytest_asyncio.fixture
async def rank_engine(sample_config: GameConfig, database: GameDatabase) -> RankEngine:
    return RankEngine(sample_config, database, logging.getLogger("test"))


@pytest_asyncio.fixture
async def reward_issuer(sample_config: GameConfig, database: GameDatabase) -> RewardIssuer:
    return RewardIssuer(sample_config, database, logging.getLogger("test"))


@pytest_asyncio.fixture
async def referral_claimer(sample_config: GameConfig, database: GameDatabase) -> ReferralClaimer:
    return ReferralClaimer(sample_config, database, logging.getLogger("test"))


@pytest_asyncio.fixture
async def tournament(sample_config: GameConfig, database: GameDatabase) -> TournamentScheduler:
    return TournamentScheduler(sample_config, database, logging.getLogger("test"))


@pytest.fixture
def simulated_client() -> SimulatedPayoutClient:
    return SimulatedPayoutClient(logging.getLogger("test"))


@pytest_asyncio.fixture
async def payout_processor(
    database: GameDatabase, simulated_client: SimulatedPayoutClient,
) -> PayoutProcessor:
    return PayoutProcessor(database, simulated_client, logging.getLogger("test"))
