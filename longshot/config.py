"""Configuration system for longshot.

All Pydantic models are defined here with sensible defaults; a config file
only needs the sections it wants to override.
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator


# ═══════════════════════════════════════════════════════════════
#  Accounts & Ledger
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "longshot.db"


class AccountsConfig(BaseModel):
    starting_coins: int = Field(default=100, ge=0)
    nickname_max_length: int = Field(default=20, ge=1)


# ═══════════════════════════════════════════════════════════════
#  Play Engine
# ═══════════════════════════════════════════════════════════════

class CoinDebitPolicy(str, Enum):
    """When a play costs coins.

    PER_ATTEMPT: every play costs ``coin_cost``, win or lose.
    ON_FAILURE: only a failed play costs ``coin_cost``.
    """
    PER_ATTEMPT = "per_attempt"
    ON_FAILURE = "on_failure"


class PlayConfig(BaseModel):
    coin_cost: int = Field(default=1, ge=1)
    coin_debit_policy: CoinDebitPolicy = CoinDebitPolicy.PER_ATTEMPT
    fresh_score: float = 1.0


# ═══════════════════════════════════════════════════════════════
#  Rewards & Referrals
# ═══════════════════════════════════════════════════════════════

class RewardsConfig(BaseModel):
    ad_reward: int = Field(default=20, ge=1)
    cooldown_seconds: int = Field(default=30, ge=0)


class ReferralsConfig(BaseModel):
    referrer_reward: int = Field(default=10, ge=0)
    claimant_reward: int = Field(default=0, ge=0)
    points_per_claim: int = Field(default=1, ge=0)


class LeaderboardConfig(BaseModel):
    size: int = Field(default=100, ge=1)


# ═══════════════════════════════════════════════════════════════
#  Tournament & Payouts
# ═══════════════════════════════════════════════════════════════

class TournamentConfig(BaseModel):
    timezone: str = "Asia/Seoul"
    anchor_hour: int = Field(default=22, ge=0, le=23)
    anchor_minute: int = Field(default=0, ge=0, le=59)
    participant_threshold: int = Field(default=1000, ge=0)
    max_prize: int = Field(default=50000, ge=0)
    snapshot_size: int = Field(default=100, ge=1)
    daily_coin_floor: int = Field(default=10, ge=0)
    retention_days: int = Field(default=30, ge=1)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value


class PayoutConfig(BaseModel):
    dry_run: bool = Field(default=True, description="Simulate payouts without calling the points API")
    base_url: str = ""
    api_key: str = ""
    endpoint: str = "/api/v1/points/payout"
    timeout_seconds: float = Field(default=10.0, gt=0)


# ═══════════════════════════════════════════════════════════════
#  Admin surface
# ═══════════════════════════════════════════════════════════════

class AdminConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 28390
    secret: str = ""


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class GameConfig(BaseModel):
    """Full game config."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    accounts: AccountsConfig = Field(default_factory=AccountsConfig)
    play: PlayConfig = Field(default_factory=PlayConfig)
    rewards: RewardsConfig = Field(default_factory=RewardsConfig)
    referrals: ReferralsConfig = Field(default_factory=ReferralsConfig)
    leaderboard: LeaderboardConfig = Field(default_factory=LeaderboardConfig)
    tournament: TournamentConfig = Field(default_factory=TournamentConfig)
    payout: PayoutConfig = Field(default_factory=PayoutConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> GameConfig:
    """Load and validate YAML config file into GameConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return GameConfig(**raw)
