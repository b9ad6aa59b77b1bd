"""Account service — account creation, identity linkage and nicknames.

Identity resolution itself (cookies, OAuth, token decryption) happens
outside this package; callers pass an already-resolved account id, or an
external identity key to link.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .errors import AccountNotFound, BadNickname
from .utils import require_identity

if TYPE_CHECKING:
    from .config import GameConfig
    from .database import GameDatabase


class AccountService:
    """Creates accounts and serves the profile/wallet reads."""

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

    def normalize_nickname(self, nickname: str | None) -> str:
        """Trim and validate a nickname. Raises BadNickname."""
        name = (nickname or "").strip()
        if not name:
            raise BadNickname("Please enter a nickname.")
        max_len = self._config.accounts.nickname_max_length
        if len(name) > max_len:
            raise BadNickname(f"Nicknames are at most {max_len} characters.")
        return name

    async def create_account(
        self, nickname: str | None = None, identity_key: str | None = None,
    ) -> dict:
        """Create an account with the configured starting coins."""
        name = self.normalize_nickname(nickname) if nickname is not None else None
        account = await self._db.create_account(
            self._config.accounts.starting_coins, nickname=name, identity_key=identity_key,
        )
        self._logger.info("Account %s created (nickname=%s)", account["id"], name)
        return account

    async def resolve_identity(self, identity_key: str) -> dict:
        """Return the account linked to an external identity, creating it on first sight."""
        if not identity_key:
            raise ValueError("identity_key must be non-empty")
        account, created = await self._db.get_or_create_by_identity(
            identity_key, self._config.accounts.starting_coins,
        )
        if created:
            self._logger.info("Account %s created for new identity", account["id"])
        return account

    async def set_nickname(self, account_id: int | None, nickname: str | None) -> dict:
        """Assign a nickname. Raises BadNickname or DuplicateNickname."""
        account_id = require_identity(account_id)
        name = self.normalize_nickname(nickname)
        account = await self._get(account_id)
        if account["nickname"] == name:
            return account
        account = await self._db.set_nickname(account_id, name)
        self._logger.info("Account %s is now '%s'", account_id, name)
        return account

    async def get_profile(self, account_id: int | None) -> dict:
        """The caller's own view: nickname, best score, coins, rank."""
        account = await self._get(require_identity(account_id))
        return {
            "id": account["id"],
            "nickname": account["nickname"],
            "best_score": account["best_score"],
            "coins": account["coins"],
            "referral_points": account["referral_points"],
            "rank": await self._db.get_rank_for_score(account["best_score"]),
        }

    async def get_wallet(self, account_id: int | None) -> dict:
        account = await self._get(require_identity(account_id))
        return {"coins": account["coins"]}

    async def _get(self, account_id: int) -> dict:
        account = await self._db.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} does not exist.")
        return account
