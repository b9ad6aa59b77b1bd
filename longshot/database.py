"""SQLite database module for longshot.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

Every write that must land as one unit runs inside ``BEGIN IMMEDIATE``:
SQLite admits a single writer at a time, so per-account read-check-write
sequences (coin debit, best-score update, play insert) are serialized, and
the daily close reads a stable view of the plays table.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterator

from .errors import (
    AccountNotFound,
    AlreadyClaimed,
    AlreadyClosed,
    Cooldown,
    DuplicateIdentity,
    DuplicateNickname,
    DuplicateReward,
    InsufficientFunds,
    ReferrerNotFound,
)
from .utils import parse_timestamp, to_db_timestamp

if TYPE_CHECKING:
    from .play_engine import PlayDecision


PAYOUT_PENDING = "PENDING"
PAYOUT_SENT = "SENT"
PAYOUT_FAILED = "FAILED"
RUN_PENDING = "PENDING"
RUN_SKIPPED = "SKIPPED"


class GameDatabase:
    """SQLite-backed Account Store, Ledger and settlement records."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings.

        Autocommit mode: transactions are opened explicitly by ``_transaction``.
        """
        conn = sqlite3.connect(self._db_path, timeout=30, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Run the block as one write transaction; roll back on any exception."""
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            # ── Accounts & ledger ────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    nickname TEXT UNIQUE,
                    identity_key TEXT UNIQUE,
                    best_score REAL,
                    coins INTEGER NOT NULL DEFAULT 0 CHECK (coins >= 0),
                    referral_points INTEGER NOT NULL DEFAULT 0 CHECK (referral_points >= 0),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS coin_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL REFERENCES accounts(id),
                    amount INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    reason TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # ── Append-only activity ─────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS plays (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL REFERENCES accounts(id),
                    resulting_score REAL NOT NULL,
                    chosen_probability REAL NOT NULL,
                    outcome TEXT NOT NULL CHECK (outcome IN ('success', 'fail')),
                    coins_spent INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS reward_grants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL REFERENCES accounts(id),
                    amount INTEGER NOT NULL,
                    idempotency_key TEXT NOT NULL UNIQUE,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS referral_claims (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    claimant_id INTEGER NOT NULL UNIQUE REFERENCES accounts(id),
                    referrer_id INTEGER NOT NULL REFERENCES accounts(id),
                    amount INTEGER NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # ── Settlement ───────────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS daily_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    date TEXT NOT NULL UNIQUE,
                    window_start TIMESTAMP NOT NULL,
                    window_end TIMESTAMP NOT NULL,
                    participants INTEGER NOT NULL,
                    prize_pool INTEGER NOT NULL,
                    winner_account_id INTEGER REFERENCES accounts(id),
                    winner_best_score REAL,
                    payout_status TEXT NOT NULL CHECK (payout_status IN ('PENDING', 'SKIPPED')),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS daily_score_snapshots (
                    date TEXT NOT NULL,
                    account_id INTEGER NOT NULL REFERENCES accounts(id),
                    best_score_in_window REAL NOT NULL,
                    rank INTEGER NOT NULL,
                    UNIQUE(date, account_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS payout_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    date TEXT NOT NULL,
                    account_id INTEGER NOT NULL REFERENCES accounts(id),
                    points INTEGER NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('PENDING', 'SENT', 'FAILED')),
                    idempotency_key TEXT NOT NULL UNIQUE,
                    response_payload TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Indexes
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_accounts_best_score "
                "ON accounts(best_score)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_coin_transactions_account "
                "ON coin_transactions(account_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_plays_created_at "
                "ON plays(created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_plays_account "
                "ON plays(account_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_reward_grants_account "
                "ON reward_grants(account_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_snapshots_date_rank "
                "ON daily_score_snapshots(date, rank)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_payout_records_status "
                "ON payout_records(status)"
            )
            self._logger.debug("Database schema ready at %s", self._db_path)
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Ledger primitives (call inside an open transaction)
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _credit_in(
        conn: sqlite3.Connection,
        account_id: int,
        amount: int,
        tx_type: str,
        reason: str | None = None,
    ) -> int:
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")
        cursor = conn.execute(
            "UPDATE accounts SET coins = coins + ? WHERE id = ?",
            (amount, account_id),
        )
        if cursor.rowcount == 0:
            raise AccountNotFound(f"Account {account_id} does not exist.")
        conn.execute(
            "INSERT INTO coin_transactions (account_id, amount, type, reason) VALUES (?, ?, ?, ?)",
            (account_id, amount, tx_type, reason),
        )
        row = conn.execute("SELECT coins FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return row["coins"]

    @staticmethod
    def _debit_in(
        conn: sqlite3.Connection,
        account_id: int,
        amount: int,
        tx_type: str,
        reason: str | None = None,
    ) -> int:
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")
        cursor = conn.execute(
            "UPDATE accounts SET coins = coins - ? WHERE id = ? AND coins >= ?",
            (amount, account_id, amount),
        )
        if cursor.rowcount == 0:
            row = conn.execute("SELECT coins FROM accounts WHERE id = ?", (account_id,)).fetchone()
            if row is None:
                raise AccountNotFound(f"Account {account_id} does not exist.")
            raise InsufficientFunds(
                f"Balance {row['coins']} cannot cover {amount}.",
                {"balance": row["coins"], "amount": amount},
            )
        conn.execute(
            "INSERT INTO coin_transactions (account_id, amount, type, reason) VALUES (?, ?, ?, ?)",
            (account_id, -amount, tx_type, reason),
        )
        row = conn.execute("SELECT coins FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return row["coins"]

    @staticmethod
    def _rank_in(conn: sqlite3.Connection, best_score: float | None) -> int | None:
        if best_score is None:
            return None
        row = conn.execute(
            "SELECT COUNT(*) + 1 AS rank FROM accounts "
            "WHERE best_score IS NOT NULL AND best_score < ?",
            (best_score,),
        ).fetchone()
        return row["rank"]

    @staticmethod
    def _load_account(conn: sqlite3.Connection, account_id: int) -> dict:
        row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            raise AccountNotFound(f"Account {account_id} does not exist.")
        return dict(row)

    # ══════════════════════════════════════════════════════════
    #  Account Operations
    # ══════════════════════════════════════════════════════════

    async def create_account(
        self,
        starting_coins: int,
        nickname: str | None = None,
        identity_key: str | None = None,
    ) -> dict:
        """Insert a new account and return it as a dict."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    try:
                        cursor = conn.execute(
                            "INSERT INTO accounts (nickname, identity_key) VALUES (?, ?)",
                            (nickname, identity_key),
                        )
                    except sqlite3.IntegrityError as e:
                        if "nickname" in str(e):
                            raise DuplicateNickname(f"Nickname '{nickname}' is taken.") from e
                        if "identity_key" in str(e):
                            raise DuplicateIdentity("Identity is already linked to an account.") from e
                        raise
                    account_id = cursor.lastrowid
                    if starting_coins > 0:
                        self._credit_in(conn, account_id, starting_coins, "starting_coins")
                    return self._load_account(conn, account_id)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_or_create_by_identity(self, identity_key: str, starting_coins: int) -> tuple[dict, bool]:
        """Return ``(account, created)`` for an external identity key."""
        loop = asyncio.get_running_loop()

        def _sync() -> tuple[dict, bool]:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    cursor = conn.execute(
                        "INSERT OR IGNORE INTO accounts (identity_key) VALUES (?)",
                        (identity_key,),
                    )
                    created = cursor.rowcount > 0
                    row = conn.execute(
                        "SELECT id FROM accounts WHERE identity_key = ?", (identity_key,),
                    ).fetchone()
                    if created and starting_coins > 0:
                        self._credit_in(conn, row["id"], starting_coins, "starting_coins")
                    return self._load_account(conn, row["id"]), created
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_account(self, account_id: int) -> dict | None:
        """Return account row as dict, or None if not exists."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM accounts WHERE id = ?", (account_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_balance(self, account_id: int) -> int:
        """Return coin balance, 0 if account doesn't exist."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT coins FROM accounts WHERE id = ?", (account_id,),
                ).fetchone()
                return row["coins"] if row else 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def set_nickname(self, account_id: int, nickname: str) -> dict:
        """Assign a nickname. Raises DuplicateNickname if another account holds it."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    try:
                        cursor = conn.execute(
                            "UPDATE accounts SET nickname = ? WHERE id = ?",
                            (nickname, account_id),
                        )
                    except sqlite3.IntegrityError as e:
                        raise DuplicateNickname(f"Nickname '{nickname}' is taken.") from e
                    if cursor.rowcount == 0:
                        raise AccountNotFound(f"Account {account_id} does not exist.")
                    return self._load_account(conn, account_id)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_account_count(self) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM accounts").fetchone()
                return row["cnt"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Balance Operations
    # ══════════════════════════════════════════════════════════

    async def credit(
        self, account_id: int, amount: int, tx_type: str, reason: str | None = None,
    ) -> int:
        """Atomically credit coins and log the transaction. Returns new balance."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    return self._credit_in(conn, account_id, amount, tx_type, reason)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def debit(
        self, account_id: int, amount: int, tx_type: str, reason: str | None = None,
    ) -> int:
        """Atomically debit coins and log the transaction. Returns new balance.

        Raises InsufficientFunds when the balance would go negative.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    return self._debit_in(conn, account_id, amount, tx_type, reason)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_recent_transactions(self, account_id: int, limit: int = 20) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT amount, type, reason, created_at FROM coin_transactions "
                    "WHERE account_id = ? ORDER BY id DESC LIMIT ?",
                    (account_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Plays
    # ══════════════════════════════════════════════════════════

    async def record_play(
        self,
        account_id: int,
        decide: Callable[[dict], PlayDecision],
        now: datetime,
    ) -> dict:
        """Apply one wager as a single transaction.

        ``decide`` receives the account row as read under the write lock and
        returns the decision (or raises to abort). The debit, best-score
        update and play insert then commit together, and the caller's rank is
        read from the same transaction.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    account = self._load_account(conn, account_id)
                    decision = decide(account)

                    coins = account["coins"]
                    if decision.coins_spent > 0:
                        coins = self._debit_in(
                            conn, account_id, decision.coins_spent, "play",
                            reason=f"p={decision.chosen_probability:g}",
                        )

                    best = account["best_score"]
                    if decision.success and (best is None or decision.new_score < best):
                        best = decision.new_score
                        conn.execute(
                            "UPDATE accounts SET best_score = ? WHERE id = ?",
                            (best, account_id),
                        )

                    cursor = conn.execute(
                        "INSERT INTO plays (account_id, resulting_score, chosen_probability, "
                        "outcome, coins_spent, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                        (
                            account_id,
                            decision.new_score,
                            decision.chosen_probability,
                            "success" if decision.success else "fail",
                            decision.coins_spent,
                            to_db_timestamp(now),
                        ),
                    )
                    return {
                        "decision": decision,
                        "play_id": cursor.lastrowid,
                        "best_score": best,
                        "coins": coins,
                        "rank": self._rank_in(conn, best),
                    }
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_plays(self, account_id: int, limit: int = 50) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM plays WHERE account_id = ? ORDER BY id DESC LIMIT ?",
                    (account_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Rank / Leaderboard
    # ══════════════════════════════════════════════════════════

    async def get_rank(self, account_id: int) -> int | None:
        """1 + number of accounts with a strictly better best score."""
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                account = self._load_account(conn, account_id)
                return self._rank_in(conn, account["best_score"])
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_rank_for_score(self, best_score: float | None) -> int | None:
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                return self._rank_in(conn, best_score)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_leaderboard(self, limit: int = 100) -> list[dict]:
        """Named accounts with a best score, best first."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT id AS account_id, nickname, best_score FROM accounts "
                    "WHERE nickname IS NOT NULL AND best_score IS NOT NULL "
                    "ORDER BY best_score ASC, id ASC LIMIT ?",
                    (limit,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Reward Grants
    # ══════════════════════════════════════════════════════════

    async def grant_reward(
        self,
        account_id: int,
        idempotency_key: str,
        amount: int,
        cooldown_seconds: int,
        now: datetime,
    ) -> dict:
        """Insert a reward grant and credit the account in one transaction.

        Raises DuplicateReward if the key was already used (by anyone), and
        Cooldown if this account's previous grant is too recent.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    self._load_account(conn, account_id)
                    existing = conn.execute(
                        "SELECT account_id FROM reward_grants WHERE idempotency_key = ?",
                        (idempotency_key,),
                    ).fetchone()
                    if existing is not None:
                        raise DuplicateReward(
                            "Reward already granted for this key.",
                            {"idempotency_key": idempotency_key},
                        )

                    if cooldown_seconds > 0:
                        last = conn.execute(
                            "SELECT created_at FROM reward_grants WHERE account_id = ? "
                            "ORDER BY created_at DESC LIMIT 1",
                            (account_id,),
                        ).fetchone()
                        last_at = parse_timestamp(last["created_at"]) if last else None
                        if last_at is not None:
                            elapsed = (now - last_at).total_seconds()
                            if elapsed < cooldown_seconds:
                                raise Cooldown(cooldown_seconds - elapsed)

                    try:
                        cursor = conn.execute(
                            "INSERT INTO reward_grants (account_id, amount, idempotency_key, created_at) "
                            "VALUES (?, ?, ?, ?)",
                            (account_id, amount, idempotency_key, to_db_timestamp(now)),
                        )
                    except sqlite3.IntegrityError as e:
                        raise DuplicateReward("Reward already granted for this key.") from e
                    balance = self._credit_in(
                        conn, account_id, amount, "reward", reason=f"grant:{cursor.lastrowid}",
                    )
                    return {"grant_id": cursor.lastrowid, "amount": amount, "coins": balance}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Referral Claims
    # ══════════════════════════════════════════════════════════

    async def claim_referral(
        self,
        claimant_id: int,
        referrer_id: int,
        referrer_reward: int,
        claimant_reward: int,
        points: int,
    ) -> dict:
        """Record a claimant's one-time referral and credit both sides.

        Raises ReferrerNotFound or AlreadyClaimed; nothing is written then.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    self._load_account(conn, claimant_id)
                    referrer = conn.execute(
                        "SELECT id FROM accounts WHERE id = ?", (referrer_id,),
                    ).fetchone()
                    if referrer is None:
                        raise ReferrerNotFound(f"No account with id {referrer_id}.")

                    prior = conn.execute(
                        "SELECT referrer_id FROM referral_claims WHERE claimant_id = ?",
                        (claimant_id,),
                    ).fetchone()
                    if prior is not None:
                        raise AlreadyClaimed(
                            "Referral already claimed.", {"referrer_id": prior["referrer_id"]},
                        )
                    try:
                        conn.execute(
                            "INSERT INTO referral_claims (claimant_id, referrer_id, amount) "
                            "VALUES (?, ?, ?)",
                            (claimant_id, referrer_id, referrer_reward),
                        )
                    except sqlite3.IntegrityError as e:
                        raise AlreadyClaimed("Referral already claimed.") from e

                    if referrer_reward > 0:
                        self._credit_in(
                            conn, referrer_id, referrer_reward, "referral",
                            reason=f"referred:{claimant_id}",
                        )
                    if points > 0:
                        conn.execute(
                            "UPDATE accounts SET referral_points = referral_points + ? WHERE id = ?",
                            (points, referrer_id),
                        )
                    if claimant_reward > 0:
                        self._credit_in(
                            conn, claimant_id, claimant_reward, "referral_bonus",
                            reason=f"referrer:{referrer_id}",
                        )
                    claimant = self._load_account(conn, claimant_id)
                    return {
                        "referrer_id": referrer_id,
                        "amount": referrer_reward,
                        "claimant_coins": claimant["coins"],
                    }
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Daily Close
    # ══════════════════════════════════════════════════════════

    async def get_window_participants(self, window_start: datetime, window_end: datetime) -> int:
        """Distinct accounts with at least one play in [start, end)."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COUNT(DISTINCT account_id) AS cnt FROM plays "
                    "WHERE created_at >= ? AND created_at < ?",
                    (to_db_timestamp(window_start), to_db_timestamp(window_end)),
                ).fetchone()
                return row["cnt"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def close_window(
        self,
        date: str,
        window_start: datetime,
        window_end: datetime,
        snapshot_size: int,
        prize_for: Callable[[int], int],
        daily_coin_floor: int,
        prune_before: str,
        payout_key: str,
    ) -> dict:
        """Settle one window as a single transaction.

        Aggregates participation and top scores, writes the snapshot, the
        daily run and (when there is a prize) a PENDING payout record, resets
        best scores to what was earned after the window ended, tops
        balances up to the floor and prunes old history. Raises
        AlreadyClosed without writing if ``date`` is settled.
        """
        loop = asyncio.get_running_loop()
        start_ts = to_db_timestamp(window_start)
        end_ts = to_db_timestamp(window_end)

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    if conn.execute(
                        "SELECT 1 FROM daily_runs WHERE date = ?", (date,),
                    ).fetchone():
                        raise AlreadyClosed(f"Window {date} is already closed.", {"date": date})

                    participants = conn.execute(
                        "SELECT COUNT(DISTINCT account_id) AS cnt FROM plays "
                        "WHERE created_at >= ? AND created_at < ?",
                        (start_ts, end_ts),
                    ).fetchone()["cnt"]

                    top = conn.execute(
                        "SELECT account_id, MIN(resulting_score) AS best_score_in_window "
                        "FROM plays WHERE outcome = 'success' "
                        "AND created_at >= ? AND created_at < ? "
                        "GROUP BY account_id "
                        "ORDER BY best_score_in_window ASC, account_id ASC LIMIT ?",
                        (start_ts, end_ts, snapshot_size),
                    ).fetchall()

                    snapshot: list[tuple[str, int, float, int]] = []
                    rank = 0
                    prev_score: float | None = None
                    for i, row in enumerate(top):
                        if row["best_score_in_window"] != prev_score:
                            rank = i + 1
                            prev_score = row["best_score_in_window"]
                        snapshot.append((date, row["account_id"], row["best_score_in_window"], rank))
                    conn.executemany(
                        "INSERT INTO daily_score_snapshots "
                        "(date, account_id, best_score_in_window, rank) VALUES (?, ?, ?, ?)",
                        snapshot,
                    )

                    prize_pool = prize_for(participants)
                    # No successful play in the window means no one to pay.
                    winner = snapshot[0] if prize_pool > 0 and snapshot else None

                    try:
                        conn.execute(
                            "INSERT INTO daily_runs (date, window_start, window_end, participants, "
                            "prize_pool, winner_account_id, winner_best_score, payout_status) "
                            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                            (
                                date, start_ts, end_ts, participants, prize_pool,
                                winner[1] if winner else None,
                                winner[2] if winner else None,
                                RUN_PENDING if winner else RUN_SKIPPED,
                            ),
                        )
                    except sqlite3.IntegrityError as e:
                        raise AlreadyClosed(f"Window {date} is already closed.", {"date": date}) from e

                    payout_id = None
                    if winner:
                        cursor = conn.execute(
                            "INSERT INTO payout_records (date, account_id, points, status, idempotency_key) "
                            "VALUES (?, ?, ?, ?, ?)",
                            (date, winner[1], prize_pool, PAYOUT_PENDING, payout_key),
                        )
                        payout_id = cursor.lastrowid

                    # Bests earned after the latest settled window belong to a later one
                    settled_to = conn.execute(
                        "SELECT MAX(window_end) AS latest FROM daily_runs",
                    ).fetchone()["latest"]
                    reset = conn.execute(
                        "UPDATE accounts SET best_score = ("
                        "  SELECT MIN(resulting_score) FROM plays"
                        "  WHERE plays.account_id = accounts.id"
                        "    AND outcome = 'success' AND created_at >= ?"
                        ") WHERE best_score IS NOT NULL",
                        (max(end_ts, settled_to or end_ts),),
                    ).rowcount

                    topped_up = 0
                    if daily_coin_floor > 0:
                        conn.execute(
                            "INSERT INTO coin_transactions (account_id, amount, type, reason) "
                            "SELECT id, ? - coins, 'daily_floor', ? FROM accounts WHERE coins < ?",
                            (daily_coin_floor, f"close:{date}", daily_coin_floor),
                        )
                        topped_up = conn.execute(
                            "UPDATE accounts SET coins = ? WHERE coins < ?",
                            (daily_coin_floor, daily_coin_floor),
                        ).rowcount

                    pruned = conn.execute(
                        "DELETE FROM daily_score_snapshots WHERE date < ?", (prune_before,),
                    ).rowcount
                    pruned += conn.execute(
                        "DELETE FROM payout_records WHERE date < ? AND status = ?",
                        (prune_before, PAYOUT_SENT),
                    ).rowcount

                    return {
                        "date": date,
                        "participants": participants,
                        "prize_pool": prize_pool,
                        "winner_account_id": winner[1] if winner else None,
                        "winner_best_score": winner[2] if winner else None,
                        "payout_status": RUN_PENDING if winner else RUN_SKIPPED,
                        "payout_id": payout_id,
                        "snapshot_rows": len(snapshot),
                        "scores_reset": reset,
                        "accounts_topped_up": topped_up,
                        "rows_pruned": pruned,
                    }
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  History
    # ══════════════════════════════════════════════════════════

    async def get_daily_run(self, date: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT r.*, a.nickname AS winner_nickname FROM daily_runs r "
                    "LEFT JOIN accounts a ON a.id = r.winner_account_id WHERE r.date = ?",
                    (date,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def list_closed_dates(self, limit: int = 30) -> list[str]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[str]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT date FROM daily_runs ORDER BY date DESC LIMIT ?", (limit,),
                ).fetchall()
                return [r["date"] for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_snapshot(self, date: str) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT s.rank, s.account_id, a.nickname, s.best_score_in_window "
                    "FROM daily_score_snapshots s JOIN accounts a ON a.id = s.account_id "
                    "WHERE s.date = ? ORDER BY s.rank ASC, s.account_id ASC",
                    (date,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Payout Records
    # ══════════════════════════════════════════════════════════

    async def get_pending_payouts(self) -> list[dict]:
        """PENDING payout records with the target's external identity key."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT p.*, a.identity_key FROM payout_records p "
                    "JOIN accounts a ON a.id = p.account_id "
                    "WHERE p.status = ? ORDER BY p.id ASC",
                    (PAYOUT_PENDING,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_payout(self, payout_id: int) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM payout_records WHERE id = ?", (payout_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_payouts_for_date(self, date: str) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM payout_records WHERE date = ? ORDER BY id ASC", (date,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def finish_payout(self, payout_id: int, status: str, payload: Any) -> bool:
        """Move a PENDING record to SENT or FAILED. False if it was not PENDING."""
        if status not in (PAYOUT_SENT, PAYOUT_FAILED):
            raise ValueError(f"Invalid payout status: {status}")
        loop = asyncio.get_running_loop()
        encoded = json.dumps(payload, default=str)

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    cursor = conn.execute(
                        "UPDATE payout_records SET status = ?, response_payload = ?, "
                        "attempts = attempts + 1, updated_at = CURRENT_TIMESTAMP "
                        "WHERE id = ? AND status = ?",
                        (status, encoded, payout_id, PAYOUT_PENDING),
                    )
                    return cursor.rowcount > 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def requeue_failed_payouts(self, date: str | None = None) -> int:
        """Reset FAILED payout records to PENDING. Returns count."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                with self._transaction(conn):
                    if date is None:
                        cursor = conn.execute(
                            "UPDATE payout_records SET status = ?, updated_at = CURRENT_TIMESTAMP "
                            "WHERE status = ?",
                            (PAYOUT_PENDING, PAYOUT_FAILED),
                        )
                    else:
                        cursor = conn.execute(
                            "UPDATE payout_records SET status = ?, updated_at = CURRENT_TIMESTAMP "
                            "WHERE status = ? AND date = ?",
                            (PAYOUT_PENDING, PAYOUT_FAILED, date),
                        )
                    return cursor.rowcount
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
