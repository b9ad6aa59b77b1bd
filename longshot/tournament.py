"""Tournament scheduler — daily windows and the window close.

A window runs from one daily anchor time (e.g. 22:00 Asia/Seoul) to the
next. It is labelled with the local date on which it ends. Per window:

    OPEN     plays accepted, no daily run yet
    CLOSING  close in progress in this process
    CLOSED   daily run row exists for the label

Closing is triggered externally (admin surface). It snapshots the window's
top scores, computes the prize, queues the winner's payout, resets every
best score, tops coins up to the daily floor and prunes old history, all in
one store transaction. A second close for the same label raises
AlreadyClosed and writes nothing.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from .errors import AlreadyClosed, UnknownWindow, WindowOpen
from .utils import now_utc

if TYPE_CHECKING:
    from .config import GameConfig
    from .database import GameDatabase


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════


class WindowState(Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class Window:
    """One scoring period. ``start``/``end`` are UTC-aware, end exclusive."""

    label: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass
class CloseResult:
    date: str
    participants: int
    prize_pool: int
    winner_account_id: int | None
    winner_best_score: float | None
    payout_status: str
    payout_id: int | None
    snapshot_rows: int
    scores_reset: int
    accounts_topped_up: int
    rows_pruned: int

    def to_dict(self) -> dict:
        return dict(self.__dict__)


def compute_prize_pool(participants: int, threshold: int, max_prize: int) -> int:
    """No prize below the participation threshold, else one point per participant, capped."""
    if participants < threshold:
        return 0
    return min(participants, max_prize)


# ═══════════════════════════════════════════════════════════════
#  Scheduler
# ═══════════════════════════════════════════════════════════════


class TournamentScheduler:
    """Computes window boundaries and performs the daily close."""

    def __init__(
        self,
        config: GameConfig,
        database: GameDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger
        self._tz = ZoneInfo(config.tournament.timezone)
        self._close_lock = asyncio.Lock()
        self._closing: set[str] = set()
        self.closes_total = 0

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config
        self._tz = ZoneInfo(new_config.tournament.timezone)

    # ══════════════════════════════════════════════════════════
    #  Window math
    # ══════════════════════════════════════════════════════════

    def _anchor_on(self, day: date) -> datetime:
        cfg = self._config.tournament
        local = datetime.combine(day, time(cfg.anchor_hour, cfg.anchor_minute), tzinfo=self._tz)
        return local.astimezone(timezone.utc)

    def _window_ending_on(self, day: date) -> Window:
        return Window(
            label=day.isoformat(),
            start=self._anchor_on(day - timedelta(days=1)),
            end=self._anchor_on(day),
        )

    def current_window(self, now: datetime | None = None) -> Window:
        """The window containing ``now``: the latest anchor <= now up to the next."""
        now = now or now_utc()
        local_day = now.astimezone(self._tz).date()
        if now >= self._anchor_on(local_day):
            return self._window_ending_on(local_day + timedelta(days=1))
        return self._window_ending_on(local_day)

    def previous_window(self, now: datetime | None = None) -> Window:
        """The most recently ended window."""
        current = self.current_window(now)
        end_day = date.fromisoformat(current.label)
        return self._window_ending_on(end_day - timedelta(days=1))

    def window_for_date(self, label: str) -> Window:
        try:
            day = date.fromisoformat(label)
        except (TypeError, ValueError) as e:
            raise UnknownWindow(f"Not a window date: {label!r}") from e
        return self._window_ending_on(day)

    async def window_state(self, label: str) -> WindowState:
        if label in self._closing:
            return WindowState.CLOSING
        if await self._db.get_daily_run(label) is not None:
            return WindowState.CLOSED
        return WindowState.OPEN

    async def window_status(self, now: datetime | None = None) -> dict:
        """Live view of the current window: participants and projected prize."""
        window = self.current_window(now)
        cfg = self._config.tournament
        participants = await self._db.get_window_participants(window.start, window.end)
        return {
            "date": window.label,
            "window_start": window.start.isoformat(),
            "window_end": window.end.isoformat(),
            "participants": participants,
            "participant_threshold": cfg.participant_threshold,
            "projected_prize_pool": compute_prize_pool(
                participants, cfg.participant_threshold, cfg.max_prize,
            ),
        }

    # ══════════════════════════════════════════════════════════
    #  Close
    # ══════════════════════════════════════════════════════════

    async def close_window(
        self, label: str | None = None, now: datetime | None = None,
    ) -> CloseResult:
        """Close the most recently ended window, or the one labelled ``label``.

        Raises UnknownWindow for a bad label, WindowOpen if the window has
        not ended yet, and AlreadyClosed if it was settled before.
        """
        now = now or now_utc()
        window = self.window_for_date(label) if label else self.previous_window(now)
        if window.end > now:
            raise WindowOpen(
                f"Window {window.label} ends at {window.end.isoformat()}.",
                {"date": window.label},
            )

        cfg = self._config.tournament
        prune_before = (
            date.fromisoformat(window.label) - timedelta(days=cfg.retention_days)
        ).isoformat()

        async with self._close_lock:
            self._closing.add(window.label)
            try:
                row = await self._db.close_window(
                    window.label,
                    window.start,
                    window.end,
                    snapshot_size=cfg.snapshot_size,
                    prize_for=lambda n: compute_prize_pool(
                        n, cfg.participant_threshold, cfg.max_prize,
                    ),
                    daily_coin_floor=cfg.daily_coin_floor,
                    prune_before=prune_before,
                    payout_key=uuid.uuid4().hex,
                )
            except AlreadyClosed:
                self._logger.info("Close skipped: window %s already closed", window.label)
                raise
            finally:
                self._closing.discard(window.label)

        self.closes_total += 1
        result = CloseResult(**row)
        self._logger.info(
            "Closed window %s: %d participants, prize %d, winner %s, %d accounts topped up",
            result.date, result.participants, result.prize_pool,
            result.winner_account_id, result.accounts_topped_up,
        )
        return result

    # ══════════════════════════════════════════════════════════
    #  History
    # ══════════════════════════════════════════════════════════

    async def list_closed_dates(self, limit: int = 30) -> list[str]:
        return await self._db.list_closed_dates(limit)

    async def get_daily_run(self, label: str) -> dict | None:
        self.window_for_date(label)
        return await self._db.get_daily_run(label)

    async def get_history_ranking(self, label: str) -> list[dict]:
        """Snapshot rows of a closed window, best first."""
        self.window_for_date(label)
        return await self._db.get_snapshot(label)
