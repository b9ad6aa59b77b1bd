"""Tests for TournamentScheduler — window math and the daily close."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from longshot.database import PAYOUT_PENDING, PAYOUT_SENT, RUN_PENDING, RUN_SKIPPED, GameDatabase
from longshot.errors import AlreadyClosed, UnknownWindow, WindowOpen
from longshot.tournament import TournamentScheduler, WindowState, compute_prize_pool

LABEL = "2026-03-01"


def _after(window) -> datetime:
    return window.end + timedelta(minutes=1)


# ═══════════════════════════════════════════════════════════════
#  Prize pool
# ═══════════════════════════════════════════════════════════════


@pytest.mark.parametrize("participants,expected", [
    (0, 0),
    (999, 0),
    (1000, 1000),
    (1200, 1200),
    (50000, 50000),
    (80000, 50000),
])
def test_compute_prize_pool(participants, expected):
    assert compute_prize_pool(participants, 1000, 50000) == expected


# ═══════════════════════════════════════════════════════════════
#  Window math
# ═══════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_window_for_date_boundaries(tournament: TournamentScheduler):
    window = tournament.window_for_date(LABEL)
    # 22:00 Asia/Seoul is 13:00 UTC
    assert window.start == datetime(2026, 2, 28, 13, 0, tzinfo=timezone.utc)
    assert window.end == datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)
    assert window.end - window.start == timedelta(days=1)


@pytest.mark.asyncio
async def test_window_for_bad_label(tournament: TournamentScheduler):
    with pytest.raises(UnknownWindow):
        tournament.window_for_date("yesterday")


@pytest.mark.asyncio
async def test_current_window_before_and_after_anchor(tournament: TournamentScheduler):
    before = datetime(2026, 3, 1, 12, 59, tzinfo=timezone.utc)
    at_anchor = datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)
    assert tournament.current_window(before).label == "2026-03-01"
    assert tournament.current_window(at_anchor).label == "2026-03-02"
    assert tournament.current_window(at_anchor).contains(at_anchor)
    assert not tournament.current_window(before).contains(at_anchor)


@pytest.mark.asyncio
async def test_previous_window(tournament: TournamentScheduler):
    now = datetime(2026, 3, 1, 14, 0, tzinfo=timezone.utc)
    assert tournament.previous_window(now).label == "2026-03-01"


@pytest.mark.asyncio
async def test_custom_anchor(config_factory, database: GameDatabase):
    scheduler = TournamentScheduler(
        config_factory(tournament={"timezone": "UTC", "anchor_hour": 0}),
        database,
        logging.getLogger("test"),
    )
    window = scheduler.window_for_date(LABEL)
    assert window.start == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert window.end == datetime(2026, 3, 1, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════
#  Close
# ═══════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_close_before_end_rejected(tournament: TournamentScheduler):
    window = tournament.window_for_date(LABEL)
    with pytest.raises(WindowOpen):
        await tournament.close_window(LABEL, now=window.end - timedelta(seconds=1))


@pytest.mark.asyncio
async def test_close_below_threshold_skips_payout(
    tournament: TournamentScheduler, database: GameDatabase, seed_account, seed_plays,
):
    window = tournament.window_for_date(LABEL)
    during = window.start + timedelta(hours=1)
    a = await seed_account(coins=3, nickname="alice", best_score=0.25)
    b = await seed_account(coins=50, best_score=0.5)
    await seed_plays([
        (a, 0.25, "success", during),
        (a, 1.0, "fail", during),
        (b, 0.5, "success", during),
    ])

    result = await tournament.close_window(LABEL, now=_after(window))
    assert result.participants == 2
    assert result.prize_pool == 0
    assert result.winner_account_id is None
    assert result.payout_status == RUN_SKIPPED
    assert result.payout_id is None
    assert result.snapshot_rows == 2
    assert result.scores_reset == 2
    assert result.accounts_topped_up == 1

    assert (await database.get_account(a))["best_score"] is None
    assert await database.get_balance(a) == 10
    assert await database.get_balance(b) == 50
    assert await database.get_pending_payouts() == []
    assert tournament.closes_total == 1


@pytest.mark.asyncio
async def test_only_plays_inside_window_count(
    tournament: TournamentScheduler, seed_account, seed_plays,
):
    window = tournament.window_for_date(LABEL)
    a = await seed_account()
    b = await seed_account()
    c = await seed_account()
    await seed_plays([
        (a, 0.5, "success", window.start),
        (b, 0.001, "success", window.end),
        (c, 0.001, "success", window.start - timedelta(microseconds=1)),
    ])

    result = await tournament.close_window(LABEL, now=_after(window))
    assert result.participants == 1
    assert result.snapshot_rows == 1

    ranking = await tournament.get_history_ranking(LABEL)
    assert [r["account_id"] for r in ranking] == [a]


@pytest.mark.asyncio
async def test_close_with_prize_queues_payout(
    tournament: TournamentScheduler,
    database: GameDatabase,
    seed_many_accounts,
    seed_plays,
):
    """1200 participants over a 1000 threshold pays 1200 points to the best score."""
    window = tournament.window_for_date(LABEL)
    during = window.start + timedelta(hours=1)
    ids = await seed_many_accounts(1200, coins=5)
    rows = [(aid, 1.0, "fail", during) for aid in ids]
    rows.append((ids[10], 0.001, "success", during))
    rows.append((ids[20], 0.002, "success", during))
    rows.append((ids[30], 0.002, "success", during))
    rows.append((ids[10], 0.5, "success", during))
    await seed_plays(rows)

    result = await tournament.close_window(LABEL, now=_after(window))
    assert result.participants == 1200
    assert result.prize_pool == 1200
    assert result.winner_account_id == ids[10]
    assert result.winner_best_score == 0.001
    assert result.payout_status == RUN_PENDING
    assert result.accounts_topped_up == 1200

    payouts = await database.get_payouts_for_date(LABEL)
    assert len(payouts) == 1
    assert payouts[0]["status"] == PAYOUT_PENDING
    assert payouts[0]["points"] == 1200
    assert payouts[0]["account_id"] == ids[10]

    ranking = await tournament.get_history_ranking(LABEL)
    assert [(r["rank"], r["account_id"]) for r in ranking] == [
        (1, ids[10]), (2, ids[20]), (2, ids[30]),
    ]
    assert ranking[0]["best_score_in_window"] == 0.001

    run = await tournament.get_daily_run(LABEL)
    assert run["prize_pool"] == 1200
    assert run["winner_account_id"] == ids[10]


@pytest.mark.asyncio
async def test_prize_without_successful_play_has_no_winner(
    config_factory, database: GameDatabase, seed_account, seed_plays,
):
    scheduler = TournamentScheduler(
        config_factory(tournament={"participant_threshold": 1}),
        database,
        logging.getLogger("test"),
    )
    window = scheduler.window_for_date(LABEL)
    a = await seed_account()
    await seed_plays([(a, 1.0, "fail", window.start + timedelta(hours=2))])

    result = await scheduler.close_window(LABEL, now=_after(window))
    assert result.prize_pool == 1
    assert result.winner_account_id is None
    assert result.payout_status == RUN_SKIPPED
    assert await database.get_payouts_for_date(LABEL) == []


@pytest.mark.asyncio
async def test_close_is_idempotent(
    tournament: TournamentScheduler, database: GameDatabase, seed_account, seed_plays,
):
    window = tournament.window_for_date(LABEL)
    a = await seed_account(coins=2, best_score=0.3)
    await seed_plays([(a, 0.3, "success", window.start + timedelta(hours=1))])
    await tournament.close_window(LABEL, now=_after(window))

    # Activity after the first close must survive a repeated close
    await database.credit(a, 5, "test")
    await database.debit(a, 15, "test")
    with pytest.raises(AlreadyClosed):
        await tournament.close_window(LABEL, now=_after(window))

    assert await database.get_balance(a) == 0
    assert await tournament.list_closed_dates() == [LABEL]
    assert tournament.closes_total == 1


@pytest.mark.asyncio
async def test_concurrent_closes_settle_once(
    tournament: TournamentScheduler, seed_account, seed_plays,
):
    window = tournament.window_for_date(LABEL)
    a = await seed_account()
    await seed_plays([(a, 0.3, "success", window.start + timedelta(hours=1))])

    results = await asyncio.gather(
        tournament.close_window(LABEL, now=_after(window)),
        tournament.close_window(LABEL, now=_after(window)),
        return_exceptions=True,
    )
    assert sum(1 for r in results if isinstance(r, AlreadyClosed)) == 1
    assert tournament.closes_total == 1


@pytest.mark.asyncio
async def test_close_without_label_uses_previous_window(tournament: TournamentScheduler):
    window = tournament.window_for_date(LABEL)
    result = await tournament.close_window(now=_after(window))
    assert result.date == LABEL
    assert result.participants == 0


@pytest.mark.asyncio
async def test_window_state(tournament: TournamentScheduler):
    window = tournament.window_for_date(LABEL)
    assert await tournament.window_state(LABEL) is WindowState.OPEN
    await tournament.close_window(LABEL, now=_after(window))
    assert await tournament.window_state(LABEL) is WindowState.CLOSED


@pytest.mark.asyncio
async def test_window_status_projects_prize(
    config_factory, database: GameDatabase, seed_account, seed_plays,
):
    scheduler = TournamentScheduler(
        config_factory(tournament={"participant_threshold": 2}),
        database,
        logging.getLogger("test"),
    )
    window = scheduler.window_for_date(LABEL)
    during = window.start + timedelta(hours=3)
    a = await seed_account()
    b = await seed_account()
    await seed_plays([(a, 1.0, "fail", during), (b, 1.0, "fail", during)])

    status = await scheduler.window_status(during)
    assert status["date"] == LABEL
    assert status["participants"] == 2
    assert status["projected_prize_pool"] == 2


@pytest.mark.asyncio
async def test_close_prunes_old_history(
    tournament: TournamentScheduler, database: GameDatabase, seed_account, seed_plays,
):
    old = tournament.window_for_date(LABEL)
    winner = await seed_account(identity_key="w")
    await seed_plays([(winner, 0.1, "success", old.start + timedelta(hours=1))])

    tournament._config.tournament.participant_threshold = 1
    first = await tournament.close_window(LABEL, now=_after(old))
    await database.finish_payout(first.payout_id, PAYOUT_SENT, {"ok": True})

    later_label = "2026-04-15"
    later = tournament.window_for_date(later_label)
    result = await tournament.close_window(later_label, now=_after(later))

    # one snapshot row and one SENT payout from 2026-03-01
    assert result.rows_pruned == 2
    assert await tournament.get_history_ranking(LABEL) == []
    assert await database.get_payouts_for_date(LABEL) == []
    # the daily run itself is kept
    assert (await tournament.get_daily_run(LABEL))["prize_pool"] == 1


@pytest.mark.asyncio
async def test_history_rejects_bad_label(tournament: TournamentScheduler):
    with pytest.raises(UnknownWindow):
        await tournament.get_history_ranking("not-a-date")


@pytest.mark.asyncio
async def test_failed_close_writes_nothing(
    tournament: TournamentScheduler, database: GameDatabase, seed_account, seed_plays,
):
    window = tournament.window_for_date(LABEL)
    a = await seed_account(coins=1, best_score=0.2)
    await seed_plays([(a, 0.2, "success", window.start + timedelta(hours=1))])

    with patch("longshot.tournament.compute_prize_pool", side_effect=RuntimeError("boom")):
        with pytest.raises(RuntimeError):
            await tournament.close_window(LABEL, now=_after(window))

    assert await tournament.get_daily_run(LABEL) is None
    assert await tournament.get_history_ranking(LABEL) == []
    assert (await database.get_account(a))["best_score"] == 0.2
    assert await database.get_balance(a) == 1
    assert await tournament.window_state(LABEL) is WindowState.OPEN
    assert tournament.closes_total == 0

    # The window can still be closed afterwards
    result = await tournament.close_window(LABEL, now=_after(window))
    assert result.snapshot_rows == 1


@pytest.mark.asyncio
async def test_snapshot_keeps_top_rows_only(
    tournament: TournamentScheduler, seed_many_accounts, seed_plays,
):
    window = tournament.window_for_date(LABEL)
    during = window.start + timedelta(hours=1)
    ids = await seed_many_accounts(150)
    # later ids get strictly better scores
    await seed_plays([
        (aid, 1.0 / (i + 2), "success", during) for i, aid in enumerate(ids)
    ])

    result = await tournament.close_window(LABEL, now=_after(window))
    assert result.participants == 150
    assert result.snapshot_rows == 100

    ranking = await tournament.get_history_ranking(LABEL)
    assert len(ranking) == 100
    assert [r["rank"] for r in ranking] == list(range(1, 101))
    assert ranking[0]["account_id"] == ids[-1]
    assert ranking[-1]["account_id"] == ids[50]
    scores = [r["best_score_in_window"] for r in ranking]
    assert scores == sorted(scores)


@pytest.mark.asyncio
async def test_late_close_keeps_bests_from_next_window(
    tournament: TournamentScheduler, database: GameDatabase, seed_account, seed_plays,
):
    window = tournament.window_for_date(LABEL)
    a = await seed_account(coins=5, best_score=0.2)
    b = await seed_account(coins=5, best_score=0.3)
    await seed_plays([
        (a, 0.2, "success", window.start + timedelta(hours=1)),
        (b, 0.3, "success", window.start + timedelta(hours=2)),
        # Played after the window ended but before the close ran
        (a, 0.4, "success", window.end + timedelta(minutes=5)),
        (b, 1.0, "fail", window.end + timedelta(minutes=6)),
    ])

    result = await tournament.close_window(LABEL, now=window.end + timedelta(hours=2))
    assert result.participants == 2
    assert result.scores_reset == 2

    assert (await database.get_account(a))["best_score"] == 0.4
    assert (await database.get_account(b))["best_score"] is None
    ranking = await tournament.get_history_ranking(LABEL)
    assert [(r["account_id"], r["best_score_in_window"]) for r in ranking] == [(a, 0.2), (b, 0.3)]
