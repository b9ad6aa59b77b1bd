"""Payout processor — drains PENDING prize payouts.

Each PENDING record is attempted once per drain. Success marks it SENT with
the API response; any failure (no linked identity, API error, timeout)
marks it FAILED with the error detail. FAILED records are kept and can be
put back to PENDING with ``requeue_failed``. Every attempt for a record
carries the same idempotency key, generated when the record was created,
so a re-drive after an ambiguous timeout cannot pay twice.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from .database import PAYOUT_FAILED, PAYOUT_SENT
from .errors import NoExternalIdentity, PayoutError

if TYPE_CHECKING:
    from .database import GameDatabase


class PayoutCapability(Protocol):
    async def attempt_payout(
        self, identity_key: str, points: int, idempotency_key: str,
    ) -> dict: ...


@dataclass
class DrainReport:
    attempted: int = 0
    sent: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class PayoutProcessor:
    """Sends queued prize payouts through the external capability."""

    def __init__(
        self,
        database: GameDatabase,
        capability: PayoutCapability,
        logger: logging.Logger,
    ) -> None:
        self._db = database
        self._capability = capability
        self._logger = logger
        self._drain_lock = asyncio.Lock()

        # Counters (for metrics)
        self.sent_total = 0
        self.failed_total = 0

    async def drain(self) -> DrainReport:
        """Attempt every PENDING payout once. One failure never blocks the rest."""
        report = DrainReport()
        async with self._drain_lock:
            pending = await self._db.get_pending_payouts()
            for record in pending:
                report.attempted += 1
                status = await self._process_one(record)
                if status == PAYOUT_SENT:
                    report.sent.append(record["id"])
                elif status == PAYOUT_FAILED:
                    report.failed.append(record["id"])
                else:
                    report.skipped.append(record["id"])

        if report.attempted:
            self._logger.info(
                "Payout drain: %d attempted, %d sent, %d failed",
                report.attempted, len(report.sent), len(report.failed),
            )
        return report

    async def _process_one(self, record: dict) -> str | None:
        """Attempt one record. Returns the status written, or None if it moved on."""
        payout_id = record["id"]
        try:
            if not record.get("identity_key"):
                raise NoExternalIdentity(
                    f"Account {record['account_id']} has no linked identity.",
                    {"account_id": record["account_id"]},
                )
            response = await self._capability.attempt_payout(
                record["identity_key"], record["points"], record["idempotency_key"],
            )
        except PayoutError as e:
            status, payload = PAYOUT_FAILED, e.to_dict()
            self._logger.warning("Payout %s for %s failed: %s", payout_id, record["date"], e)
        except Exception as e:
            # Capabilities are expected to raise PayoutError; anything else is
            # still a failed attempt for this record only.
            status, payload = PAYOUT_FAILED, {"error": type(e).__name__, "message": str(e)}
            self._logger.exception("Payout %s for %s raised unexpectedly", payout_id, record["date"])
        else:
            status, payload = PAYOUT_SENT, response
            self._logger.info(
                "Payout %s sent: %d points to account %s",
                payout_id, record["points"], record["account_id"],
            )

        if not await self._db.finish_payout(payout_id, status, payload):
            self._logger.warning("Payout %s was no longer PENDING; result discarded", payout_id)
            return None
        if status == PAYOUT_SENT:
            self.sent_total += 1
        else:
            self.failed_total += 1
        return status

    async def requeue_failed(self, date: str | None = None) -> int:
        """Put FAILED payouts (all, or one date's) back to PENDING."""
        count = await self._db.requeue_failed_payouts(date)
        self._logger.info("Requeued %d failed payouts%s", count, f" for {date}" if date else "")
        return count
