"""External points payout capability.

``PointsPayoutClient`` posts one payout to the partner points API over
aiohttp; ``SimulatedPayoutClient`` stands in for it where no live payment
credentials exist and always reports success. Both expose::

    await client.attempt_payout(identity_key, points, idempotency_key) -> dict

which returns the API's (or simulated) response payload and raises
PayoutFailed on any error. A timeout is a failure, never a success.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import aiohttp

from .errors import PayoutFailed
from .utils import now_utc

if TYPE_CHECKING:
    from .config import PayoutConfig


class PointsPayoutClient:
    """Async client for the partner points payout API."""

    def __init__(self, config: PayoutConfig, logger: logging.Logger) -> None:
        self._config = config
        self._logger = logger
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        """Create the HTTP session."""
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        self._session = aiohttp.ClientSession(
            base_url=self._config.base_url,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def attempt_payout(
        self, identity_key: str, points: int, idempotency_key: str,
    ) -> dict:
        """Send one payout. Raises PayoutFailed on any error or timeout."""
        if not self._session:
            raise PayoutFailed("Payout client is not started.")

        body = {
            "userKey": identity_key,
            "amount": points,
            "transactionId": idempotency_key,
        }
        try:
            async with self._session.post(
                self._config.endpoint,
                json=body,
                headers={"Idempotency-Key": idempotency_key},
            ) as resp:
                if resp.status >= 400:
                    # Error pages are often not JSON; keep the raw text for the record
                    body = await resp.text()
                    raise PayoutFailed(
                        f"Points API returned HTTP {resp.status}",
                        {"status": resp.status, "body": body[:1000]},
                    )
                data: Any = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise PayoutFailed(
                f"Points API timed out after {self._config.timeout_seconds}s",
            ) from e
        except aiohttp.ClientError as e:
            raise PayoutFailed(f"Points API request failed: {e}") from e
        except ValueError as e:
            raise PayoutFailed(f"Points API returned an unreadable body: {e}") from e

        if isinstance(data, dict) and data.get("resultType") == "FAIL":
            raise PayoutFailed("Points API rejected the payout", {"body": data})
        return data if isinstance(data, dict) else {"body": data}


class SimulatedPayoutClient:
    """Dry-run payout capability: logs and reports success without sending."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger
        self.sent: list[tuple[str, int, str]] = []

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def attempt_payout(
        self, identity_key: str, points: int, idempotency_key: str,
    ) -> dict:
        self.sent.append((identity_key, points, idempotency_key))
        self._logger.info("[dry-run] payout of %d points (key %s)", points, idempotency_key)
        return {
            "resultType": "SUCCESS",
            "simulated": True,
            "transactionId": idempotency_key,
            "at": now_utc().isoformat(),
        }


def build_payout_client(
    config: PayoutConfig, logger: logging.Logger,
) -> PointsPayoutClient | SimulatedPayoutClient:
    """Pick the live or simulated client from ``payout.dry_run``."""
    if config.dry_run:
        return SimulatedPayoutClient(logger)
    if not config.base_url:
        raise ValueError("payout.base_url is required when payout.dry_run is false")
    return PointsPayoutClient(config, logger)
