"""Domain errors for longshot.

Every failure a caller can act on is a ``GameError`` subclass. Families:

- ``ClientError``: malformed or forbidden request, nothing to retry.
- ``ResourceError``: the account lacks something (coins, cooldown budget);
  the client should take a compensating action rather than retry.
- ``IdempotencyError``: the effect already happened, or can never happen
  again for this key.
- ``PayoutError``: a single payout attempt failed; retryable on a later drain.

Errors raised inside a store transaction roll that transaction back.
"""

from __future__ import annotations

from typing import Any


class GameError(Exception):
    """Base class for all domain errors."""

    error_code: str = "INTERNAL"
    retryable: bool = False

    def __init__(self, message: str = "", details: dict[str, Any] | None = None) -> None:
        self.message = message or self.__class__.__name__
        self.details: dict[str, Any] = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for API responses and logs."""
        data: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data

    def __str__(self) -> str:
        details_str = f" | {self.details}" if self.details else ""
        return f"[{self.error_code}] {self.message}{details_str}"


# ═══════════════════════════════════════════════════════════════
#  Families
# ═══════════════════════════════════════════════════════════════


class ClientError(GameError):
    error_code = "BAD_REQUEST"


class ResourceError(GameError):
    error_code = "RESOURCE"


class IdempotencyError(GameError):
    error_code = "ALREADY_DONE"


class PayoutError(GameError):
    error_code = "PAYOUT_ERROR"
    retryable = True


# ═══════════════════════════════════════════════════════════════
#  Client errors
# ═══════════════════════════════════════════════════════════════


class Unauthenticated(ClientError):
    error_code = "UNAUTHENTICATED"


class AccountNotFound(ClientError):
    error_code = "ACCOUNT_NOT_FOUND"


class InvalidProbability(ClientError):
    error_code = "INVALID_PROBABILITY"


class InvalidScore(ClientError):
    error_code = "INVALID_SCORE"


class BadNickname(ClientError):
    error_code = "BAD_NICK"


class DuplicateNickname(ClientError):
    error_code = "DUPLICATE_NICKNAME"


class DuplicateIdentity(ClientError):
    error_code = "DUPLICATE_IDENTITY"


class NoRef(ClientError):
    error_code = "NO_REF"


class SelfReferral(ClientError):
    error_code = "SELF_REFERRAL"


class ReferrerNotFound(ClientError):
    error_code = "REF_NOT_FOUND"


class NoRewardKey(ClientError):
    error_code = "NO_REWARD_KEY"


class UnknownWindow(ClientError):
    error_code = "UNKNOWN_WINDOW"


class WindowOpen(ClientError):
    error_code = "WINDOW_OPEN"


# ═══════════════════════════════════════════════════════════════
#  Resource errors
# ═══════════════════════════════════════════════════════════════


class NoCoins(ResourceError):
    error_code = "NO_COINS"


class InsufficientFunds(ResourceError):
    error_code = "INSUFFICIENT_FUNDS"


class Cooldown(ResourceError):
    error_code = "COOLDOWN"

    def __init__(self, retry_after: float, message: str = "") -> None:
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            message or f"Try again in {int(self.retry_after) + 1}s.",
            {"retry_after": round(self.retry_after, 3)},
        )


# ═══════════════════════════════════════════════════════════════
#  Idempotency errors
# ═══════════════════════════════════════════════════════════════


class DuplicateReward(IdempotencyError):
    error_code = "DUPLICATE_REWARD"


class AlreadyClaimed(IdempotencyError):
    error_code = "ALREADY_CLAIMED"


class AlreadyClosed(IdempotencyError):
    error_code = "ALREADY_CLOSED"


# ═══════════════════════════════════════════════════════════════
#  Payout errors
# ═══════════════════════════════════════════════════════════════


class NoExternalIdentity(PayoutError):
    error_code = "NO_EXTERNAL_IDENTITY"


class PayoutFailed(PayoutError):
    error_code = "PAYOUT_FAILED"
