# mlm_engine/errors.py
"""
Engine error taxonomy.

Validation, balance and eligibility errors are surfaced to callers with the
details a client needs for display. DuplicateBonus and ConcurrentModification
are resolved inside the engine and never reach a caller as failures.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""
    code = "engine_error"

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class InsufficientBalance(EngineError):
    code = "insufficient_balance"

    def __init__(self, needed: Decimal, available: Decimal, walletClass: str = None):
        self.needed = needed
        self.available = available
        self.walletClass = walletClass
        wallet = f"{walletClass} " if walletClass else ""
        super().__init__(
            f"Insufficient {wallet}balance: needed {needed}, available {available}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"needed": str(self.needed), "available": str(self.available)})
        return data


class UnknownSponsor(EngineError):
    code = "unknown_sponsor"

    def __init__(self, sponsorRef):
        self.sponsorRef = sponsorRef
        super().__init__(f"Sponsor not found: {sponsorRef!r}")


class InvalidPlacement(EngineError):
    code = "invalid_placement"


class DuplicateBonus(EngineError):
    """Idempotency key already used. Internal only."""
    code = "duplicate"

    def __init__(self, idempotencyKey: str, transactionId: Optional[int] = None):
        self.idempotencyKey = idempotencyKey
        self.transactionId = transactionId
        super().__init__(f"Already posted: {idempotencyKey}")


class InvalidAmount(EngineError):
    code = "invalid_amount"

    def __init__(self, amount, minimum: Decimal = None, step: Decimal = None, reason: str = None):
        self.amount = amount
        self.minimum = minimum
        self.step = step
        if reason is None:
            reason = f"Amount {amount} must be at least {minimum} and a multiple of {step}"
        super().__init__(reason)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "amount": str(self.amount),
            "minimum": str(self.minimum) if self.minimum is not None else None,
            "step": str(self.step) if self.step is not None else None,
        })
        return data


class NotEligible(EngineError):
    code = "not_eligible"

    def __init__(self, reason: str, remainingDays: int = None, eligibleAt: datetime = None):
        self.reason = reason
        self.remainingDays = remainingDays
        self.eligibleAt = eligibleAt
        super().__init__(reason)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "remainingDays": self.remainingDays,
            "eligibleAt": self.eligibleAt.isoformat() if self.eligibleAt else None,
        })
        return data


class ConcurrentModification(EngineError):
    """Another writer got there first. Internal only."""
    code = "concurrent_modification"


class InvalidOtp(EngineError):
    code = "invalid_otp"


class OTPDeliveryError(EngineError):
    code = "otp_delivery_failed"


class PermissionDenied(EngineError):
    code = "permission_denied"


class NotFound(EngineError):
    code = "not_found"


class LedgerIntegrityError(EngineError):
    """Attempt to mutate or delete a ledger entry outside the allowed transitions."""
    code = "ledger_integrity"


class LedgerUnavailable(EngineError):
    """Ledger store cannot be reached. Hard failure, never retried silently."""
    code = "ledger_unavailable"
