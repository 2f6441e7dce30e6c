"""
Error taxonomy for xswap.

Every public operation either returns a payload or raises one of these.
The `code` attribute is stable and is what the REST layer reports.

Retry policy by family:
- ValidationError, TimingError, ConflictError, SecretMismatchError: never retried
- TransientChainError: bounded retry at the orchestrator boundary
- PartialProtocolFailure: surfaced to the caller (retry claim or refund later)
"""

from typing import Any, Dict, List, Optional


class SwapError(Exception):
    """Base class for all swap errors."""
    code = "swap_error"
    retryable = False

    def __init__(self, message: str = "", order_hash: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_hash = order_hash

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        if self.order_hash:
            data["order_hash"] = self.order_hash
        return data


# =============================================================================
# Validation (bad parameters, rejected before any on-chain action)
# =============================================================================

class ValidationError(SwapError, ValueError):
    code = "validation_error"

    def __init__(self, message: str = "", errors: Optional[List[str]] = None,
                 order_hash: Optional[str] = None):
        super().__init__(message, order_hash)
        self.errors = errors or ([message] if message else [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = list(self.errors)
        return data


class UnsupportedDirection(ValidationError):
    code = "unsupported_direction"


class UnsupportedChainTimeUnit(ValidationError):
    code = "unsupported_chain_time_unit"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class InvalidTimelock(ValidationError):
    code = "invalid_timelock"


class Unsupported(ValidationError):
    code = "unsupported"


# =============================================================================
# Timing (timelock already past, refund too early, claim too late)
# =============================================================================

class TimingError(SwapError):
    code = "timing_error"

    def __init__(self, message: str = "", order_hash: Optional[str] = None,
                 receipts: Optional[list] = None):
        super().__init__(message, order_hash)
        # Receipts of legs that did succeed before the timing failure
        self.receipts = receipts or []


class NotExpired(TimingError):
    code = "not_expired"


class Expired(TimingError):
    code = "expired"


# =============================================================================
# Conflicts and lookups
# =============================================================================

class ConflictError(SwapError):
    code = "conflict"


class AlreadyExists(ConflictError):
    code = "already_exists"


class NotFound(SwapError):
    code = "not_found"


class NotActive(SwapError):
    code = "not_active"


class StatePreconditionError(SwapError):
    """Operation not allowed in the swap's current state."""
    code = "state_precondition"


# =============================================================================
# Secrets
# =============================================================================

class SecretMismatchError(SwapError):
    code = "secret_mismatch"


class InvalidSecret(SecretMismatchError):
    code = "invalid_secret"


class EntropyError(SwapError):
    """OS randomness unavailable. Fatal."""
    code = "entropy_error"


# =============================================================================
# Chain / protocol
# =============================================================================

class TransientChainError(SwapError):
    """RPC timeout, node unavailable, tx not yet confirmed."""
    code = "transient_chain_error"
    retryable = True


class PartialProtocolFailure(SwapError):
    """
    Escrow steps succeeded but a later step failed.

    No rollback is possible once funds are escrowed. `steps` holds the
    completed StepResults so the caller can retry the claim or fall back
    to refund once the relevant timelock elapses.
    """
    code = "partial_protocol_failure"

    def __init__(self, message: str = "", order_hash: Optional[str] = None,
                 steps: Optional[list] = None, cause: Optional[BaseException] = None,
                 failed_step: int = 0):
        super().__init__(message, order_hash)
        self.steps = steps or []
        self.cause = cause
        self.failed_step = failed_step

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["failed_step"] = self.failed_step
        data["completed_steps"] = len(self.steps)
        if isinstance(self.cause, SwapError):
            data["cause"] = self.cause.to_dict()
        elif self.cause is not None:
            data["cause"] = {"code": "error", "message": str(self.cause)}
        return data


class ChainRevertError(SwapError):
    """Transaction mined but reverted for a reason no precheck caught."""
    code = "chain_revert"

    def __init__(self, message: str = "", order_hash: Optional[str] = None,
                 tx_hash: Optional[str] = None):
        super().__init__(message, order_hash)
        self.tx_hash = tx_hash
