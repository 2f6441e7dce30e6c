"""
Order identity and HTLC parameter validation.

The order hash is the registry key and the on-chain correlation key between
the two escrow legs. It is SHA-256 over the compact JSON encoding of the
swap terms, the hashlock and a nonce (creation time in ms by default), with
a fixed key order so every implementation derives the same hash.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ValidationError
from .crypto import SECRET_SIZE, normalize_hex
from .timelock import now_ms

ORDER_FIELDS = (
    "srcChain", "dstChain", "srcToken", "dstToken",
    "srcAmount", "dstAmount", "maker", "recipient",
)

DEFAULT_MAX_TIMELOCK_HORIZON_MS = 24 * 60 * 60 * 1000


def create_order_hash(terms: Mapping[str, Any], hashlock: str,
                      nonce: Optional[int] = None) -> str:
    """
    Deterministic order hash.

    Args:
        terms: srcChain, dstChain, srcToken, dstToken, srcAmount, dstAmount,
               maker, recipient
        hashlock: hex hashlock
        nonce: uniqueness nonce, defaults to now in ms

    Returns:
        64-char hex digest
    """
    missing = [k for k in ORDER_FIELDS if k not in terms]
    if missing:
        raise ValidationError(f"Order terms missing: {', '.join(missing)}")

    order_data = {k: terms[k] for k in ORDER_FIELDS}
    order_data["srcAmount"] = str(order_data["srcAmount"])
    order_data["dstAmount"] = str(order_data["dstAmount"])
    order_data["hashLock"] = normalize_hex(hashlock)
    order_data["nonce"] = now_ms() if nonce is None else nonce

    data_string = json.dumps(order_data, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data_string.encode("utf-8")).hexdigest()


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def raise_if_invalid(self, prefix: str = "Invalid HTLC parameters"):
        if not self.valid:
            raise ValidationError(f"{prefix}: {', '.join(self.errors)}", errors=self.errors)


def _is_positive(amount: Any) -> bool:
    try:
        return int(amount) > 0
    except (TypeError, ValueError):
        return False


def validate_htlc_params(params: Mapping[str, Any], now: Optional[int] = None,
                         max_horizon_ms: int = DEFAULT_MAX_TIMELOCK_HORIZON_MS) -> ValidationResult:
    """
    Validate an HTLC parameter set.

    Expected keys: hashLock (hex), timelock (ms), srcAmount, dstAmount,
    maker, recipient.
    """
    errors = []
    t = now_ms() if now is None else now

    hash_lock = params.get("hashLock")
    if not hash_lock:
        errors.append("Hash lock is required")
    else:
        try:
            if len(bytes.fromhex(normalize_hex(hash_lock))) != SECRET_SIZE:
                errors.append("Hash lock must be 32 bytes (64 hex characters)")
        except (ValueError, TypeError, AttributeError):
            errors.append("Hash lock must be 32 bytes (64 hex characters)")

    timelock = params.get("timelock")
    if not timelock:
        errors.append("Timelock is required")
    elif timelock <= t:
        errors.append("Timelock must be in the future")
    elif timelock > t + max_horizon_ms:
        hours = max_horizon_ms / 3_600_000
        errors.append(f"Timelock cannot be more than {hours:g} hours in the future")

    if not _is_positive(params.get("srcAmount")):
        errors.append("Source amount must be greater than 0")

    if not _is_positive(params.get("dstAmount")):
        errors.append("Destination amount must be greater than 0")

    if not params.get("maker"):
        errors.append("Maker address is required")

    if not params.get("recipient"):
        errors.append("Recipient address is required")

    return ValidationResult(valid=not errors, errors=errors)


def order_summary(terms: Mapping[str, Any]) -> Dict[str, str]:
    """Loggable subset of the terms (amounts as strings)."""
    return {
        "srcChain": str(terms.get("srcChain")),
        "dstChain": str(terms.get("dstChain")),
        "srcAmount": str(terms.get("srcAmount")),
        "dstAmount": str(terms.get("dstAmount")),
    }
