"""
Secret and hashlock primitives.

The hashlock function must match what the escrow program on each chain
verifies with: SHA-256 for EVM and NEAR contracts, SHA3-256 where a
chain's native primitive differs. Both legs of a swap share one hashlock,
so both chains of a pair must verify with the same function.
"""

import hashlib
import hmac
import secrets
from enum import Enum
from typing import Tuple, Union

from ..errors import EntropyError

SECRET_SIZE = 32


class HashAlgorithm(Enum):
    SHA256 = "sha256"
    SHA3_256 = "sha3_256"

    def digest(self, data: bytes) -> bytes:
        if self is HashAlgorithm.SHA3_256:
            return hashlib.sha3_256(data).digest()
        return hashlib.sha256(data).digest()


def normalize_hex(value: str) -> str:
    """Strip an optional 0x prefix and lowercase."""
    value = value.strip()
    if value[:2].lower() == "0x":
        value = value[2:]
    return value.lower()


def to_bytes(value: Union[str, bytes]) -> bytes:
    """Hex string (with or without 0x) or raw bytes -> bytes."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(normalize_hex(value))


def generate_secret(algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> Tuple[str, str]:
    """
    Generate a random secret and its hashlock.

    Returns:
        (secret_hex, hashlock_hex)
    """
    try:
        secret = secrets.token_bytes(SECRET_SIZE)
    except (OSError, NotImplementedError) as e:
        raise EntropyError(f"Entropy source unavailable: {e}")
    return secret.hex(), algorithm.digest(secret).hex()


def hashlock_of(secret: Union[str, bytes],
                algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> str:
    """Hashlock (hex) for a secret given as hex or bytes."""
    return algorithm.digest(to_bytes(secret)).hex()


def verify_preimage(secret: Union[str, bytes], hashlock: Union[str, bytes],
                    algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> bool:
    """
    Verify that H(secret) == hashlock.

    Never raises: malformed hex or wrong lengths simply fail.
    """
    try:
        preimage = to_bytes(secret)
        expected = to_bytes(hashlock)
    except (ValueError, TypeError, AttributeError):
        return False

    if len(preimage) != SECRET_SIZE or len(expected) != SECRET_SIZE:
        return False

    return hmac.compare_digest(algorithm.digest(preimage), expected)


def hashlocks_equal(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """Byte-for-byte hashlock equality. Malformed input is never equal."""
    try:
        left, right = to_bytes(a), to_bytes(b)
    except (ValueError, TypeError, AttributeError):
        return False
    if len(left) != SECRET_SIZE or len(right) != SECRET_SIZE:
        return False
    return hmac.compare_digest(left, right)
