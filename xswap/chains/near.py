"""
NEAR escrow backend.

Talks to the NEAR escrow contract over JSON-RPC (httpx). Transactions are
borsh-encoded and signed with ed25519 (PyNaCl) locally, then sent with
broadcast_tx_commit.

Contract methods:
- create_htlc(order_hash, src_maker, src_chain, src_token, src_amount,
  dst_recipient, dst_token, hash_lock, timelock) with attached deposit
- complete_htlc(order_hash, secret)
- refund_htlc(order_hash)
- get_swap_order(order_hash), is_htlc_active(order_hash) (views)

Byte arrays travel as base64 strings (Base64VecU8); timelocks are block
timestamps in nanoseconds.
"""

import base64
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import base58
import httpx
from nacl.signing import SigningKey

from ..config import NEARConfig
from ..core import ChainId, ChainOrderView, EscrowReceipt, LockState, Party
from ..errors import (
    AlreadyExists, ChainRevertError, Expired, InvalidAmount, InvalidSecret,
    InvalidTimelock, NotActive, NotExpired, NotFound, SwapError,
    TransientChainError, Unsupported, ValidationError,
)
from ..htlc.crypto import SECRET_SIZE, HashAlgorithm, normalize_hex, to_bytes, verify_preimage
from ..htlc.timelock import ChainTimeUnit, native_to_ms
from .base import EscrowAdapter

log = logging.getLogger(__name__)

# Contract panic message -> error. Checked in order ("HTLC not expired"
# contains "HTLC expired").
PANIC_ERRORS = [
    ("Order already exists", AlreadyExists),
    ("Order not found", NotFound),
    ("Order not active", NotActive),
    ("HTLC not expired", NotExpired),
    ("HTLC expired", Expired),
    ("Invalid secret", InvalidSecret),
    ("Invalid hash lock length", ValidationError),
    ("Must attach deposit", InvalidAmount),
    ("Timelock too short", InvalidTimelock),
    ("Timelock too long", InvalidTimelock),
    ("Unsupported source chain", Unsupported),
]

# RPC error causes that mean "try again later"
TRANSIENT_CAUSES = {"TIMEOUT_ERROR", "NO_SYNCED_BLOCKS", "INTERNAL_ERROR", "UNKNOWN_BLOCK"}

CONTRACT_STATES = {
    "Active": LockState.ACTIVE,
    "Completed": LockState.CLAIMED,
    "Refunded": LockState.REFUNDED,
    "Expired": LockState.EXPIRED,
}


# =============================================================================
# Borsh encoding
# =============================================================================

def _borsh_string(value: str) -> bytes:
    data = value.encode()
    return len(data).to_bytes(4, "little") + data


def serialize_function_call(method_name: str, args: bytes, gas: int, deposit: int) -> bytes:
    """FunctionCall action (enum index 2)."""
    return (
        (2).to_bytes(1, "little")
        + _borsh_string(method_name)
        + len(args).to_bytes(4, "little") + args
        + gas.to_bytes(8, "little")
        + deposit.to_bytes(16, "little")
    )


def serialize_transaction(signer_id: str, public_key: bytes, nonce: int,
                          receiver_id: str, block_hash: bytes,
                          actions: List[bytes]) -> bytes:
    """Borsh-encoded Transaction with pre-serialized actions."""
    result = _borsh_string(signer_id)
    result += (0).to_bytes(1, "little") + public_key     # ED25519 = 0
    result += nonce.to_bytes(8, "little")
    result += _borsh_string(receiver_id)
    result += block_hash
    result += len(actions).to_bytes(4, "little")
    for action in actions:
        result += action
    return result


def sign_transaction(signing_key: SigningKey, tx_bytes: bytes) -> Tuple[bytes, str]:
    """
    Sign a serialized transaction.

    Returns:
        (signed_tx_bytes, tx_hash_base58)
    """
    digest = hashlib.sha256(tx_bytes).digest()
    signature = signing_key.sign(digest).signature
    return tx_bytes + (0).to_bytes(1, "little") + signature, base58.b58encode(digest).decode()


def parse_private_key(value: str) -> SigningKey:
    """ed25519:<base58> secret key (64-byte keypair or 32-byte seed)."""
    if value.startswith("ed25519:"):
        value = value[len("ed25519:"):]
    raw = base58.b58decode(value)
    if len(raw) not in (32, 64):
        raise ValidationError(f"Invalid NEAR private key length: {len(raw)}")
    return SigningKey(raw[:32])


def map_failure(message: str, order_hash: Optional[str] = None) -> SwapError:
    """Map a contract panic / execution failure to a tagged error."""
    for needle, error_cls in PANIC_ERRORS:
        if needle in message:
            return error_cls(needle, order_hash=order_hash)
    return ChainRevertError(f"NEAR transaction failed: {message}", order_hash=order_hash)


# =============================================================================
# Adapter
# =============================================================================

class NEAREscrowAdapter(EscrowAdapter):
    """
    NEAR escrow adapter.

    The maker and resolver each sign with their own NEAR account; the party
    argument of escrow/claim/refund picks the account.
    """

    def __init__(self, config: NEARConfig,
                 hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256,
                 client: Optional[httpx.Client] = None):
        super().__init__(ChainId.NEAR, ChainTimeUnit.NANOSECONDS, hash_algorithm)
        self.config = config
        self._client = client
        self._request_id = 0

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.config.timeout)
        return self._client

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def _signer(self, party: Party) -> Tuple[str, SigningKey]:
        if party == Party.MAKER:
            account_id, key = self.config.maker_account_id, self.config.maker_private_key
        else:
            account_id, key = self.config.resolver_account_id, self.config.resolver_private_key
        if not account_id or not key:
            raise ValidationError(f"No NEAR account configured for {party.value}")
        return account_id, parse_private_key(key)

    def wallet_addresses(self) -> Dict[str, str]:
        """Account ids of the configured signers."""
        return {
            party.value: account_id
            for party, account_id in (
                (Party.MAKER, self.config.maker_account_id),
                (Party.RESOLVER, self.config.resolver_account_id),
            )
            if account_id
        }

    # -------------------------------------------------------------------------
    # JSON-RPC
    # -------------------------------------------------------------------------

    def _rpc(self, method: str, params: Any, order_hash: Optional[str] = None) -> Any:
        """Make JSON-RPC call."""
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": str(self._request_id), "method": method, "params": params}

        try:
            response = self.client.post(self.config.rpc_url, json=payload)
        except httpx.TransportError as e:
            raise TransientChainError(f"NEAR RPC unreachable: {e}", order_hash=order_hash) from e

        if response.status_code >= 500:
            raise TransientChainError(f"NEAR RPC HTTP {response.status_code}", order_hash=order_hash)
        if response.status_code != 200:
            raise ChainRevertError(f"NEAR RPC HTTP {response.status_code}", order_hash=order_hash)

        data = response.json()
        if "error" in data:
            error = data["error"]
            cause = (error.get("cause") or {}).get("name", "")
            if cause in TRANSIENT_CAUSES:
                raise TransientChainError(f"NEAR RPC {cause}", order_hash=order_hash)
            raise map_failure(json.dumps(error), order_hash)

        return data.get("result")

    def _view(self, method_name: str, args: Dict, order_hash: Optional[str] = None) -> Any:
        result = self._rpc("query", {
            "request_type": "call_function",
            "finality": "final",
            "account_id": self.config.escrow_contract_id,
            "method_name": method_name,
            "args_base64": base64.b64encode(json.dumps(args).encode()).decode(),
        }, order_hash)
        return json.loads(bytes(result["result"]).decode() or "null")

    def _block(self) -> Dict:
        return self._rpc("block", {"finality": "final"})

    def _block_timestamp(self) -> int:
        return int(self._block()["header"]["timestamp"])

    def _call(self, party: Party, method_name: str, args: Dict, gas: int,
              deposit: int = 0, order_hash: Optional[str] = None) -> Dict:
        """Sign and broadcast a FunctionCall on the escrow contract."""
        signer_id, signing_key = self._signer(party)
        public_key = signing_key.verify_key.encode()
        pk_str = "ed25519:" + base58.b58encode(public_key).decode()

        access_key = self._rpc("query", {
            "request_type": "view_access_key",
            "finality": "final",
            "account_id": signer_id,
            "public_key": pk_str,
        }, order_hash)
        nonce = int(access_key["nonce"]) + 1
        block_hash = base58.b58decode(self._block()["header"]["hash"])

        action = serialize_function_call(method_name, json.dumps(args).encode(), gas, deposit)
        tx_bytes = serialize_transaction(signer_id, public_key, nonce,
                                         self.config.escrow_contract_id, block_hash, [action])
        signed_tx, local_hash = sign_transaction(signing_key, tx_bytes)

        log.info(f"NEAR {method_name} from {signer_id} (tx {local_hash})")
        result = self._rpc("broadcast_tx_commit", [base64.b64encode(signed_tx).decode()], order_hash)

        status = result.get("status", {})
        if "Failure" in status:
            raise map_failure(json.dumps(status["Failure"]), order_hash)
        return result

    def _receipt(self, action: str, order_hash: str, result: Dict, **raw) -> EscrowReceipt:
        tx_hash = result.get("transaction", {}).get("hash", "")
        block_hash = result.get("transaction_outcome", {}).get("block_hash")
        return EscrowReceipt(
            chain=self.chain,
            order_hash=order_hash,
            action=action,
            tx_hash=tx_hash,
            timestamp_ms=native_to_ms(self._block_timestamp(), self.time_unit),
            raw={"block_hash": block_hash, **raw},
        )

    @staticmethod
    def _b64(value: str) -> str:
        return base64.b64encode(to_bytes(value)).decode()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_swap_order(self, order_hash: str) -> Optional[Dict]:
        """Contract record for order_hash, or None."""
        order = self._view("get_swap_order", {"order_hash": self._b64(order_hash)}, order_hash)
        if order is None:
            return None
        order = dict(order)
        order["hashlock"] = base64.b64decode(order.get("hash_lock", "")).hex()
        return order

    def is_htlc_active(self, order_hash: str) -> bool:
        return bool(self._view("is_htlc_active", {"order_hash": self._b64(order_hash)}, order_hash))

    def query_active(self, order_hash: str) -> ChainOrderView:
        order = self.get_swap_order(order_hash)
        if order is None:
            return ChainOrderView(active=False, state=LockState.MISSING)

        state = CONTRACT_STATES.get(order.get("state"), LockState.ACTIVE)
        if state == LockState.ACTIVE and self._block_timestamp() > int(order["timelock"]):
            state = LockState.EXPIRED
        return ChainOrderView(active=state == LockState.ACTIVE, state=state, raw=order)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def escrow(self, order_hash: str, counterparty: str, token: str, amount: int,
               hashlock: str, timelock_native: int,
               party: Party = Party.MAKER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        if int(amount) <= 0:
            raise InvalidAmount("Amount must be greater than 0", order_hash=order_hash)
        try:
            hashlock_bytes = to_bytes(hashlock)
        except ValueError:
            hashlock_bytes = b""
        if len(hashlock_bytes) != SECRET_SIZE:
            raise ValidationError("Invalid hash lock length", order_hash=order_hash)
        if timelock_native <= self._block_timestamp():
            raise InvalidTimelock("Timelock must be in the future", order_hash=order_hash)

        signer_id, _ = self._signer(party)
        args = {
            "order_hash": self._b64(order_hash),
            "src_maker": signer_id,
            "src_chain": self.config.peer_chain,
            "src_token": token,
            "src_amount": str(int(amount)),
            "dst_recipient": counterparty,
            "dst_token": token,
            "hash_lock": base64.b64encode(hashlock_bytes).decode(),
            "timelock": int(timelock_native),
        }

        log.info(f"Creating NEAR HTLC {order_hash[:16]}...: {amount} {token} "
                 f"to {counterparty} (timelock {timelock_native})")
        result = self._call(party, "create_htlc", args, self.config.gas_create,
                            deposit=int(amount), order_hash=order_hash)
        return self._receipt("escrow", order_hash, result, signer=signer_id,
                             timelock=int(timelock_native))

    def claim(self, order_hash: str, secret: str,
              party: Party = Party.RESOLVER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        order = self.get_swap_order(order_hash)
        if order is None:
            raise NotFound("Order not found", order_hash=order_hash)
        if order.get("state") != "Active":
            raise NotActive("Order not active", order_hash=order_hash)
        if self._block_timestamp() > int(order["timelock"]):
            raise Expired("HTLC expired", order_hash=order_hash)
        if not verify_preimage(secret, order["hashlock"], self.hash_algorithm):
            raise InvalidSecret("Invalid secret", order_hash=order_hash)

        log.info(f"Completing NEAR HTLC {order_hash[:16]}... "
                 f"(secret {normalize_hex(secret)[:16]}...)")
        result = self._call(party, "complete_htlc", {
            "order_hash": self._b64(order_hash),
            "secret": self._b64(secret),
        }, self.config.gas_complete, order_hash=order_hash)
        return self._receipt("claim", order_hash, result, secret=normalize_hex(secret))

    def refund(self, order_hash: str, party: Party = Party.MAKER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        order = self.get_swap_order(order_hash)
        if order is None:
            raise NotFound("Order not found", order_hash=order_hash)
        if order.get("state") != "Active":
            raise NotActive("Order not active", order_hash=order_hash)
        if self._block_timestamp() <= int(order["timelock"]):
            raise NotExpired("HTLC not expired", order_hash=order_hash)

        log.info(f"Refunding NEAR HTLC {order_hash[:16]}...")
        result = self._call(party, "refund_htlc", {"order_hash": self._b64(order_hash)},
                            self.config.gas_refund, order_hash=order_hash)
        return self._receipt("refund", order_hash, result, amount=order.get("dst_amount"))
