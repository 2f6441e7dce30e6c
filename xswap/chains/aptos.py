"""
Aptos escrow backend.

Talks to the cross_chain_escrow Move module through the node REST API
(httpx). Transactions are JSON entry-function requests: the node BCS-encodes
them (/transactions/encode_submission), the signing message is signed with
ed25519 (PyNaCl) locally, and the signed request is submitted and polled
until it is committed.

Module functions:
- create_htlc(order_hash, recipient, token, amount, hash_lock, timelock)
- complete_htlc(order_hash, secret)
- refund_htlc(order_hash)
- get_htlc(order_hash), is_htlc_active(order_hash) (views)

vector<u8> arguments travel as 0x-hex strings, u64 as decimal strings;
timelocks are ledger timestamps in seconds.
"""

import hashlib
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from nacl.signing import SigningKey, VerifyKey

from ..config import AptosConfig
from ..core import ChainId, ChainOrderView, EscrowReceipt, LockState, Party
from ..errors import (
    AlreadyExists, ChainRevertError, Expired, InvalidAmount, InvalidSecret,
    InvalidTimelock, NotActive, NotExpired, NotFound, SwapError,
    TransientChainError, ValidationError,
)
from ..htlc.crypto import SECRET_SIZE, HashAlgorithm, normalize_hex, to_bytes, verify_preimage
from ..htlc.timelock import ChainTimeUnit
from .base import EscrowAdapter

log = logging.getLogger(__name__)

# Move abort name / VM status -> error. Checked in order.
ABORT_ERRORS = [
    ("E_ORDER_ALREADY_EXISTS", AlreadyExists),
    ("E_ORDER_NOT_FOUND", NotFound),
    ("E_ORDER_NOT_ACTIVE", NotActive),
    ("E_HTLC_NOT_EXPIRED", NotExpired),
    ("E_HTLC_EXPIRED", Expired),
    ("E_INVALID_SECRET", InvalidSecret),
    ("E_INVALID_HASH_LOCK", ValidationError),
    ("E_INVALID_AMOUNT", InvalidAmount),
    ("E_INVALID_TIMELOCK", InvalidTimelock),
    ("SEQUENCE_NUMBER_TOO_OLD", TransientChainError),
]

# get_htlc `state` field
MODULE_STATES = {
    0: LockState.ACTIVE,
    1: LockState.CLAIMED,
    2: LockState.REFUNDED,
}

MICROS_PER_SECOND = 1_000_000


def parse_private_key(value: str) -> SigningKey:
    """0x-hex ed25519 seed, optionally AIP-80 prefixed (ed25519-priv-0x...)."""
    if value.startswith("ed25519-priv-"):
        value = value[len("ed25519-priv-"):]
    try:
        raw = bytes.fromhex(normalize_hex(value))
    except ValueError as e:
        raise ValidationError("Invalid Aptos private key encoding") from e
    if len(raw) not in (32, 64):
        raise ValidationError(f"Invalid Aptos private key length: {len(raw)}")
    return SigningKey(raw[:32])


def account_address(verify_key: VerifyKey) -> str:
    """Single-key ed25519 authentication key: sha3-256(public_key || 0x00)."""
    return "0x" + hashlib.sha3_256(verify_key.encode() + b"\x00").hexdigest()


def map_failure(message: str, order_hash: Optional[str] = None) -> SwapError:
    """Map a Move abort / VM status to a tagged error."""
    for needle, error_cls in ABORT_ERRORS:
        if needle in message:
            return error_cls(needle, order_hash=order_hash)
    return ChainRevertError(f"Aptos transaction failed: {message}", order_hash=order_hash)


class AptosEscrowAdapter(EscrowAdapter):
    """
    Aptos escrow adapter.

    The maker and resolver each sign with their own Aptos account; the party
    argument of escrow/claim/refund picks the account.
    """

    def __init__(self, config: AptosConfig,
                 hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256,
                 client: Optional[httpx.Client] = None,
                 sleep: Callable[[float], None] = time.sleep):
        super().__init__(ChainId.APTOS, ChainTimeUnit.SECONDS, hash_algorithm)
        self.config = config
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.config.timeout)
        return self._client

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def _signer(self, party: Party) -> SigningKey:
        key = (self.config.maker_private_key if party == Party.MAKER
               else self.config.resolver_private_key)
        if not key:
            raise ValidationError(f"No Aptos account configured for {party.value}")
        return parse_private_key(key)

    def wallet_addresses(self) -> Dict[str, str]:
        """Account addresses derived from the configured keys."""
        addresses = {}
        for party, key in ((Party.MAKER, self.config.maker_private_key),
                           (Party.RESOLVER, self.config.resolver_private_key)):
            if key:
                addresses[party.value] = account_address(parse_private_key(key).verify_key)
        return addresses

    def _function(self, name: str) -> str:
        return f"{self.config.escrow_address}::{self.config.module_name}::{name}"

    # -------------------------------------------------------------------------
    # REST
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, body: Any = None,
                 order_hash: Optional[str] = None) -> Any:
        url = self.config.node_url.rstrip("/") + path
        try:
            response = self.client.request(method, url, json=body)
        except httpx.TransportError as e:
            raise TransientChainError(f"Aptos node unreachable: {e}", order_hash=order_hash) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientChainError(f"Aptos node HTTP {response.status_code}",
                                      order_hash=order_hash)
        if response.status_code == 404:
            raise NotFound(f"Aptos resource not found: {path}", order_hash=order_hash)
        if response.status_code >= 400:
            try:
                error = response.json()
            except ValueError:
                error = {"message": response.text}
            raise map_failure(f"{error.get('error_code', '')}: {error.get('message', '')}",
                              order_hash)

        return response.json()

    def _ledger_timestamp(self) -> int:
        """Ledger time in seconds."""
        info = self._request("GET", "")
        return int(info["ledger_timestamp"]) // MICROS_PER_SECOND

    def _view(self, name: str, arguments: List, order_hash: Optional[str] = None) -> List:
        return self._request("POST", "/view", {
            "function": self._function(name),
            "type_arguments": [],
            "arguments": arguments,
        }, order_hash)

    def _submit(self, party: Party, name: str, arguments: List,
                order_hash: Optional[str] = None) -> Dict:
        """Encode, sign, submit and wait for an entry-function transaction."""
        signing_key = self._signer(party)
        sender = account_address(signing_key.verify_key)

        account = self._request("GET", f"/accounts/{sender}", order_hash=order_hash)
        request = {
            "sender": sender,
            "sequence_number": str(account["sequence_number"]),
            "max_gas_amount": str(self.config.max_gas_amount),
            "gas_unit_price": str(self.config.gas_unit_price),
            "expiration_timestamp_secs": str(
                self._ledger_timestamp() + self.config.tx_expiration_seconds
            ),
            "payload": {
                "type": "entry_function_payload",
                "function": self._function(name),
                "type_arguments": [],
                "arguments": arguments,
            },
        }

        signing_message = self._request("POST", "/transactions/encode_submission", request,
                                        order_hash)
        signature = signing_key.sign(to_bytes(signing_message)).signature
        request["signature"] = {
            "type": "ed25519_signature",
            "public_key": "0x" + signing_key.verify_key.encode().hex(),
            "signature": "0x" + signature.hex(),
        }

        log.info(f"Aptos {name} from {sender} (sequence {request['sequence_number']})")
        pending = self._request("POST", "/transactions", request, order_hash)
        return self._wait(pending["hash"], order_hash)

    def _wait(self, tx_hash: str, order_hash: Optional[str] = None) -> Dict:
        deadline = time.monotonic() + self.config.confirm_timeout
        while True:
            try:
                tx = self._request("GET", f"/transactions/by_hash/{tx_hash}",
                                   order_hash=order_hash)
            except NotFound:
                tx = {"type": "pending_transaction"}
            if tx.get("type") != "pending_transaction":
                break
            if time.monotonic() >= deadline:
                raise TransientChainError(f"Aptos tx {tx_hash} not committed after "
                                          f"{self.config.confirm_timeout}s", order_hash=order_hash)
            self._sleep(self.config.confirm_poll_interval)

        if not tx.get("success"):
            raise map_failure(tx.get("vm_status", "unknown"), order_hash)
        return tx

    def _receipt(self, action: str, order_hash: str, tx: Dict, **raw) -> EscrowReceipt:
        return EscrowReceipt(
            chain=self.chain,
            order_hash=order_hash,
            action=action,
            tx_hash=tx.get("hash", ""),
            timestamp_ms=int(tx.get("timestamp", 0)) // 1000,
            raw={"version": tx.get("version"), "gas_used": tx.get("gas_used"), **raw},
        )

    @staticmethod
    def _hex(value: str) -> str:
        return "0x" + normalize_hex(value)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_htlc(self, order_hash: str) -> Optional[Dict]:
        """Module record for order_hash, or None."""
        try:
            result = self._view("get_htlc", [self._hex(order_hash)], order_hash)
        except NotFound:
            return None
        if not result or result[0] is None:
            return None
        htlc = dict(result[0])
        htlc["hashlock"] = normalize_hex(htlc.get("hash_lock", ""))
        return htlc

    def is_htlc_active(self, order_hash: str) -> bool:
        result = self._view("is_htlc_active", [self._hex(order_hash)], order_hash)
        return bool(result and result[0])

    def query_active(self, order_hash: str) -> ChainOrderView:
        htlc = self.get_htlc(order_hash)
        if htlc is None:
            return ChainOrderView(active=False, state=LockState.MISSING)

        state = MODULE_STATES.get(int(htlc.get("state", 0)), LockState.ACTIVE)
        if state == LockState.ACTIVE and self._ledger_timestamp() > int(htlc["timelock"]):
            state = LockState.EXPIRED
        return ChainOrderView(active=state == LockState.ACTIVE, state=state, raw=htlc)

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
        if timelock_native <= self._ledger_timestamp():
            raise InvalidTimelock("Timelock must be in the future", order_hash=order_hash)

        log.info(f"Creating Aptos HTLC {order_hash[:16]}...: {amount} {token} "
                 f"to {counterparty} (timelock {timelock_native})")
        tx = self._submit(party, "create_htlc", [
            self._hex(order_hash),
            counterparty,
            token,
            str(int(amount)),
            "0x" + hashlock_bytes.hex(),
            str(int(timelock_native)),
        ], order_hash)
        return self._receipt("escrow", order_hash, tx, signer=tx.get("sender"),
                             timelock=int(timelock_native))

    def claim(self, order_hash: str, secret: str,
              party: Party = Party.RESOLVER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        htlc = self.get_htlc(order_hash)
        if htlc is None:
            raise NotFound("Order not found", order_hash=order_hash)
        if MODULE_STATES.get(int(htlc.get("state", 0))) != LockState.ACTIVE:
            raise NotActive("Order not active", order_hash=order_hash)
        if self._ledger_timestamp() > int(htlc["timelock"]):
            raise Expired("HTLC expired", order_hash=order_hash)
        if not verify_preimage(secret, htlc["hashlock"], self.hash_algorithm):
            raise InvalidSecret("Invalid secret", order_hash=order_hash)

        log.info(f"Completing Aptos HTLC {order_hash[:16]}... "
                 f"(secret {normalize_hex(secret)[:16]}...)")
        tx = self._submit(party, "complete_htlc",
                          [self._hex(order_hash), self._hex(secret)], order_hash)
        return self._receipt("claim", order_hash, tx, secret=normalize_hex(secret))

    def refund(self, order_hash: str, party: Party = Party.MAKER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        htlc = self.get_htlc(order_hash)
        if htlc is None:
            raise NotFound("Order not found", order_hash=order_hash)
        if MODULE_STATES.get(int(htlc.get("state", 0))) != LockState.ACTIVE:
            raise NotActive("Order not active", order_hash=order_hash)
        if self._ledger_timestamp() <= int(htlc["timelock"]):
            raise NotExpired("HTLC not expired", order_hash=order_hash)

        log.info(f"Refunding Aptos HTLC {order_hash[:16]}...")
        tx = self._submit(party, "refund_htlc", [self._hex(order_hash)], order_hash)
        return self._receipt("refund", order_hash, tx, amount=htlc.get("amount"))
