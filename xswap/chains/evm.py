"""
EVM escrow backend.

Interacts with an order-hash-keyed HashedTimelock contract (Base Sepolia by
default). Locks are identified by the swap's order hash, so both legs of a
swap share one correlation key.

- Native ETH is locked with msg.value (token = zero address)
- ERC20 locks approve the contract first
- Timelocks are block timestamps (seconds)
- Two signers: the maker wallet and the resolver wallet
"""

import logging
from contextlib import contextmanager
from typing import Dict, Optional

from ..config import EVMConfig
from ..core import ChainId, ChainOrderView, EscrowReceipt, LockState, Party
from ..errors import (
    AlreadyExists, ChainRevertError, Expired, InvalidAmount, InvalidSecret,
    InvalidTimelock, NotActive, NotExpired, NotFound, TransientChainError,
    ValidationError,
)
from ..htlc.crypto import SECRET_SIZE, HashAlgorithm, normalize_hex, to_bytes, verify_preimage
from ..htlc.timelock import ChainTimeUnit, native_to_ms
from .base import EscrowAdapter

log = logging.getLogger(__name__)

NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"

HTLC_ABI = [
    {
        "name": "create",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "orderHash", "type": "bytes32"},
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "withdraw",
        "type": "function",
        "inputs": [
            {"name": "orderHash", "type": "bytes32"},
            {"name": "preimage", "type": "bytes32"}
        ],
        "outputs": []
    },
    {
        "name": "refund",
        "type": "function",
        "inputs": [{"name": "orderHash", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "getHTLC",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "orderHash", "type": "bytes32"}],
        "outputs": [
            {"name": "sender", "type": "address"},
            {"name": "receiver", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"},
            {"name": "withdrawn", "type": "bool"},
            {"name": "refunded", "type": "bool"},
            {"name": "preimage", "type": "bytes32"}
        ]
    }
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]


class EVMEscrowAdapter(EscrowAdapter):
    """
    EVM escrow adapter using web3.py.

    Every state-changing call is prechecked against getHTLC and the latest
    block timestamp so that contract reverts surface as tagged errors
    (AlreadyExists, NotExpired, ...) instead of opaque receipt failures.
    """

    def __init__(self, config: EVMConfig,
                 hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256,
                 web3=None):
        super().__init__(ChainId.ETH, ChainTimeUnit.SECONDS, hash_algorithm)
        self.config = config
        self._web3 = web3
        self._accounts = {}

    @property
    def web3(self):
        """Lazy-load web3 instance."""
        if self._web3 is None:
            from web3 import Web3
            self._web3 = Web3(Web3.HTTPProvider(self.config.rpc_url))
        return self._web3

    @property
    def contract(self):
        from web3 import Web3

        if not self.config.htlc_contract:
            raise ValidationError("HTLC contract address not set")
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.htlc_contract),
            abi=HTLC_ABI
        )

    def _key(self, party: Party) -> str:
        if party == Party.MAKER:
            return self.config.maker_private_key
        return self.config.resolver_private_key

    def _account(self, party: Party):
        from eth_account import Account

        if party not in self._accounts:
            key = self._key(party)
            if not key:
                raise ValidationError(f"No EVM private key configured for {party.value}")
            if not key.startswith("0x"):
                key = "0x" + key
            self._accounts[party] = Account.from_key(key)
        return self._accounts[party]

    def wallet_addresses(self) -> Dict[str, str]:
        """Addresses of the configured signers."""
        return {p.value: self._account(p).address for p in Party if self._key(p)}

    @contextmanager
    def _rpc_errors(self, order_hash: Optional[str] = None):
        """Map node/transport failures to TransientChainError."""
        from web3.exceptions import ContractLogicError, TimeExhausted

        try:
            yield
        except (TimeExhausted, OSError) as e:
            raise TransientChainError(f"EVM RPC failure: {e}", order_hash=order_hash) from e
        except ContractLogicError as e:
            raise ChainRevertError(f"Contract reverted: {e}", order_hash=order_hash) from e

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _block_timestamp(self) -> int:
        return int(self.web3.eth.get_block("latest")["timestamp"])

    def get_htlc(self, order_hash: str) -> Optional[Dict]:
        """
        Get HTLC details.

        Returns:
            Dict of contract fields, or None if nothing is locked under order_hash
        """
        with self._rpc_errors(order_hash):
            result = self.contract.functions.getHTLC(to_bytes(order_hash)).call()

        sender, receiver, token, amount, hashlock, timelock, withdrawn, refunded, preimage = result
        if int(sender, 16) == 0:
            return None

        return {
            "sender": sender,
            "receiver": receiver,
            "token": token,
            "amount": amount,
            "hashlock": bytes(hashlock).hex(),
            "timelock": timelock,
            "withdrawn": withdrawn,
            "refunded": refunded,
            "preimage": bytes(preimage).hex() if withdrawn else None,
        }

    def query_active(self, order_hash: str) -> ChainOrderView:
        htlc = self.get_htlc(order_hash)
        if htlc is None:
            return ChainOrderView(active=False, state=LockState.MISSING)

        if htlc["withdrawn"]:
            state = LockState.CLAIMED
        elif htlc["refunded"]:
            state = LockState.REFUNDED
        else:
            with self._rpc_errors(order_hash):
                now = self._block_timestamp()
            state = LockState.EXPIRED if now >= htlc["timelock"] else LockState.ACTIVE

        raw = dict(htlc)
        if htlc["preimage"]:
            raw["secret"] = htlc["preimage"]
        return ChainOrderView(active=state == LockState.ACTIVE, state=state, raw=raw)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _send(self, account, fn, gas: int, value: int = 0, order_hash: str = None) -> Dict:
        """Build, sign, broadcast and wait for a contract call."""
        from web3 import Web3

        w3 = self.web3
        with self._rpc_errors(order_hash):
            nonce = w3.eth.get_transaction_count(account.address, 'pending')
            gas_price = int(w3.eth.gas_price * self.config.gas_price_multiplier)

            tx = fn.build_transaction({
                'from': account.address,
                'nonce': nonce,
                'gas': gas,
                'gasPrice': gas_price,
                'value': value,
                'chainId': self.config.chain_id
            })

            signed = account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            log.info(f"EVM TX sent: {Web3.to_hex(tx_hash)}")

            receipt = w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout
            )

        if receipt['status'] != 1:
            raise ChainRevertError("Transaction reverted", order_hash=order_hash,
                                   tx_hash=Web3.to_hex(tx_hash))
        return receipt

    def _to_receipt(self, action: str, order_hash: str, receipt: Dict, **raw) -> EscrowReceipt:
        from web3 import Web3

        with self._rpc_errors(order_hash):
            block_ts = self.web3.eth.get_block(receipt["blockNumber"])["timestamp"]
        return EscrowReceipt(
            chain=self.chain,
            order_hash=order_hash,
            action=action,
            tx_hash=Web3.to_hex(receipt['transactionHash']),
            timestamp_ms=native_to_ms(block_ts, self.time_unit),
            raw={"block_number": receipt["blockNumber"], **raw},
        )

    def _ensure_allowance(self, account, token: str, amount: int, order_hash: str):
        from web3 import Web3

        erc20 = self.web3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        spender = Web3.to_checksum_address(self.config.htlc_contract)

        with self._rpc_errors(order_hash):
            allowance = erc20.functions.allowance(account.address, spender).call()
        if allowance >= amount:
            return

        log.info(f"Approving {token[:10]}... spending for HTLC contract")
        self._send(account, erc20.functions.approve(spender, amount),
                   gas=self.config.gas_approve, order_hash=order_hash)

    def escrow(self, order_hash: str, counterparty: str, token: str, amount: int,
               hashlock: str, timelock_native: int,
               party: Party = Party.MAKER) -> EscrowReceipt:
        from web3 import Web3

        order_hash = normalize_hex(order_hash)
        if int(amount) <= 0:
            raise InvalidAmount("Amount must be greater than 0", order_hash=order_hash)
        try:
            hashlock_bytes = to_bytes(hashlock)
        except ValueError:
            hashlock_bytes = b""
        if len(hashlock_bytes) != SECRET_SIZE:
            raise ValidationError("Invalid hash lock length", order_hash=order_hash)
        if not Web3.is_address(counterparty):
            raise ValidationError(f"Invalid EVM receiver: {counterparty}", order_hash=order_hash)

        if self.get_htlc(order_hash) is not None:
            raise AlreadyExists("Order already exists", order_hash=order_hash)
        with self._rpc_errors(order_hash):
            now = self._block_timestamp()
        if timelock_native <= now:
            raise InvalidTimelock("Timelock must be in the future", order_hash=order_hash)

        account = self._account(party)
        token = token or NATIVE_TOKEN
        native = token.lower() == NATIVE_TOKEN
        if not native:
            self._ensure_allowance(account, token, int(amount), order_hash)

        log.info(f"Creating EVM HTLC {order_hash[:16]}...: {amount} of {token[:10]}... "
                 f"to {counterparty[:10]}... (timelock {timelock_native})")

        fn = self.contract.functions.create(
            to_bytes(order_hash),
            Web3.to_checksum_address(counterparty),
            Web3.to_checksum_address(token),
            int(amount),
            hashlock_bytes,
            int(timelock_native)
        )
        receipt = self._send(account, fn, gas=self.config.gas_create,
                             value=int(amount) if native else 0, order_hash=order_hash)
        return self._to_receipt("escrow", order_hash, receipt, sender=account.address,
                                timelock=int(timelock_native))

    def claim(self, order_hash: str, secret: str,
              party: Party = Party.RESOLVER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        htlc = self.get_htlc(order_hash)
        if htlc is None:
            raise NotFound("Order not found", order_hash=order_hash)
        if htlc["withdrawn"] or htlc["refunded"]:
            raise NotActive("Order not active", order_hash=order_hash)
        with self._rpc_errors(order_hash):
            now = self._block_timestamp()
        if now >= htlc["timelock"]:
            raise Expired("HTLC expired", order_hash=order_hash)
        if not verify_preimage(secret, htlc["hashlock"], self.hash_algorithm):
            raise InvalidSecret("Invalid secret", order_hash=order_hash)

        account = self._account(party)
        log.info(f"Claiming EVM HTLC {order_hash[:16]}... (secret {normalize_hex(secret)[:16]}...)")

        fn = self.contract.functions.withdraw(to_bytes(order_hash), to_bytes(secret))
        receipt = self._send(account, fn, gas=self.config.gas_claim, order_hash=order_hash)
        return self._to_receipt("claim", order_hash, receipt, secret=normalize_hex(secret))

    def refund(self, order_hash: str, party: Party = Party.MAKER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        htlc = self.get_htlc(order_hash)
        if htlc is None:
            raise NotFound("Order not found", order_hash=order_hash)
        if htlc["withdrawn"] or htlc["refunded"]:
            raise NotActive("Order not active", order_hash=order_hash)
        with self._rpc_errors(order_hash):
            now = self._block_timestamp()
        if now < htlc["timelock"]:
            raise NotExpired(
                f"HTLC not expired ({htlc['timelock'] - now}s remaining)",
                order_hash=order_hash,
            )

        account = self._account(party)
        log.info(f"Refunding EVM HTLC {order_hash[:16]}...")

        fn = self.contract.functions.refund(to_bytes(order_hash))
        receipt = self._send(account, fn, gas=self.config.gas_refund, order_hash=order_hash)
        return self._to_receipt("refund", order_hash, receipt, amount=htlc["amount"])
