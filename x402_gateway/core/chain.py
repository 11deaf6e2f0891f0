# x402_gateway/core/chain.py
"""
Shared web3 plumbing for settlement and demo payments.

Holds the minimal ABIs consumed by the gateway and a TransactionSender that
signs with a local key, broadcasts, and waits for one confirmation.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

logger = logging.getLogger(__name__)

DEFAULT_RECEIPT_TIMEOUT = 120  # seconds
DEFAULT_RPC_TIMEOUT = 10  # seconds


def _fn(name: str, inputs: List[tuple], outputs: Optional[List[tuple]] = None,
        mutability: str = "nonpayable") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in (outputs or [])],
        "stateMutability": mutability,
    }


ERC20_ABI = [
    _fn("balanceOf", [("account", "address")], [("", "uint256")], "view"),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")], "view"),
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")]),
]

EIP3009_ABI = [
    _fn("transferWithAuthorization", [
        ("from", "address"),
        ("to", "address"),
        ("value", "uint256"),
        ("validAfter", "uint256"),
        ("validBefore", "uint256"),
        ("nonce", "bytes32"),
        ("signature", "bytes"),
    ]),
]

PAYMENT_RECEIVER_ABI = [
    _fn("payNative", [("invoiceId", "bytes32")], mutability="payable"),
    _fn("payWithToken", [("token", "address"), ("amount", "uint256"), ("invoiceId", "bytes32")]),
    _fn("payWithTokenFrom", [
        ("token", "address"),
        ("from", "address"),
        ("amount", "uint256"),
        ("invoiceId", "bytes32"),
    ]),
]

MAX_UINT256 = 2 ** 256 - 1


def http_web3(rpc_url: str) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": DEFAULT_RPC_TIMEOUT}))


class TransactionReverted(Exception):
    """Raised when a mined transaction reports a failed status."""

    def __init__(self, tx_hash: str):
        super().__init__(f"Transaction reverted: {tx_hash}")
        self.tx_hash = tx_hash


def error_message(exc: Exception) -> str:
    """Best human-readable reason for a chain error (revert reason if any)."""
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or exc.__class__.__name__


def invoice_id_to_bytes32(invoice_id: Optional[str]) -> bytes:
    """
    Encode an invoice id as the contract's bytes32 invoice argument.

    Uses the first 31 characters (default "x402"), UTF-8 encoded and
    left-padded with zero bytes to 32 bytes.
    """
    raw = (invoice_id[:31] if invoice_id else "x402").encode("utf-8")[:32]
    return raw.rjust(32, b"\x00")


def to_hex(value: Any) -> str:
    """Normalise a hash (HexBytes, bytes or str) to a 0x-prefixed hex string."""
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


class TransactionSender:
    """
    Signs and submits contract calls from one local key on one chain.

    Nonce allocation and broadcast are serialised per sender so concurrent
    settlements from the same relayer do not collide. Waiting for the
    receipt happens outside the lock.
    """

    def __init__(
        self,
        w3: Web3,
        private_key: str,
        chain_id: int,
        receipt_timeout: int = DEFAULT_RECEIPT_TIMEOUT,
    ):
        self.w3 = w3
        self.account: LocalAccount = Account.from_key(private_key)
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self._send_lock = threading.Lock()

    @property
    def address(self) -> str:
        return self.account.address

    def transact(self, contract_function, gas: int, value: int = 0) -> Dict[str, Any]:
        """
        Build, sign, send and confirm a contract call.

        Args:
            contract_function: Bound web3 contract function
            gas: Fixed gas limit ceiling
            value: Native value to attach (wei)

        Returns:
            The transaction receipt

        Raises:
            TransactionReverted: If the receipt status is not 1
            Exception: RPC errors and receipt timeouts propagate
        """
        with self._send_lock:
            tx = contract_function.build_transaction({
                "from": self.address,
                "nonce": self.w3.eth.get_transaction_count(self.address, "pending"),
                "gas": gas,
                "gasPrice": self.w3.eth.gas_price,
                "chainId": self.chain_id,
                "value": value,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash_hex = to_hex(tx_hash)
        logger.info(f"TX sent: {tx_hash_hex} (chain {self.chain_id})")

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] != 1:
            raise TransactionReverted(tx_hash_hex)

        logger.info(f"TX {tx_hash_hex} confirmed in block {receipt['blockNumber']}")
        return receipt
