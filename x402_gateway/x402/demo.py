# x402_gateway/x402/demo.py
"""
Demo auto-pay for the testnet.

With ?demo=1 on a testnet request and X402_DEMO_PRIVATE_KEY configured, the
seller pays for the request itself instead of issuing a 402 challenge.
Native tokens are paid with payNative(); erc20 tokens with approve() (when
the allowance is short) followed by payWithToken(). eip3009 tokens and
non-test networks are never eligible.
"""
import logging
import threading
from typing import Callable, Dict, Optional

from web3 import Web3

from x402_gateway.api.models.payment import SettlementResult
from x402_gateway.core.chain import (
    ERC20_ABI,
    MAX_UINT256,
    PAYMENT_RECEIVER_ABI,
    TransactionSender,
    error_message,
    http_web3,
    invoice_id_to_bytes32,
    to_hex,
)
from x402_gateway.core.config import settings
from x402_gateway.core.networks import NetworkDescriptor, PaymentMethod, TokenDescriptor

logger = logging.getLogger(__name__)

DEMO_INVOICE_ID = "x402-demo"
NATIVE_GAS_LIMIT = 100_000
APPROVE_GAS_LIMIT = 100_000
TOKEN_GAS_LIMIT = 150_000


class DemoPayer:
    """
    Pays gated requests from a held testnet key.

    One TransactionSender is kept per chain so nonces stay serialised.

    Args:
        private_key: Demo wallet key
        web3_factory: Builds a Web3 client from an RPC URL (tests inject fakes)
    """

    def __init__(self, private_key: str, web3_factory: Optional[Callable[[str], Web3]] = None):
        self._private_key = private_key
        self._web3_factory = web3_factory or http_web3
        self._senders: Dict[int, TransactionSender] = {}
        self._lock = threading.Lock()

    @staticmethod
    def is_eligible(network: NetworkDescriptor, token: TokenDescriptor) -> bool:
        return network.is_testnet and token.payment_method in (PaymentMethod.NATIVE, PaymentMethod.ERC20)

    def _sender_for(self, network: NetworkDescriptor) -> TransactionSender:
        with self._lock:
            sender = self._senders.get(network.chain_id)
            if sender is None:
                sender = TransactionSender(
                    self._web3_factory(network.rpc_url),
                    self._private_key,
                    chain_id=network.chain_id,
                )
                self._senders[network.chain_id] = sender
            return sender

    def pay(self, network: NetworkDescriptor, token: TokenDescriptor, payment_contract: str) -> SettlementResult:
        """
        Pay one query's price and wait for confirmation.

        Returns:
            A successful SettlementResult with the payment transaction, or a
            failed one carrying the chain error
        """
        if not self.is_eligible(network, token):
            return SettlementResult.failed(f"Demo payments not available for {token.symbol} on {network.name}")
        if not payment_contract:
            return SettlementResult.failed("Payment contract not configured")

        try:
            sender = self._sender_for(network)
            contract = sender.w3.eth.contract(
                address=Web3.to_checksum_address(payment_contract),
                abi=PAYMENT_RECEIVER_ABI,
            )
            amount = int(token.price_per_query)
            invoice = invoice_id_to_bytes32(DEMO_INVOICE_ID)

            if token.is_native:
                receipt = sender.transact(contract.functions.payNative(invoice), gas=NATIVE_GAS_LIMIT, value=amount)
            else:
                self._ensure_allowance(sender, token, payment_contract, amount)
                call = contract.functions.payWithToken(Web3.to_checksum_address(token.address), amount, invoice)
                receipt = sender.transact(call, gas=TOKEN_GAS_LIMIT)
        except Exception as e:
            logger.error(f"x402: Demo payment error ({token.symbol}): {e}")
            return SettlementResult.failed(error_message(e))

        tx_hash = to_hex(receipt["transactionHash"])
        logger.info(f"x402: Demo payment {tx_hash} ({token.symbol}, {sender.address})")
        return SettlementResult(success=True, transaction=tx_hash, payer=sender.address)

    def _ensure_allowance(
        self,
        sender: TransactionSender,
        token: TokenDescriptor,
        payment_contract: str,
        amount: int,
    ) -> None:
        erc20 = sender.w3.eth.contract(address=Web3.to_checksum_address(token.address), abi=ERC20_ABI)
        spender = Web3.to_checksum_address(payment_contract)
        allowance = erc20.functions.allowance(sender.address, spender).call()
        if allowance < amount:
            sender.transact(erc20.functions.approve(spender, MAX_UINT256), gas=APPROVE_GAS_LIMIT)
            logger.info(f"x402: Demo wallet approved {token.symbol} for payment contract")


_demo_payer: Optional[DemoPayer] = None
_demo_payer_lock = threading.Lock()


def get_demo_payer() -> Optional[DemoPayer]:
    """The process-wide DemoPayer, or None when no demo key is configured."""
    global _demo_payer

    if not settings.X402_DEMO_PRIVATE_KEY:
        return None
    if _demo_payer is None:
        with _demo_payer_lock:
            if _demo_payer is None:
                _demo_payer = DemoPayer(settings.X402_DEMO_PRIVATE_KEY)
    return _demo_payer


def reset_demo_payer() -> None:
    """Drop the cached DemoPayer (useful for testing)."""
    global _demo_payer
    with _demo_payer_lock:
        _demo_payer = None
