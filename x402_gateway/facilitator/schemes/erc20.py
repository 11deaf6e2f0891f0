# x402_gateway/facilitator/schemes/erc20.py
"""
ERC-20 payment handler: approve + relayed transferFrom.

Used for tokens without EIP-3009. The buyer approves the payment contract
and submits (from, amount, invoiceId, approveTxHash). The relayer, as the
contract owner, then calls payWithTokenFrom so the buyer only pays gas for
the approval.
"""
import logging

from web3 import Web3
from web3.exceptions import TransactionNotFound

from x402_gateway.api.models.payment import (
    Erc20Payload,
    FacilitatorRequest,
    SettlementResult,
    VerifyResult,
)
from x402_gateway.core.chain import (
    ERC20_ABI,
    PAYMENT_RECEIVER_ABI,
    TransactionSender,
    error_message,
    invoice_id_to_bytes32,
    to_hex,
)
from x402_gateway.facilitator.schemes.common import check_protocol, parse_payload

logger = logging.getLogger(__name__)

SETTLE_GAS_LIMIT = 300_000


def verify(request: FacilitatorRequest, w3: Web3) -> VerifyResult:
    reason = check_protocol(request)
    if reason:
        return VerifyResult.invalid(reason)

    try:
        payload = parse_payload(request, Erc20Payload)
    except ValueError as e:
        return VerifyResult.invalid(str(e))

    if not payload.from_ or not payload.amount:
        return VerifyResult.invalid("Missing from or amount")
    amount = payload.amount

    try:
        if payload.approveTxHash:
            try:
                receipt = w3.eth.get_transaction_receipt(payload.approveTxHash)
            except TransactionNotFound:
                receipt = None
            if not receipt or receipt["status"] != 1:
                return VerifyResult.invalid("Approve transaction not confirmed")

        # The spender is the payment contract
        if not request.paymentContract:
            return VerifyResult.invalid("Payment contract not configured")

        owner = Web3.to_checksum_address(payload.from_)
        token = w3.eth.contract(address=Web3.to_checksum_address(request.token.address), abi=ERC20_ABI)

        allowance = token.functions.allowance(
            owner, Web3.to_checksum_address(request.paymentContract)
        ).call()
        if allowance < amount:
            return VerifyResult.invalid(f"Insufficient allowance: {allowance} < {amount}")

        balance = token.functions.balanceOf(owner).call()
        if balance < amount:
            return VerifyResult.invalid("Insufficient balance")

    except Exception as e:
        logger.warning(f"erc20: verification error for {payload.from_}: {e}")
        return VerifyResult.invalid(error_message(e))

    if amount < request.token.pricePerQuery:
        return VerifyResult.invalid("Insufficient amount")

    return VerifyResult.ok()


def settle(request: FacilitatorRequest, sender: TransactionSender) -> SettlementResult:
    try:
        payload = parse_payload(request, Erc20Payload)
    except ValueError as e:
        return SettlementResult.failed(str(e))

    if not request.paymentContract:
        return SettlementResult.failed("Payment contract not configured")
    if not payload.from_ or not payload.amount:
        return SettlementResult.failed("Missing from or amount")

    try:
        contract = sender.w3.eth.contract(
            address=Web3.to_checksum_address(request.paymentContract),
            abi=PAYMENT_RECEIVER_ABI,
        )
        call = contract.functions.payWithTokenFrom(
            Web3.to_checksum_address(request.token.address),
            Web3.to_checksum_address(payload.from_),
            payload.amount,
            invoice_id_to_bytes32(payload.invoiceId),
        )
        receipt = sender.transact(call, gas=SETTLE_GAS_LIMIT)
    except Exception as e:
        logger.error(f"erc20: settle error: {e}")
        return SettlementResult.failed(error_message(e))

    return SettlementResult(
        success=True,
        transaction=to_hex(receipt["transactionHash"]),
        payer=payload.from_,
    )
