# x402_gateway/facilitator/schemes/native.py
"""
Native CFX payment handler.

The buyer calls payNative(invoiceId) on the payment contract and submits the
transaction hash. Verification does the work; settlement only echoes the
already-final transfer.
"""
import logging

from web3 import Web3
from web3.exceptions import TransactionNotFound

from x402_gateway.api.models.payment import (
    FacilitatorRequest,
    NativePayload,
    SettlementResult,
    VerifyResult,
)
from x402_gateway.core.chain import TransactionSender, error_message
from x402_gateway.facilitator.schemes.common import check_protocol, parse_payload

logger = logging.getLogger(__name__)


def verify(request: FacilitatorRequest, w3: Web3) -> VerifyResult:
    reason = check_protocol(request)
    if reason:
        return VerifyResult.invalid(reason)

    try:
        payload = parse_payload(request, NativePayload)
    except ValueError as e:
        return VerifyResult.invalid(str(e))

    if not payload.txHash:
        return VerifyResult.invalid("Missing txHash")

    price = request.token.pricePerQuery
    if payload.amount is not None and payload.amount < price:
        return VerifyResult.invalid("Insufficient amount")
    required = payload.amount if payload.amount is not None else price

    try:
        try:
            receipt = w3.eth.get_transaction_receipt(payload.txHash)
        except TransactionNotFound:
            receipt = None
        if not receipt:
            return VerifyResult.invalid("Transaction not found")
        if receipt["status"] != 1:
            return VerifyResult.invalid("Transaction failed")

        try:
            tx = w3.eth.get_transaction(payload.txHash)
        except TransactionNotFound:
            tx = None
        if not tx:
            return VerifyResult.invalid("Transaction data not found")

        if int(tx["value"]) < required:
            return VerifyResult.invalid("Insufficient amount")

        if payload.from_ and tx["from"].lower() != payload.from_.lower():
            return VerifyResult.invalid("Sender mismatch")

        destinations = {a.lower() for a in (request.paymentContract, request.treasury) if a}
        recipient = (tx.get("to") or "").lower()
        if destinations and recipient not in destinations:
            return VerifyResult.invalid("Wrong payment destination")

    except Exception as e:
        logger.warning(f"native: verification error for {payload.txHash}: {e}")
        return VerifyResult.invalid(error_message(e))

    return VerifyResult.ok()


def settle(request: FacilitatorRequest, sender: TransactionSender) -> SettlementResult:
    # The buyer already broadcast the transfer; nothing is sent on-chain here.
    try:
        payload = parse_payload(request, NativePayload)
    except ValueError as e:
        return SettlementResult.failed(str(e))

    if not payload.txHash:
        return SettlementResult.failed("Missing txHash")

    return SettlementResult(success=True, transaction=payload.txHash, payer=payload.from_)
