# x402_gateway/facilitator/schemes/eip3009.py
"""
EIP-3009 payment handler: gasless for the buyer.

Used for tokens supporting transferWithAuthorization (USDT0 on mainnet). The
buyer signs EIP-712 typed data off-chain and the relayer submits it to the
token directly, paying all gas.
"""
import logging
import time
from typing import Any, Dict, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from x402_gateway.api.models.payment import (
    Eip3009Authorization,
    Eip3009Payload,
    FacilitatorRequest,
    SettlementResult,
    VerifyResult,
)
from x402_gateway.core.chain import EIP3009_ABI, ERC20_ABI, TransactionSender, error_message, to_hex
from x402_gateway.facilitator.schemes.common import check_protocol, parse_payload

logger = logging.getLogger(__name__)

SETTLE_GAS_LIMIT = 200_000

TRANSFER_AUTH_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


def current_timestamp() -> int:
    """Wall-clock time in whole seconds."""
    return int(time.time())


def authorization_typed_data(
    authorization: Eip3009Authorization,
    token_address: str,
    eip712_name: str,
    eip712_version: str,
    chain_id: int,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Build the EIP-712 (domain, message) pair for a TransferWithAuthorization."""
    domain = {
        "name": eip712_name,
        "version": eip712_version,
        "chainId": chain_id,
        "verifyingContract": Web3.to_checksum_address(token_address),
    }
    message = {
        "from": Web3.to_checksum_address(authorization.from_),
        "to": Web3.to_checksum_address(authorization.to),
        "value": authorization.value,
        "validAfter": authorization.validAfter,
        "validBefore": authorization.validBefore,
        "nonce": Web3.to_bytes(hexstr=authorization.nonce),
    }
    return domain, message


def recover_signer(domain: Dict[str, Any], message: Dict[str, Any], signature: str) -> str:
    signable = encode_typed_data(
        domain_data=domain,
        message_types=TRANSFER_AUTH_TYPES,
        message_data=message,
    )
    return Account.recover_message(signable, signature=signature)


def verify(request: FacilitatorRequest, w3: Web3) -> VerifyResult:
    reason = check_protocol(request)
    if reason:
        return VerifyResult.invalid(reason)

    try:
        payload = parse_payload(request, Eip3009Payload)
    except ValueError as e:
        return VerifyResult.invalid(str(e))

    token = request.token
    if not token.eip712Name or not token.eip712Version:
        return VerifyResult.invalid("Token has no EIP-712 domain")

    auth = payload.authorization
    try:
        domain, message = authorization_typed_data(
            auth, token.address, token.eip712Name, token.eip712Version, request.network.chainId
        )
        recovered = recover_signer(domain, message, payload.signature)
    except Exception as e:
        logger.info(f"eip3009: signature recovery failed: {e}")
        return VerifyResult.invalid("Invalid signature")

    if recovered.lower() != auth.from_.lower():
        return VerifyResult.invalid("Invalid signature")

    if auth.to.lower() != request.treasury.lower():
        return VerifyResult.invalid("Wrong payment destination")

    try:
        erc20 = w3.eth.contract(address=Web3.to_checksum_address(token.address), abi=ERC20_ABI)
        balance = erc20.functions.balanceOf(Web3.to_checksum_address(auth.from_)).call()
    except Exception as e:
        logger.warning(f"eip3009: balance lookup failed for {auth.from_}: {e}")
        return VerifyResult.invalid(error_message(e))
    if balance < auth.value:
        return VerifyResult.invalid("Insufficient balance")

    # validAfter is inclusive, validBefore is exclusive
    now = current_timestamp()
    if now < auth.validAfter or now >= auth.validBefore:
        return VerifyResult.invalid("Authorization expired or not yet valid")

    if auth.value < token.pricePerQuery:
        return VerifyResult.invalid("Insufficient amount")

    return VerifyResult.ok()


def settle(request: FacilitatorRequest, sender: TransactionSender) -> SettlementResult:
    try:
        payload = parse_payload(request, Eip3009Payload)
    except ValueError as e:
        return SettlementResult.failed(str(e))

    auth = payload.authorization
    try:
        token = sender.w3.eth.contract(
            address=Web3.to_checksum_address(request.token.address),
            abi=EIP3009_ABI,
        )
        call = token.functions.transferWithAuthorization(
            Web3.to_checksum_address(auth.from_),
            Web3.to_checksum_address(auth.to),
            auth.value,
            auth.validAfter,
            auth.validBefore,
            Web3.to_bytes(hexstr=auth.nonce),
            Web3.to_bytes(hexstr=payload.signature),
        )
        receipt = sender.transact(call, gas=SETTLE_GAS_LIMIT)
    except Exception as e:
        logger.error(f"eip3009: settle error: {e}")
        return SettlementResult.failed(error_message(e))

    return SettlementResult(
        success=True,
        transaction=to_hex(receipt["transactionHash"]),
        payer=auth.from_,
    )
