# x402_gateway/x402/challenge.py
"""
HTTP 402 challenge construction.

A gated request without a payment proof gets a PaymentRequired envelope,
base64-encoded in the PAYMENT-REQUIRED header, plus discrete X-Payment-*
headers for clients that only read simple headers. Each challenge carries a
fresh 128-bit invoice id and nonce and is recorded as a pending invoice.
"""
import json
import logging
import secrets
import time
from typing import Optional, Tuple

from fastapi import Request
from starlette.responses import JSONResponse
from x402.encoding import safe_base64_encode

from x402_gateway.api.models.payment import (
    PaymentExtra,
    PaymentRequired,
    PaymentRequirements,
    ResourceInfo,
)
from x402_gateway.core.config import settings
from x402_gateway.core.networks import (
    NetworkDescriptor,
    TokenDescriptor,
    format_amount,
    get_network,
    get_token,
    select_default_token,
)
from x402_gateway.x402.invoices import get_invoice_store

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"


def new_identifier() -> str:
    """128-bit random hex identifier for invoice ids and nonces."""
    return secrets.token_hex(16)


def resolve_payment_target(
    request: Request,
    token_symbol: Optional[str] = None
) -> Tuple[NetworkDescriptor, TokenDescriptor]:
    """
    Pick the network and token a gated request is priced in.

    Network comes from ?network= or the configured default. The token is the
    route's fixed symbol, else ?token=, else the network's default token.

    Raises:
        UnknownNetworkError: ?network= names an unknown network
        UnknownTokenError: the token is not configured on that network
    """
    network = get_network(request.query_params.get("network") or settings.X402_NETWORK)
    symbol = token_symbol or request.query_params.get("token")
    token = get_token(network, symbol) if symbol else select_default_token(network)
    return network, token


def build_payment_required(
    resource_url: str,
    network: NetworkDescriptor,
    token: TokenDescriptor,
    payment_contract: str,
) -> PaymentRequired:
    """Build the single-option PaymentRequired envelope for a token."""
    price = format_amount(token.price_per_query, token.decimals)
    requirements = PaymentRequirements(
        network=network.caip2,
        amount=token.price_per_query,
        asset=token.address,
        payTo=settings.X402_TREASURY_ADDRESS,
        maxTimeoutSeconds=settings.X402_CHALLENGE_TIMEOUT_SECONDS,
        extra=PaymentExtra(
            paymentMethod=token.payment_method,
            symbol=token.symbol,
            decimals=token.decimals,
            name=token.eip712_name,
            version=token.eip712_version,
            paymentContract=payment_contract,
        ),
    )
    return PaymentRequired(
        resource=ResourceInfo(
            url=resource_url,
            description=f"API query - {price} {token.symbol} per request",
        ),
        accepts=[requirements],
    )


def encode_payment_required(envelope: PaymentRequired) -> str:
    payload = json.dumps(envelope.model_dump(mode="json", exclude_none=True))
    return safe_base64_encode(payload.encode("utf-8"))


def create_402_response(
    request: Request,
    network: NetworkDescriptor,
    token: TokenDescriptor,
    payment_contract: str,
) -> JSONResponse:
    """
    Create the HTTP 402 Payment Required response and record its invoice.

    The invoice id is exposed in the X-Payment-Invoice-Id header.
    """
    invoice_id = new_identifier()
    nonce = new_identifier()
    expiry = int(time.time()) + settings.X402_CHALLENGE_TIMEOUT_SECONDS
    endpoint = request.url.path
    resource_url = str(request.url.replace(query=""))

    envelope = build_payment_required(resource_url, network, token, payment_contract)

    get_invoice_store().create(
        invoice_id,
        token_symbol=token.symbol,
        amount=token.price_per_query,
        chain_id=network.chain_id,
        endpoint=endpoint,
        expires_in=settings.X402_CHALLENGE_TIMEOUT_SECONDS,
    )

    headers = {
        PAYMENT_REQUIRED_HEADER: encode_payment_required(envelope),
        "X-Payment-Amount": token.price_per_query,
        "X-Payment-Token": token.address,
        "X-Payment-Nonce": nonce,
        "X-Payment-Expiry": str(expiry),
        "X-Payment-Endpoint": endpoint,
        "X-Payment-Invoice-Id": invoice_id,
    }

    logger.info(f"x402: Challenge {invoice_id} for {endpoint}: {token.price_per_query} {token.symbol} on {network.caip2}")
    return JSONResponse(status_code=402, content={"error": "Payment required"}, headers=headers)
