# x402_gateway/api/endpoints/health.py
from datetime import datetime, timezone
import logging

from fastapi import APIRouter, HTTPException, Query
from typing import Optional

from x402_gateway import __version__
from x402_gateway.api.models.catalog import HealthResponse, NetworkSummary, TokenSummary, TokensResponse
from x402_gateway.core.config import settings
from x402_gateway.core.networks import UnknownNetworkError, get_network

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    """
    Seller liveness: configured network, payable tokens and treasury.
    """
    network = get_network(settings.X402_NETWORK)
    return HealthResponse(
        service="x402-seller",
        version=__version__,
        network=NetworkSummary.from_descriptor(network),
        tokens=[TokenSummary.from_descriptor(t) for t in network.tokens.values()],
        treasury=settings.X402_TREASURY_ADDRESS,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/tokens", response_model=TokensResponse)
def list_tokens(network: Optional[str] = Query(None, description="testnet or mainnet")) -> TokensResponse:
    """
    Tokens accepted for payment on a network.

    Raises:
        HTTPException: 400 if the network is unknown
    """
    network_name = network or settings.X402_NETWORK
    try:
        descriptor = get_network(network_name)
    except UnknownNetworkError as e:
        logger.warning(f"Token list requested for unknown network: {network_name}")
        raise HTTPException(status_code=400, detail=str(e))

    return TokensResponse(
        network=descriptor.name,
        chainId=descriptor.chain_id,
        tokens=[TokenSummary.from_descriptor(t) for t in descriptor.tokens.values()],
    )
