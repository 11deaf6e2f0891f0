# x402_gateway/api/endpoints/data.py
from datetime import datetime, timezone
import logging

from fastapi import APIRouter, HTTPException, Request

from x402_gateway.api.models.data import (
    FreeData,
    FreeDataResponse,
    PaymentReceipt,
    PremiumData,
    PremiumDataResponse,
)
from x402_gateway.x402.audit import log_payment_recorded
from x402_gateway.x402.middleware import get_client_ip

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/free", response_model=FreeDataResponse)
def get_free_data() -> FreeDataResponse:
    """ Free endpoint, no payment required. """
    return FreeDataResponse(data=FreeData(
        message="This is free data - no payment required.",
        items=[
            {"id": 1, "name": "Conflux Network", "type": "L1 Blockchain"},
            {"id": 2, "name": "CFX", "type": "Native Token"},
            {"id": 3, "name": "eSpace", "type": "EVM-Compatible Space"},
        ],
        timestamp=datetime.now(timezone.utc).isoformat(),
    ))


@router.get("/premium", response_model=PremiumDataResponse)
def get_premium_data(request: Request) -> PremiumDataResponse:
    """
    Premium endpoint, gated by the x402 middleware.

    Reads the settlement, token and network the middleware attached and
    records the payment in the audit log.

    Raises:
        HTTPException: 500 if the route is reached without a settlement
    """
    settlement = getattr(request.state, "x402", None)
    token = getattr(request.state, "x402_token", None)
    network = getattr(request.state, "x402_network", None)
    if settlement is None or not settlement.success or token is None or network is None:
        logger.error("Premium data reached without a confirmed settlement")
        raise HTTPException(status_code=500, detail="Payment context missing")

    log_payment_recorded(
        get_client_ip(request),
        payer=settlement.payer,
        transaction_hash=settlement.transaction,
        token=token.symbol,
        amount=token.price_per_query,
        payment_method=token.payment_method.value,
        network=network.caip2,
        endpoint=request.url.path,
    )

    return PremiumDataResponse(data=PremiumData(
        message="Premium data - paid via x402 protocol.",
        analytics={
            "totalTransactions": 1_284_567,
            "dailyActiveUsers": 45_230,
            "tvl": "$12.5M",
            "topProtocols": [
                {"name": "Swappi", "tvl": "$4.2M", "volume24h": "$890K"},
                {"name": "Nucleon", "tvl": "$3.8M", "stakers": 12_450},
                {"name": "Goledo", "tvl": "$2.1M", "borrowers": 3_200},
            ],
        },
        payment=PaymentReceipt(
            txHash=settlement.transaction,
            payer=settlement.payer,
            token=token.symbol,
            network=network.caip2,
        ),
        timestamp=datetime.now(timezone.utc).isoformat(),
    ))
