# x402_gateway/facilitator/routes.py
"""
Facilitator HTTP API.

    GET  /x402/health                     (no auth)
    POST /x402/verify-{native|erc20|eip3009}
    POST /x402/settle-{native|erc20|eip3009}

Every route except health requires the X-API-Key header. Bodies are capped
in size before any JSON parsing happens. Chain work runs in the threadpool,
so a client disconnect never aborts a settlement already under way.
"""
import hmac
import json
import logging
from typing import Any, Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from x402_gateway.api.models.payment import FacilitatorRequest, NetworkRef
from x402_gateway.core.config import get_payment_contract, settings
from x402_gateway.core.networks import NetworkDescriptor, PaymentMethod
from x402_gateway.facilitator.health import check_relayer_health
from x402_gateway.facilitator.pool import (
    ConnectionPool,
    RelayerNotConfiguredError,
    UnsupportedChainError,
)
from x402_gateway.facilitator.schemes import get_scheme

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


def get_pool(request: Request) -> ConnectionPool:
    return request.app.state.pool


def require_api_key(x_api_key: Optional[str] = Header(None, alias=API_KEY_HEADER)) -> None:
    """Reject the request unless the shared secret matches."""
    expected = settings.X402_FACILITATOR_API_KEY
    if not expected:
        logger.error("X402_FACILITATOR_API_KEY not configured - rejecting all requests")
        raise HTTPException(status_code=401, detail="Invalid API key")
    if not x_api_key or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")


async def read_json_body(request: Request, max_bytes: int) -> Any:
    """
    Read and parse a JSON body no larger than max_bytes.

    The size limit is enforced on Content-Length and while streaming, so an
    oversized body is rejected before parsing is attempted.

    Raises:
        HTTPException: 400 if the body is too large or not valid JSON
    """
    content_length = request.headers.get("content-length", "")
    if content_length.isdigit() and int(content_length) > max_bytes:
        raise HTTPException(status_code=400, detail="Request body too large")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise HTTPException(status_code=400, detail="Request body too large")

    try:
        return json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid request body")


def parse_method(scheme: str) -> PaymentMethod:
    try:
        return PaymentMethod(scheme)
    except ValueError:
        raise HTTPException(status_code=404, detail="Not found")


def resolve_request(body: Any, pool: ConnectionPool) -> Tuple[FacilitatorRequest, NetworkDescriptor]:
    """
    Validate the body and resolve the chain it targets.

    A request without a network is served on the default network.
    """
    try:
        facilitator_request = FacilitatorRequest.model_validate(body)
    except ValidationError as e:
        logger.warning(f"Invalid facilitator request: {e.error_count()} validation error(s)")
        raise HTTPException(status_code=400, detail="Invalid request body")

    chain_id = facilitator_request.network.chainId if facilitator_request.network else None
    try:
        network = pool.resolve_network(chain_id)
    except UnsupportedChainError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if facilitator_request.network is None:
        facilitator_request = facilitator_request.model_copy(
            update={"network": NetworkRef(chainId=network.chain_id, caip2=network.caip2)}
        )
    return facilitator_request, network


health_router = APIRouter()
router = APIRouter(dependencies=[Depends(require_api_key)])


@health_router.get("/x402/health")
def health(pool: ConnectionPool = Depends(get_pool)):
    """Liveness and capacity: relayer address, balance and payment contract."""
    payment_contract = get_payment_contract(pool.default_network.name, settings)
    return check_relayer_health(pool, payment_contract)


@router.post("/x402/verify-{scheme}")
async def verify(scheme: str, request: Request, pool: ConnectionPool = Depends(get_pool)):
    method = parse_method(scheme)
    body = await read_json_body(request, settings.FACILITATOR_MAX_BODY_BYTES)
    facilitator_request, network = resolve_request(body, pool)

    try:
        w3 = pool.client_for(network.chain_id)
    except Exception as e:
        logger.error(f"Failed to create RPC client for chain {network.chain_id}: {e}")
        raise HTTPException(status_code=500, detail="RPC client unavailable")

    result = await run_in_threadpool(get_scheme(method).verify, facilitator_request, w3)
    if result.valid:
        logger.info(f"{method.value}: verified payment on chain {network.chain_id}")
    else:
        logger.info(f"{method.value}: verification rejected: {result.reason}")
    return JSONResponse(status_code=200, content=result.model_dump(exclude_none=True))


@router.post("/x402/settle-{scheme}")
async def settle(scheme: str, request: Request, pool: ConnectionPool = Depends(get_pool)):
    method = parse_method(scheme)
    body = await read_json_body(request, settings.FACILITATOR_MAX_BODY_BYTES)
    facilitator_request, network = resolve_request(body, pool)

    try:
        sender = pool.sender_for(network.chain_id)
    except (RelayerNotConfiguredError, ValueError) as e:
        logger.error(f"{method.value}: relayer unavailable: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Relayer not configured"})

    result = await run_in_threadpool(get_scheme(method).settle, facilitator_request, sender)
    if result.success:
        logger.info(f"{method.value}: settled {result.transaction} for {result.payer}")
    else:
        logger.error(f"{method.value}: settlement failed: {result.error}")
    return JSONResponse(
        status_code=200 if result.success else 500,
        content=result.model_dump(exclude_none=True),
    )


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def not_found(path: str):
    raise HTTPException(status_code=404, detail="Not found")
