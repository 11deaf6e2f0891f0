# x402_gateway/x402/middleware.py
"""
FastAPI middleware for x402 payment verification.

For every gated endpoint this middleware:
1. Applies the per-IP rate limit
2. Resolves the network and token the request is priced in
3. Returns 402 Payment Required when no PAYMENT-SIGNATURE header is sent
   (or pays itself on the testnet when ?demo=1 is set)
4. Decodes the proof and checks its version, scheme and network
5. Verifies, then settles, the payment via the facilitator
6. Attaches the settlement to request.state and adds PAYMENT-RESPONSE

A SettlementResult reaches the downstream handler only after the facilitator
confirmed settlement. Facilitator calls run in the threadpool, so a client
that disconnects does not abort a settlement in flight.
"""
import hashlib
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from fastapi import Request, Response
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from x402.encoding import safe_base64_decode, safe_base64_encode

from x402_gateway.api.models.payment import (
    EXACT_SCHEME,
    X402_VERSION,
    PaymentProof,
    SettlementResult,
)
from x402_gateway.core.config import get_payment_contract, settings
from x402_gateway.core.networks import (
    NetworkDescriptor,
    TokenDescriptor,
    UnknownNetworkError,
    UnknownTokenError,
)
from x402_gateway.x402 import audit
from x402_gateway.x402.challenge import create_402_response, resolve_payment_target
from x402_gateway.x402.demo import DemoPayer, get_demo_payer
from x402_gateway.x402.facilitator_client import (
    FacilitatorClient,
    FacilitatorError,
    build_request_body,
)
from x402_gateway.x402.invoices import get_invoice_store
from x402_gateway.x402.ratelimit import check_rate_limit, get_rate_limit_headers

logger = logging.getLogger(__name__)

PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
PAYMENT_RESPONSE_HEADER = "PAYMENT-RESPONSE"

# Gated endpoints as (method, path, token_symbol); a None symbol lets the
# buyer pick with ?token= or falls back to the network's default token.
PROTECTED_ENDPOINTS: List[Tuple[str, str, Optional[str]]] = [
    ("GET", "/data/premium", None),
]


class PaymentHeaderError(ValueError):
    """Raised when PAYMENT-SIGNATURE is not base64 JSON of a payment proof."""


def find_protected_endpoint(
    method: str,
    path: str,
    endpoints: Optional[List[Tuple[str, str, Optional[str]]]] = None
) -> Optional[Tuple[str, str, Optional[str]]]:
    """Return the gated endpoint matching the request, if any."""
    normalized = path.rstrip("/") or "/"
    for endpoint in PROTECTED_ENDPOINTS if endpoints is None else endpoints:
        protected_method, protected_path, _ = endpoint
        if method == protected_method and normalized == (protected_path.rstrip("/") or "/"):
            return endpoint
    return None


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    for header in ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP"):
        value = request.headers.get(header)
        if value:
            # Take the first IP in the chain
            return value.split(",")[0].strip()

    if request.client:
        return request.client.host

    return "unknown"


def decode_payment_header(header_value: str) -> Tuple[PaymentProof, Dict[str, Any]]:
    """
    Decode the PAYMENT-SIGNATURE header.

    Returns:
        The parsed proof and the raw JSON object (forwarded as-is to the
        facilitator)

    Raises:
        PaymentHeaderError: malformed base64, JSON or proof shape
    """
    try:
        decoded_str = safe_base64_decode(header_value)
    except (ValueError, UnicodeDecodeError) as e:
        raise PaymentHeaderError(f"invalid base64: {e}") from e
    if decoded_str is None:
        raise PaymentHeaderError("invalid base64")

    try:
        data = json.loads(decoded_str)
    except json.JSONDecodeError as e:
        raise PaymentHeaderError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PaymentHeaderError("payload is not a JSON object")

    try:
        return PaymentProof.model_validate(data), data
    except ValidationError as e:
        raise PaymentHeaderError(f"invalid proof: {e.error_count()} error(s)") from e


def check_proof_matches(proof: PaymentProof, network: NetworkDescriptor) -> Optional[str]:
    """Reason the proof's (version, scheme, network) triplet is rejected, or None."""
    if proof.x402Version != X402_VERSION:
        return "Unsupported x402 version"
    if proof.scheme != EXACT_SCHEME:
        return f"Unsupported scheme: {proof.scheme}"
    if proof.network != network.caip2:
        return f"Wrong network: {proof.network}"
    return None


def claimed_payer(proof: Dict[str, Any]) -> Optional[str]:
    """Sender named in a proof payload, for logging only."""
    payload = proof.get("payload") or {}
    if not isinstance(payload, dict):
        return None
    authorization = payload.get("authorization")
    if isinstance(authorization, dict):
        return authorization.get("from")
    return payload.get("from")


def encode_payment_response(settlement: SettlementResult) -> str:
    """Base64 JSON of a settlement for the PAYMENT-RESPONSE header."""
    response_json = json.dumps(settlement.model_dump(exclude_none=True))
    return safe_base64_encode(response_json.encode("utf-8"))


class InFlightProofs:
    """
    Process-local single-flight guard keyed by proof digest.

    Two identical proofs cannot be verified and settled concurrently in one
    process; replays across processes are left to the chain.
    """

    def __init__(self):
        self._keys: Set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def key_for(header_value: str) -> str:
        return hashlib.sha256(header_value.encode("utf-8")).hexdigest()

    def acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._keys.discard(key)


_in_flight = InFlightProofs()


def get_in_flight_proofs() -> InFlightProofs:
    return _in_flight


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment middleware for FastAPI.

    Requests to endpoints outside PROTECTED_ENDPOINTS pass through unchanged.
    """

    def __init__(
        self,
        app,
        facilitator_client: Optional[FacilitatorClient] = None,
        demo_payer: Optional[DemoPayer] = None,
        endpoints: Optional[List[Tuple[str, str, Optional[str]]]] = None,
    ):
        super().__init__(app)
        self._facilitator_client = facilitator_client
        self._demo_payer = demo_payer
        self._endpoints = endpoints

    @property
    def facilitator_client(self) -> FacilitatorClient:
        """Lazy initialization of facilitator client."""
        if self._facilitator_client is None:
            self._facilitator_client = FacilitatorClient()
        return self._facilitator_client

    @property
    def demo_payer(self) -> Optional[DemoPayer]:
        return self._demo_payer or get_demo_payer()

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        endpoint = find_protected_endpoint(request.method, request.url.path, self._endpoints)
        if endpoint is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        path = request.url.path
        request_id = audit.generate_request_id()
        logger.info(f"x402: Processing gated request from {client_ip}: {request.method} {path}")

        is_allowed, stats = check_rate_limit(client_ip, path)
        rate_headers = get_rate_limit_headers(stats)
        if not is_allowed:
            audit.log_rate_limited(client_ip, path, stats["requests_made"], stats["limit"], request_id)
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests", "retry_after": stats["retry_after"]},
                headers=rate_headers,
            )

        try:
            network, token = resolve_payment_target(request, endpoint[2])
        except (UnknownNetworkError, UnknownTokenError) as e:
            return JSONResponse(status_code=400, content={"error": str(e)}, headers=rate_headers)

        payment_contract = get_payment_contract(network.name, settings)
        payment_header = request.headers.get(PAYMENT_SIGNATURE_HEADER)

        if not payment_header:
            if request.query_params.get("demo") == "1" and self._demo_allowed(network, token):
                return await self._serve_demo(request, call_next, network, token, payment_contract,
                                              client_ip, request_id, rate_headers)

            response = create_402_response(request, network, token, payment_contract)
            audit.log_payment_required_sent(
                client_ip,
                invoice_id=response.headers["X-Payment-Invoice-Id"],
                amount=token.price_per_query,
                token=token.symbol,
                network=network.caip2,
                resource=path,
                request_id=request_id,
            )
            response.headers.update(rate_headers)
            return response

        try:
            proof, raw_proof = decode_payment_header(payment_header)
        except PaymentHeaderError as e:
            logger.warning(f"x402: Invalid PAYMENT-SIGNATURE header from {client_ip}: {e}")
            audit.log_payment_failed(client_ip, str(e), stage="decode", request_id=request_id)
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid PAYMENT-SIGNATURE header"},
                headers=rate_headers,
            )

        mismatch = check_proof_matches(proof, network)
        if mismatch:
            audit.log_payment_failed(client_ip, mismatch, stage="protocol", request_id=request_id)
            return JSONResponse(status_code=400, content={"error": mismatch}, headers=rate_headers)

        proof_key = InFlightProofs.key_for(payment_header)
        in_flight = get_in_flight_proofs()
        if not in_flight.acquire(proof_key):
            logger.warning(f"x402: Duplicate in-flight proof from {client_ip}")
            return JSONResponse(
                status_code=409,
                content={"error": "Payment already being processed"},
                headers=rate_headers,
            )

        try:
            settlement = await run_in_threadpool(
                self._verify_and_settle, raw_proof, network, token, payment_contract, client_ip, request_id
            )
        except FacilitatorError as e:
            logger.error(f"x402: Facilitator verification failed: {e}")
            audit.log_error(client_ip, "facilitator_unavailable", str(e), {"path": path}, request_id)
            return JSONResponse(
                status_code=502,
                content={"error": "Payment verification failed", "message": str(e)},
                headers=rate_headers,
            )
        finally:
            in_flight.release(proof_key)

        if not settlement.success:
            return JSONResponse(
                status_code=402,
                content={"error": "Payment failed", "message": settlement.error},
                headers=rate_headers,
            )

        invoice_id = (raw_proof.get("payload") or {}).get("invoiceId")
        if isinstance(invoice_id, str):
            get_invoice_store().mark_paid(invoice_id, settlement.payer)

        return await self._call_paid(request, call_next, settlement, network, token, rate_headers)

    def _demo_allowed(self, network: NetworkDescriptor, token: TokenDescriptor) -> bool:
        return network.is_testnet and self.demo_payer is not None and DemoPayer.is_eligible(network, token)

    async def _serve_demo(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
        network: NetworkDescriptor,
        token: TokenDescriptor,
        payment_contract: str,
        client_ip: str,
        request_id: str,
        rate_headers: Dict[str, str],
    ) -> Response:
        logger.info(f"x402: Demo payment requested by {client_ip} ({token.symbol})")
        settlement = await run_in_threadpool(self.demo_payer.pay, network, token, payment_contract)
        audit.log_demo_payment(
            client_ip,
            payer=settlement.payer,
            transaction_hash=settlement.transaction,
            token=token.symbol,
            success=settlement.success,
            error_reason=settlement.error,
            request_id=request_id,
        )
        if not settlement.success:
            return JSONResponse(
                status_code=500,
                content={"error": "Demo payment failed", "message": settlement.error},
                headers=rate_headers,
            )
        return await self._call_paid(request, call_next, settlement, network, token, rate_headers)

    def _verify_and_settle(
        self,
        raw_proof: Dict[str, Any],
        network: NetworkDescriptor,
        token: TokenDescriptor,
        payment_contract: str,
        client_ip: str,
        request_id: str,
    ) -> SettlementResult:
        """
        Verify then settle through the facilitator (blocking).

        Raises:
            FacilitatorError: verification could not be obtained
        """
        method = token.payment_method
        payer = claimed_payer(raw_proof)
        body = build_request_body(raw_proof, network, token, settings.X402_TREASURY_ADDRESS, payment_contract)

        verify_result = self.facilitator_client.verify(method, body)
        if not verify_result.valid:
            reason = verify_result.reason or "Verification failed"
            logger.warning(f"x402: Payment verification failed: {reason}")
            audit.log_payment_failed(client_ip, reason, stage="verify", wallet_address=payer, request_id=request_id)
            return SettlementResult.failed(reason)

        logger.info(f"x402: Payment verified for payer {payer} ({method.value})")
        audit.log_payment_verified(client_ip, method.value, network.caip2, payer, request_id)

        settlement = self.facilitator_client.settle(method, body)
        if not settlement.success:
            logger.error(f"x402: Payment settlement failed: {settlement.error}")
            audit.log_payment_failed(
                client_ip, settlement.error or "Settlement failed", stage="settle",
                wallet_address=payer, request_id=request_id,
            )
            return settlement

        logger.info(f"x402: Payment settled in {settlement.transaction}")
        audit.log_payment_settled(
            client_ip, settlement.payer, settlement.transaction, token.symbol, network.caip2, request_id
        )
        return settlement

    async def _call_paid(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
        settlement: SettlementResult,
        network: NetworkDescriptor,
        token: TokenDescriptor,
        rate_headers: Dict[str, str],
    ) -> Response:
        request.state.x402 = settlement
        request.state.x402_token = token
        request.state.x402_network = network

        response = await call_next(request)
        response.headers[PAYMENT_RESPONSE_HEADER] = encode_payment_response(settlement)
        response.headers.update(rate_headers)
        return response
