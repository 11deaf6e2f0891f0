# x402_gateway/x402/facilitator_client.py
"""
Seller-side HTTP client for the facilitator service.

verify() raises FacilitatorError when the facilitator cannot be reached or
does not answer with a verification result; the seller answers 502.
settle() never raises: transport errors and timeouts become a failed
SettlementResult, so an unconfirmed payment is never treated as collected.
"""
import logging
from typing import Any, Dict, Optional

import requests

from x402_gateway.api.models.payment import SettlementResult, VerifyResult
from x402_gateway.core.config import settings
from x402_gateway.core.networks import NetworkDescriptor, PaymentMethod, TokenDescriptor

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


class FacilitatorError(Exception):
    """Raised when the facilitator is unreachable or answers garbage."""


def build_request_body(
    proof: Dict[str, Any],
    network: NetworkDescriptor,
    token: TokenDescriptor,
    treasury: str,
    payment_contract: str,
) -> Dict[str, Any]:
    """Body shared by every verify-* and settle-* call."""
    return {
        "payload": proof,
        "token": token.to_wire(),
        "network": network.to_wire(),
        "treasury": treasury,
        "paymentContract": payment_contract,
    }


class FacilitatorClient:
    """
    Calls POST /x402/verify-{method} and /x402/settle-{method}.

    Args:
        base_url: Facilitator URL (X402_FACILITATOR_URL if None)
        api_key: Shared secret (X402_FACILITATOR_API_KEY if None)
        timeout: Request timeout in seconds (X402_FACILITATOR_TIMEOUT_SECONDS if None).
            requests applies it to the connect and to each socket read, not to
            the call as a whole; a facilitator trickling its response can hold
            a call open longer.
        session: requests session to reuse connections
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.X402_FACILITATOR_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.X402_FACILITATOR_API_KEY
        self.timeout = timeout if timeout is not None else settings.X402_FACILITATOR_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(
                url,
                json=body,
                headers={API_KEY_HEADER: self.api_key},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"x402: Facilitator request to {path} failed: {e}")
            raise FacilitatorError(f"Facilitator unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            logger.error(f"x402: Facilitator returned non-JSON ({response.status_code}) for {path}")
            raise FacilitatorError(f"Invalid facilitator response ({response.status_code})")

        if not isinstance(data, dict):
            raise FacilitatorError(f"Invalid facilitator response ({response.status_code})")
        return data

    def verify(self, method: PaymentMethod, body: Dict[str, Any]) -> VerifyResult:
        """
        Ask the facilitator to verify a proof.

        Raises:
            FacilitatorError: If the facilitator is unreachable or its answer
                carries no verification result (auth or routing errors)
        """
        data = self._post(f"/x402/verify-{method.value}", body)
        if "valid" not in data:
            raise FacilitatorError(f"Facilitator error: {data.get('error') or 'no verification result'}")
        return VerifyResult(valid=data["valid"] is True, reason=data.get("reason"))

    def settle(self, method: PaymentMethod, body: Dict[str, Any]) -> SettlementResult:
        """Ask the facilitator to settle a verified proof."""
        try:
            data = self._post(f"/x402/settle-{method.value}", body)
        except FacilitatorError as e:
            return SettlementResult.failed(str(e))

        if data.get("success") is not True:
            return SettlementResult.failed(data.get("error") or "Settlement failed")
        return SettlementResult(
            success=True,
            transaction=data.get("transaction"),
            payer=data.get("payer"),
        )
