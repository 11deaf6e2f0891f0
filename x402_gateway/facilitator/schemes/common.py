# x402_gateway/facilitator/schemes/common.py
"""Checks shared by every scheme handler."""
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from x402_gateway.api.models.payment import EXACT_SCHEME, X402_VERSION, FacilitatorRequest

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def check_protocol(request: FacilitatorRequest) -> Optional[str]:
    """
    Validate the (version, scheme, network) triplet of a proof.

    Runs before any chain I/O.

    Returns:
        The rejection reason, or None if the triplet matches
    """
    proof = request.payload
    if proof.x402Version != X402_VERSION:
        return "Unsupported x402 version"
    if proof.scheme != EXACT_SCHEME:
        return f"Unsupported scheme: {proof.scheme}"
    if request.network is not None and proof.network != request.network.caip2:
        return f"Wrong network: {proof.network}"
    return None


def parse_payload(request: FacilitatorRequest, model: Type[PayloadT]) -> PayloadT:
    """Parse the scheme-specific payload; raises ValueError when malformed."""
    try:
        return model.model_validate(request.payload.payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValueError(f"Malformed payload: {fields}") from e
