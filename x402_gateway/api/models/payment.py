# x402_gateway/api/models/payment.py
"""
Wire models for the x402 v2 protocol as spoken by the seller and facilitator.

Field names follow the protocol's camelCase JSON. Scheme payload variants are
parsed by the scheme handlers, after the protocol triplet has been checked.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from x402_gateway.core.networks import PaymentMethod

X402_VERSION = 2
EXACT_SCHEME = "exact"


# --- Challenge (402) ---

class ResourceInfo(BaseModel):
    url: str
    description: str
    mimeType: str = "application/json"


class PaymentExtra(BaseModel):
    paymentMethod: PaymentMethod
    symbol: str
    decimals: int
    name: Optional[str] = None
    version: Optional[str] = None
    paymentContract: str = ""


class PaymentRequirements(BaseModel):
    """One accepted way to pay for a resource."""
    scheme: str = EXACT_SCHEME
    network: str = Field(..., description="CAIP-2 chain identifier, e.g. eip155:71")
    amount: str = Field(..., description="Smallest-unit amount as a decimal string")
    asset: str = Field(..., description="Token contract (zero address for native)")
    payTo: str
    maxTimeoutSeconds: int
    extra: PaymentExtra


class PaymentRequired(BaseModel):
    """Envelope carried base64-encoded in the PAYMENT-REQUIRED header."""
    x402Version: int = X402_VERSION
    resource: ResourceInfo
    accepts: List[PaymentRequirements]


# --- Proof (PAYMENT-SIGNATURE) ---

class PaymentProof(BaseModel):
    """Decoded PAYMENT-SIGNATURE header."""
    x402Version: int
    scheme: str = EXACT_SCHEME
    network: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class NativePayload(BaseModel):
    txHash: Optional[str] = None
    from_: Optional[str] = Field(None, alias="from")
    amount: Optional[int] = None

    class Config:
        populate_by_name = True


class Erc20Payload(BaseModel):
    from_: Optional[str] = Field(None, alias="from")
    amount: Optional[int] = None
    invoiceId: Optional[str] = None
    approveTxHash: Optional[str] = None

    class Config:
        populate_by_name = True


class Eip3009Authorization(BaseModel):
    from_: str = Field(..., alias="from")
    to: str
    value: int
    validAfter: int
    validBefore: int
    nonce: str

    class Config:
        populate_by_name = True

    @field_validator("nonce")
    @classmethod
    def nonce_is_bytes32(cls, v: str) -> str:
        hex_part = v[2:] if v.startswith("0x") else v
        if len(hex_part) != 64:
            raise ValueError("nonce must be 32 bytes")
        bytes.fromhex(hex_part)
        return "0x" + hex_part.lower()


class Eip3009Payload(BaseModel):
    signature: str
    authorization: Eip3009Authorization


# --- Facilitator API ---

class TokenInfo(BaseModel):
    """Token description the seller sends to the facilitator."""
    address: str
    symbol: str
    decimals: int
    paymentMethod: PaymentMethod
    pricePerQuery: int
    eip712Name: Optional[str] = None
    eip712Version: Optional[str] = None


class NetworkRef(BaseModel):
    chainId: int
    caip2: str


class FacilitatorRequest(BaseModel):
    """Body of every verify-* and settle-* call."""
    payload: PaymentProof
    token: TokenInfo
    network: Optional[NetworkRef] = None
    treasury: str = ""
    paymentContract: str = ""


class VerifyResult(BaseModel):
    valid: bool
    reason: Optional[str] = None

    class Config:
        frozen = True

    @classmethod
    def ok(cls) -> "VerifyResult":
        return cls(valid=True)

    @classmethod
    def invalid(cls, reason: str) -> "VerifyResult":
        return cls(valid=False, reason=reason)


class SettlementResult(BaseModel):
    """Outcome of a settlement; immutable once produced."""
    success: bool
    transaction: Optional[str] = None
    payer: Optional[str] = None
    error: Optional[str] = None

    class Config:
        frozen = True

    @classmethod
    def failed(cls, error: str) -> "SettlementResult":
        return cls(success=False, error=error)
