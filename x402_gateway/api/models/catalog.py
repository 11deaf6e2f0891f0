# x402_gateway/api/models/catalog.py
from typing import List

from pydantic import BaseModel

from x402_gateway.core.networks import NetworkDescriptor, PaymentMethod, TokenDescriptor


class TokenSummary(BaseModel):
    """
    A payable token as listed by /health and /tokens.
    """
    symbol: str
    name: str
    address: str
    decimals: int
    paymentMethod: PaymentMethod
    pricePerQuery: str

    @classmethod
    def from_descriptor(cls, token: TokenDescriptor) -> "TokenSummary":
        return cls(
            symbol=token.symbol,
            name=token.name,
            address=token.address,
            decimals=token.decimals,
            paymentMethod=token.payment_method,
            pricePerQuery=token.price_per_query,
        )


class NetworkSummary(BaseModel):
    name: str
    chainId: int
    caip2: str

    @classmethod
    def from_descriptor(cls, network: NetworkDescriptor) -> "NetworkSummary":
        return cls(name=network.name, chainId=network.chain_id, caip2=network.caip2)


class HealthResponse(BaseModel):
    """
    Response model for the seller health endpoint.
    """
    status: str = "ok"
    service: str
    version: str
    network: NetworkSummary
    tokens: List[TokenSummary]
    treasury: str
    timestamp: str


class TokensResponse(BaseModel):
    """
    Response model for the token list endpoint.
    """
    network: str
    chainId: int
    tokens: List[TokenSummary]
