# x402_gateway/api/models/data.py
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class PaymentReceipt(BaseModel):
    """
    Settlement details echoed back with paid content.
    """
    txHash: Optional[str] = None
    payer: Optional[str] = None
    token: str
    network: str


class FreeData(BaseModel):
    message: str
    items: List[Dict[str, Any]]
    timestamp: str


class PremiumData(BaseModel):
    message: str
    analytics: Dict[str, Any]
    payment: PaymentReceipt
    timestamp: str


class FreeDataResponse(BaseModel):
    success: bool = True
    data: FreeData


class PremiumDataResponse(BaseModel):
    success: bool = True
    data: PremiumData
