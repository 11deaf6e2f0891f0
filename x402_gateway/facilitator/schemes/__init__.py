# x402_gateway/facilitator/schemes/__init__.py
"""
Scheme handlers, one per payment method.

Every handler exposes the same pair of plain functions:
- verify(request, w3) -> VerifyResult
- settle(request, sender) -> SettlementResult

SCHEMES maps a PaymentMethod to its pair; the dispatcher selects by enum.
"""
from typing import Callable, Mapping, NamedTuple

from web3 import Web3

from x402_gateway.api.models.payment import FacilitatorRequest, SettlementResult, VerifyResult
from x402_gateway.core.chain import TransactionSender
from x402_gateway.core.networks import PaymentMethod
from x402_gateway.facilitator.schemes import eip3009, erc20, native


class SchemeHandler(NamedTuple):
    verify: Callable[[FacilitatorRequest, Web3], VerifyResult]
    settle: Callable[[FacilitatorRequest, TransactionSender], SettlementResult]


SCHEMES: Mapping[PaymentMethod, SchemeHandler] = {
    PaymentMethod.NATIVE: SchemeHandler(native.verify, native.settle),
    PaymentMethod.ERC20: SchemeHandler(erc20.verify, erc20.settle),
    PaymentMethod.EIP3009: SchemeHandler(eip3009.verify, eip3009.settle),
}


def get_scheme(method: PaymentMethod) -> SchemeHandler:
    return SCHEMES[method]
