# x402_gateway/core/networks.py
"""
Network and token configuration for Conflux eSpace.

Supports testnet (chain 71) and mainnet (chain 1030). Each token declares
the payment method used to collect it:
- native:  CFX sent to the payment contract via payNative()
- erc20:   approve() by the buyer, payWithTokenFrom() by the relayer
- eip3009: gasless transferWithAuthorization() signed off-chain

Descriptors are loaded once at import and never mutated.
"""
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"


class PaymentMethod(str, Enum):
    """Payment schemes supported by the facilitator."""
    NATIVE = "native"
    ERC20 = "erc20"
    EIP3009 = "eip3009"


class UnknownNetworkError(ValueError):
    """Raised when a network name or chain id is not configured."""


class UnknownTokenError(ValueError):
    """Raised when a token symbol is not configured for a network."""


@dataclass(frozen=True)
class TokenDescriptor:
    symbol: str
    name: str
    address: str
    decimals: int
    payment_method: PaymentMethod
    price_per_query: str  # minimum price, smallest unit
    eip712_name: Optional[str] = None
    eip712_version: Optional[str] = None

    @property
    def is_native(self) -> bool:
        return self.payment_method == PaymentMethod.NATIVE

    def to_wire(self) -> Dict[str, object]:
        """Token description sent to the facilitator."""
        wire = {
            "address": self.address,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "paymentMethod": self.payment_method.value,
            "pricePerQuery": self.price_per_query,
        }
        if self.eip712_name:
            wire["eip712Name"] = self.eip712_name
            wire["eip712Version"] = self.eip712_version
        return wire


@dataclass(frozen=True)
class NetworkDescriptor:
    name: str
    display_name: str
    chain_id: int
    caip2: str
    rpc_url: str
    explorer_url: str
    tokens: Mapping[str, TokenDescriptor] = field(default_factory=dict)
    is_testnet: bool = False

    def to_wire(self) -> Dict[str, object]:
        """Network reference sent to the facilitator."""
        return {"chainId": self.chain_id, "caip2": self.caip2}


def _tokens(*tokens: TokenDescriptor) -> Mapping[str, TokenDescriptor]:
    return MappingProxyType({token.symbol: token for token in tokens})


NETWORKS: Mapping[str, NetworkDescriptor] = MappingProxyType({
    "testnet": NetworkDescriptor(
        name="testnet",
        display_name="Conflux eSpace Testnet",
        chain_id=71,
        caip2="eip155:71",
        rpc_url="https://evmtestnet.confluxrpc.com",
        explorer_url="https://evmtestnet.confluxscan.org",
        is_testnet=True,
        tokens=_tokens(
            TokenDescriptor(
                symbol="CFX", name="Conflux", address=NATIVE_TOKEN_ADDRESS, decimals=18,
                payment_method=PaymentMethod.NATIVE, price_per_query="1000000000000000",  # 0.001 CFX
            ),
            TokenDescriptor(
                symbol="USDT", name="Faucet USDT", address="0x7d682e65EFC5C13Bf4E394B8f376C48e6baE0355",
                decimals=18, payment_method=PaymentMethod.ERC20, price_per_query="100000000000000",
            ),
            TokenDescriptor(
                symbol="USDC", name="USDC", address="0x349298b0e20df67defd6efb8f3170cf4a32722ef",
                decimals=18, payment_method=PaymentMethod.ERC20, price_per_query="100000000000000",
            ),
            TokenDescriptor(
                symbol="BTC", name="Faucet BTC", address="0x54593e02c39aeff52b166bd036797d2b1478de8d",
                decimals=18, payment_method=PaymentMethod.ERC20, price_per_query="1000000000000",
            ),
            TokenDescriptor(
                symbol="ETH", name="Faucet ETH", address="0xcd71270f82f319e0498ff98af8269c3f0d547c65",
                decimals=18, payment_method=PaymentMethod.ERC20, price_per_query="10000000000000",
            ),
        ),
    ),
    "mainnet": NetworkDescriptor(
        name="mainnet",
        display_name="Conflux eSpace",
        chain_id=1030,
        caip2="eip155:1030",
        rpc_url="https://evm.confluxrpc.com",
        explorer_url="https://evm.confluxscan.io",
        tokens=_tokens(
            TokenDescriptor(
                symbol="CFX", name="Conflux", address=NATIVE_TOKEN_ADDRESS, decimals=18,
                payment_method=PaymentMethod.NATIVE, price_per_query="1000000000000000",
            ),
            TokenDescriptor(
                symbol="USDT0", name="USDT0", address="0xaf37e8b6c9ed7f6318979f56fc287d76c30847ff",
                decimals=6, payment_method=PaymentMethod.EIP3009, price_per_query="100",  # 0.0001 USDT0
                eip712_name="USDT0", eip712_version="1",
            ),
            TokenDescriptor(
                symbol="USDT", name="Tether USD", address="0xfe97e85d13abd9c1c33384e796f10b73905637ce",
                decimals=18, payment_method=PaymentMethod.ERC20, price_per_query="100000000000000",
            ),
            TokenDescriptor(
                symbol="USDC", name="USD Coin", address="0x6963efed0ab40f6c3d7bda44a05dcf1437c44372",
                decimals=18, payment_method=PaymentMethod.ERC20, price_per_query="100000000000000",
            ),
            TokenDescriptor(
                symbol="AxCNH", name="AxCNH", address="0x70bfd7f7eadf9b9827541272589a6b2bb760ae2e",
                decimals=6, payment_method=PaymentMethod.ERC20, price_per_query="100",
            ),
        ),
    ),
})


def get_network(name: str) -> NetworkDescriptor:
    """Look up a network by name ("testnet" or "mainnet")."""
    network = NETWORKS.get(name)
    if network is None:
        raise UnknownNetworkError(f"Unknown network: {name}")
    return network


def get_token(network: NetworkDescriptor, symbol: str) -> TokenDescriptor:
    """Look up a token by symbol on the given network."""
    token = network.tokens.get(symbol)
    if token is None:
        raise UnknownTokenError(f"Unsupported token: {symbol}")
    return token


def find_network_by_chain_id(chain_id: int) -> NetworkDescriptor:
    """Look up a network by EVM chain id."""
    for network in NETWORKS.values():
        if network.chain_id == chain_id:
            return network
    raise UnknownNetworkError(f"Unsupported chain: {chain_id}")


def select_default_token(network: NetworkDescriptor) -> TokenDescriptor:
    """
    Pick the token offered when the request does not name one.

    Prefers a gasless (EIP-3009) token, otherwise the chain's native coin.
    """
    for token in network.tokens.values():
        if token.payment_method == PaymentMethod.EIP3009:
            return token
    for token in network.tokens.values():
        if token.is_native:
            return token
    # Every configured network carries a native coin
    raise UnknownTokenError(f"No default token for {network.name}")


def format_amount(amount: str, decimals: int) -> str:
    """
    Render a smallest-unit amount as a decimal string.

    Example: format_amount("1000000000000000", 18) -> "0.001"
    """
    value = int(amount)
    divisor = 10 ** decimals
    whole, frac = divmod(value, divisor)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") if decimals else ""
    return f"{whole}.{frac_str}" if frac_str else str(whole)
