# x402_gateway/facilitator/pool.py
"""
Per-chain connection pool owned by the facilitator.

Caches one Web3 client and one relayer TransactionSender per chain id. Both
caches are filled lazily and guarded by a lock; after warm-up they are
read-only.
"""
import logging
import threading
from typing import Callable, Dict, Optional

from web3 import Web3

from x402_gateway.core.chain import DEFAULT_RECEIPT_TIMEOUT, TransactionSender, http_web3
from x402_gateway.core.networks import (
    NetworkDescriptor,
    UnknownNetworkError,
    find_network_by_chain_id,
    get_network,
)

logger = logging.getLogger(__name__)


class UnsupportedChainError(ValueError):
    """Raised when a request names a chain id the facilitator does not serve."""


class RelayerNotConfiguredError(RuntimeError):
    """Raised when settlement is attempted without a relayer key."""


class ConnectionPool:
    """
    Lazily created RPC clients and relayer signers, keyed by chain id.

    Args:
        default_network: Network name used when a request gives no chain id
        relayer_key: Private key of the relayer (may be empty for verify-only)
        receipt_timeout: Seconds to wait for a settlement receipt
        web3_factory: Builds a Web3 client from an RPC URL (tests inject fakes)
    """

    def __init__(
        self,
        default_network: str,
        relayer_key: str = "",
        receipt_timeout: int = DEFAULT_RECEIPT_TIMEOUT,
        web3_factory: Optional[Callable[[str], Web3]] = None,
    ):
        self.default_network: NetworkDescriptor = get_network(default_network)
        self._relayer_key = relayer_key
        self._receipt_timeout = receipt_timeout
        self._web3_factory = web3_factory or http_web3
        self._clients: Dict[int, Web3] = {}
        self._senders: Dict[int, TransactionSender] = {}
        self._lock = threading.Lock()

    @property
    def has_relayer(self) -> bool:
        return bool(self._relayer_key)

    @property
    def relayer_address(self) -> Optional[str]:
        if not self._relayer_key:
            return None
        return self.sender_for().address

    def resolve_network(self, chain_id: Optional[int] = None) -> NetworkDescriptor:
        if chain_id is None:
            return self.default_network
        try:
            return find_network_by_chain_id(chain_id)
        except UnknownNetworkError:
            raise UnsupportedChainError(f"Unsupported chain: {chain_id}")

    def client_for(self, chain_id: Optional[int] = None) -> Web3:
        network = self.resolve_network(chain_id)
        client = self._clients.get(network.chain_id)
        if client is not None:
            return client

        with self._lock:
            # Double-check after acquiring lock
            client = self._clients.get(network.chain_id)
            if client is None:
                client = self._web3_factory(network.rpc_url)
                self._clients[network.chain_id] = client
                logger.info(f"Created RPC client for chain {network.chain_id} ({network.rpc_url})")
        return client

    def sender_for(self, chain_id: Optional[int] = None) -> TransactionSender:
        if not self._relayer_key:
            raise RelayerNotConfiguredError("Relayer key not configured")

        network = self.resolve_network(chain_id)
        sender = self._senders.get(network.chain_id)
        if sender is not None:
            return sender

        w3 = self.client_for(network.chain_id)
        with self._lock:
            sender = self._senders.get(network.chain_id)
            if sender is None:
                sender = TransactionSender(
                    w3,
                    self._relayer_key,
                    chain_id=network.chain_id,
                    receipt_timeout=self._receipt_timeout,
                )
                self._senders[network.chain_id] = sender
        return sender
