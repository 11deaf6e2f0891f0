# x402_gateway/facilitator/health.py
"""
Relayer balance monitoring for the facilitator health endpoint.

The relayer pays gas for every erc20 and eip3009 settlement, so its native
balance is the facilitator's capacity signal. Results are cached briefly to
avoid hammering the RPC endpoint when the health check is polled.
"""
import logging
import time
from typing import Any, Dict, Optional

from web3 import Web3

from x402_gateway.core.config import settings
from x402_gateway.facilitator.pool import ConnectionPool

logger = logging.getLogger(__name__)

# Cache for balance checks
_balance_cache: Dict[str, Any] = {
    "address": None,
    "balance_wei": None,
    "timestamp": 0,
}
CACHE_TTL_SECONDS = 30


def _get_cached_balance(address: str) -> Optional[int]:
    if _balance_cache["address"] != address or _balance_cache["balance_wei"] is None:
        return None
    if time.time() - _balance_cache["timestamp"] > CACHE_TTL_SECONDS:
        return None
    return _balance_cache["balance_wei"]


def _update_cache(address: str, balance_wei: int) -> None:
    _balance_cache["address"] = address
    _balance_cache["balance_wei"] = balance_wei
    _balance_cache["timestamp"] = time.time()


def clear_balance_cache() -> None:
    """Clear the balance cache (useful for testing)."""
    _balance_cache["address"] = None
    _balance_cache["balance_wei"] = None
    _balance_cache["timestamp"] = 0


def check_relayer_health(pool: ConnectionPool, payment_contract: str) -> Dict[str, Any]:
    """
    Build the facilitator health report.

    Returns:
        Dict containing:
        - status: "ok", "low_balance", "degraded" or "unconfigured"
        - network / chainId: default network served
        - facilitator: relayer address (None without a relayer key)
        - balance: relayer balance in native units as a decimal string
        - balanceWei: raw balance
        - paymentContract: configured payment contract address
        - warning: human-readable problem description, if any
    """
    network = pool.default_network
    report: Dict[str, Any] = {
        "status": "ok",
        "network": network.name,
        "chainId": network.chain_id,
        "facilitator": None,
        "balance": None,
        "balanceWei": None,
        "paymentContract": payment_contract or None,
        "warning": None,
    }

    if not pool.has_relayer:
        report["status"] = "unconfigured"
        report["warning"] = "FACILITATOR_RELAYER_PRIVATE_KEY not configured"
        logger.error("Relayer key not configured - settlement unavailable")
        return report

    try:
        address = pool.relayer_address
    except ValueError as e:
        report["status"] = "unconfigured"
        report["warning"] = f"Invalid FACILITATOR_RELAYER_PRIVATE_KEY: {e}"
        logger.error(f"Relayer key rejected - settlement unavailable: {e}")
        return report
    report["facilitator"] = address

    try:
        balance_wei = _get_cached_balance(address)
        if balance_wei is None:
            balance_wei = pool.client_for().eth.get_balance(address)
            _update_cache(address, balance_wei)
    except Exception as e:
        logger.error(f"Failed to fetch relayer balance: {e}")
        report["status"] = "degraded"
        report["warning"] = f"Failed to fetch relayer balance: {e}"
        return report

    balance = Web3.from_wei(balance_wei, "ether")
    report["balance"] = str(balance)
    report["balanceWei"] = str(balance_wei)

    threshold = settings.FACILITATOR_BALANCE_WARN_THRESHOLD
    if balance < threshold:
        report["status"] = "low_balance"
        report["warning"] = (
            f"Relayer balance ({balance} native) is below warning threshold "
            f"({threshold}). Top up the relayer soon."
        )
        logger.warning(f"Health check: {report['warning']}")

    return report
