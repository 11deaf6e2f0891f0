# x402_gateway/core/config.py
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Seller API"
    FACILITATOR_NAME: str = "x402 Facilitator"

    # Network used when a request does not name one ("testnet" or "mainnet")
    X402_NETWORK: str = "testnet"

    # Address that ultimately receives settled funds
    X402_TREASURY_ADDRESS: str = ""

    # X402PaymentReceiver deployments (spender for erc20, target for native)
    X402_PAYMENT_CONTRACT_TESTNET: str = ""
    X402_PAYMENT_CONTRACT_MAINNET: str = ""

    # Seller -> facilitator connection
    X402_FACILITATOR_URL: str = "http://127.0.0.1:3851"
    X402_FACILITATOR_API_KEY: str = ""
    X402_FACILITATOR_TIMEOUT_SECONDS: float = 30.0

    # 402 challenge lifetime
    X402_CHALLENGE_TIMEOUT_SECONDS: int = 3600
    X402_INVOICE_TTL_SECONDS: int = 3600

    # Demo auto-pay (testnet only, opt-in per request with ?demo=1)
    X402_DEMO_PRIVATE_KEY: Optional[str] = None

    # Rate limiting for gated endpoints (requests per minute per IP)
    X402_RATE_LIMIT_PER_IP: int = 60

    # Audit trail
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Facilitator service
    FACILITATOR_RELAYER_PRIVATE_KEY: str = ""
    FACILITATOR_MAX_BODY_BYTES: int = 1_048_576
    FACILITATOR_RECEIPT_TIMEOUT_SECONDS: int = 120
    FACILITATOR_BALANCE_WARN_THRESHOLD: float = 1.0  # in native coin units

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()


def get_payment_contract(network_name: str, config: Optional[Settings] = None) -> str:
    """
    Return the X402PaymentReceiver address configured for a network.

    Callers pass their own module-level settings so tests can patch them.
    """
    config = config or settings
    if network_name == "testnet":
        return config.X402_PAYMENT_CONTRACT_TESTNET
    return config.X402_PAYMENT_CONTRACT_MAINNET
