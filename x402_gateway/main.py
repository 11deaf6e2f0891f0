# x402_gateway/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from x402_gateway import __version__
from x402_gateway.core.config import settings
from x402_gateway.core.networks import get_network
from x402_gateway.api.endpoints import data, health
from x402_gateway.x402.middleware import X402Middleware
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME, version=__version__)

# Gate paid endpoints behind x402 payment
app.add_middleware(X402Middleware)

# Added last so it wraps the x402 middleware and 402 responses carry CORS headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["Content-Type", "PAYMENT-SIGNATURE"],
    expose_headers=[
        "PAYMENT-REQUIRED", "PAYMENT-RESPONSE",
        "X-Payment-Amount", "X-Payment-Token", "X-Payment-Nonce",
        "X-Payment-Expiry", "X-Payment-Endpoint", "X-Payment-Invoice-Id",
    ],
)

app.include_router(health.router, tags=["default"])
app.include_router(data.router, prefix="/data", tags=["data"])

_network = get_network(settings.X402_NETWORK)
logger.info(f"{settings.PROJECT_NAME} v{__version__} on {_network.display_name} (chain {_network.chain_id})")
if not settings.X402_TREASURY_ADDRESS:
    logger.warning("X402_TREASURY_ADDRESS not configured - challenges will carry an empty payTo")
