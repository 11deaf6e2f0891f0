# x402_gateway/facilitator/main.py
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from x402_gateway import __version__
from x402_gateway.core.config import settings
from x402_gateway.facilitator.pool import ConnectionPool
from x402_gateway.facilitator.routes import health_router, router
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """ Render errors as {"error": ...}, the shape sellers expect. """
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


def create_app(pool: Optional[ConnectionPool] = None) -> FastAPI:
    app = FastAPI(title=settings.FACILITATOR_NAME, version=__version__)

    app.state.pool = pool or ConnectionPool(
        settings.X402_NETWORK,
        relayer_key=settings.FACILITATOR_RELAYER_PRIVATE_KEY,
        receipt_timeout=settings.FACILITATOR_RECEIPT_TIMEOUT_SECONDS,
    )
    if not app.state.pool.has_relayer:
        logger.warning("FACILITATOR_RELAYER_PRIVATE_KEY not set - settle endpoints will fail")

    app.add_exception_handler(HTTPException, http_error_handler)

    # Health first: the authenticated router ends in a catch-all
    app.include_router(health_router, tags=["health"])
    app.include_router(router, tags=["facilitator"])

    logger.info(f"{settings.FACILITATOR_NAME} ready on {app.state.pool.default_network.display_name}")
    return app


app = create_app()
