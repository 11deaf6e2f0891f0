# tests/test_x402_challenge.py
"""
Unit tests for 402 challenge construction.
"""
import json
import time
import pytest
from base64 import b64decode
from unittest.mock import MagicMock, patch

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from x402_gateway.core.networks import (
    UnknownNetworkError,
    UnknownTokenError,
    get_network,
    get_token,
)
from x402_gateway.x402.challenge import (
    PAYMENT_REQUIRED_HEADER,
    build_payment_required,
    create_402_response,
    new_identifier,
    resolve_payment_target,
)
from x402_gateway.x402.invoices import InvoiceStatus, get_invoice_store

TREASURY = "0x" + "b2" * 20
CONTRACT = "0x" + "c3" * 20


@pytest.fixture
def mock_settings():
    with patch("x402_gateway.x402.challenge.settings") as settings:
        settings.X402_NETWORK = "testnet"
        settings.X402_TREASURY_ADDRESS = TREASURY
        settings.X402_CHALLENGE_TIMEOUT_SECONDS = 3600
        yield settings


def make_request(query=""):
    request = MagicMock(spec=Request)
    params = dict(part.split("=", 1) for part in query.split("&") if part)
    request.query_params = params
    return request


class TestNewIdentifier:
    """Invoice ids and nonces are 128-bit random hex."""

    def test_length(self):
        assert len(new_identifier()) == 32
        int(new_identifier(), 16)

    def test_unique(self):
        assert len({new_identifier() for _ in range(100)}) == 100


class TestResolvePaymentTarget:
    """Network and token selection."""

    def test_defaults(self, mock_settings):
        network, token = resolve_payment_target(make_request())
        assert network.name == "testnet"
        assert token.symbol == "CFX"

    def test_network_query(self, mock_settings):
        network, token = resolve_payment_target(make_request("network=mainnet"))
        assert network.name == "mainnet"
        assert token.symbol == "USDT0"

    def test_token_query(self, mock_settings):
        _, token = resolve_payment_target(make_request("token=USDT"))
        assert token.symbol == "USDT"

    def test_route_symbol_wins_over_query(self, mock_settings):
        _, token = resolve_payment_target(make_request("token=USDT"), token_symbol="BTC")
        assert token.symbol == "BTC"

    def test_unknown_token(self, mock_settings):
        with pytest.raises(UnknownTokenError):
            resolve_payment_target(make_request("token=DOGE"))

    def test_unknown_network(self, mock_settings):
        with pytest.raises(UnknownNetworkError):
            resolve_payment_target(make_request("network=ropsten"))


class TestBuildPaymentRequired:
    """Envelope structure."""

    def test_native_envelope(self, mock_settings):
        network = get_network("testnet")
        token = get_token(network, "CFX")

        envelope = build_payment_required("http://testserver/data/premium", network, token, CONTRACT)
        data = envelope.model_dump(mode="json", exclude_none=True)

        assert data["x402Version"] == 2
        assert data["resource"]["url"] == "http://testserver/data/premium"
        assert data["resource"]["mimeType"] == "application/json"
        assert "0.001 CFX" in data["resource"]["description"]
        assert len(data["accepts"]) == 1
        accept = data["accepts"][0]
        assert accept == {
            "scheme": "exact",
            "network": "eip155:71",
            "amount": "1000000000000000",
            "asset": "0x0000000000000000000000000000000000000000",
            "payTo": TREASURY,
            "maxTimeoutSeconds": 3600,
            "extra": {
                "paymentMethod": "native",
                "symbol": "CFX",
                "decimals": 18,
                "paymentContract": CONTRACT,
            },
        }

    def test_eip3009_extra_carries_domain(self, mock_settings):
        network = get_network("mainnet")
        token = get_token(network, "USDT0")

        envelope = build_payment_required("http://x/data", network, token, "")
        extra = envelope.model_dump(mode="json", exclude_none=True)["accepts"][0]["extra"]

        assert extra["name"] == "USDT0"
        assert extra["version"] == "1"
        assert extra["paymentMethod"] == "eip3009"


class TestCreate402Response:
    """The HTTP 402 response and its headers."""

    def make_client(self):
        app = FastAPI()

        @app.get("/data/premium")
        def premium(request: Request):
            network, token = resolve_payment_target(request)
            return create_402_response(request, network, token, CONTRACT)

        return TestClient(app)

    def test_status_body_and_headers(self, mock_settings):
        before = int(time.time())
        response = self.make_client().get("/data/premium?token=USDT")

        assert response.status_code == 402
        assert response.json() == {"error": "Payment required"}
        assert response.headers["X-Payment-Amount"] == "100000000000000"
        assert response.headers["X-Payment-Token"] == "0x7d682e65EFC5C13Bf4E394B8f376C48e6baE0355"
        assert response.headers["X-Payment-Endpoint"] == "/data/premium"
        assert len(response.headers["X-Payment-Nonce"]) == 32
        assert len(response.headers["X-Payment-Invoice-Id"]) == 32
        expiry = int(response.headers["X-Payment-Expiry"])
        assert before + 3600 <= expiry <= int(time.time()) + 3600

    def test_payment_required_header(self, mock_settings):
        response = self.make_client().get("/data/premium?token=USDT")

        envelope = json.loads(b64decode(response.headers[PAYMENT_REQUIRED_HEADER]))
        assert envelope["x402Version"] == 2
        assert envelope["resource"]["url"] == "http://testserver/data/premium"
        assert envelope["accepts"][0]["extra"]["symbol"] == "USDT"
        assert envelope["accepts"][0]["extra"]["paymentMethod"] == "erc20"

    def test_fresh_ids_per_challenge(self, mock_settings):
        client = self.make_client()
        first = client.get("/data/premium")
        second = client.get("/data/premium")
        assert first.headers["X-Payment-Invoice-Id"] != second.headers["X-Payment-Invoice-Id"]
        assert first.headers["X-Payment-Nonce"] != second.headers["X-Payment-Nonce"]

    def test_invoice_recorded(self, mock_settings):
        response = self.make_client().get("/data/premium")

        invoice = get_invoice_store().get(response.headers["X-Payment-Invoice-Id"])
        assert invoice is not None
        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.token_symbol == "CFX"
        assert invoice.chain_id == 71
        assert invoice.endpoint == "/data/premium"
