# tests/test_facilitator_api.py
"""
Tests for the facilitator HTTP API: auth, body limits, routing, dispatch.
"""
import json
import pytest
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from x402_gateway.facilitator.main import create_app
from x402_gateway.facilitator.pool import ConnectionPool

API_KEY = "test-facilitator-key"
RELAYER_KEY = "0x" + "11" * 32
BUYER = "0x" + "a1" * 20
CONTRACT = "0x" + "c3" * 20
TX_HASH = "0x" + "ee" * 32


def native_body(chain_id=71, value_claim="1000000000000000", version=2, network=True):
    body = {
        "payload": {
            "x402Version": version,
            "scheme": "exact",
            "network": f"eip155:{chain_id}",
            "payload": {"txHash": TX_HASH, "from": BUYER, "amount": value_claim},
        },
        "token": {
            "address": "0x0000000000000000000000000000000000000000",
            "symbol": "CFX",
            "decimals": 18,
            "paymentMethod": "native",
            "pricePerQuery": "1000000000000000",
        },
        "treasury": "0x" + "b2" * 20,
        "paymentContract": CONTRACT,
    }
    if network:
        body["network"] = {"chainId": chain_id, "caip2": f"eip155:{chain_id}"}
    return body


@pytest.fixture
def mock_w3():
    w3 = MagicMock()
    w3.eth.get_transaction_receipt.return_value = {"status": 1}
    w3.eth.get_transaction.return_value = {"value": 10 ** 15, "from": BUYER, "to": CONTRACT}
    w3.eth.get_balance.return_value = 5 * 10 ** 18
    return w3


@pytest.fixture
def mock_settings():
    with patch("x402_gateway.facilitator.routes.settings") as settings:
        settings.X402_FACILITATOR_API_KEY = API_KEY
        settings.FACILITATOR_MAX_BODY_BYTES = 1_048_576
        settings.X402_PAYMENT_CONTRACT_TESTNET = CONTRACT
        settings.X402_PAYMENT_CONTRACT_MAINNET = ""
        yield settings


@pytest.fixture
def client(mock_w3, mock_settings):
    pool = ConnectionPool("testnet", relayer_key=RELAYER_KEY, web3_factory=lambda url: mock_w3)
    return TestClient(create_app(pool=pool))


def auth_headers():
    return {"X-API-Key": API_KEY}


class TestAuthentication:
    """Every route except health requires the API key."""

    def test_missing_key(self, client):
        response = client.post("/x402/verify-native", json=native_body())
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid API key"}

    def test_wrong_key(self, client):
        response = client.post("/x402/verify-native", json=native_body(), headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    def test_invalid_body_still_401(self, client):
        """Auth is checked before the body is looked at."""
        response = client.post("/x402/settle-erc20", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 401

    def test_unknown_path_unauthenticated(self, client):
        assert client.get("/x402/anything").status_code == 401

    def test_unknown_path_authenticated(self, client):
        response = client.get("/x402/anything", headers=auth_headers())
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}

    def test_unconfigured_key_rejects_everything(self, client, mock_settings):
        mock_settings.X402_FACILITATOR_API_KEY = ""
        response = client.post("/x402/verify-native", json=native_body(), headers={"X-API-Key": ""})
        assert response.status_code == 401

    def test_health_needs_no_key(self, client):
        response = client.get("/x402/health")
        assert response.status_code == 200


class TestRequestBody:
    """Body size and shape validation."""

    def test_oversized_body_rejected(self, client, mock_settings):
        mock_settings.FACILITATOR_MAX_BODY_BYTES = 64
        with patch("x402_gateway.facilitator.routes.json.loads") as mock_loads:
            response = client.post(
                "/x402/verify-native",
                content=b"{" + b" " * 200 + b"}",
                headers={**auth_headers(), "Content-Type": "application/json"},
            )
        assert response.status_code == 400
        assert response.json() == {"error": "Request body too large"}
        mock_loads.assert_not_called()

    def test_default_cap_is_one_mebibyte(self, client):
        body = b'{"pad": "' + b"x" * (1024 * 1024) + b'"}'
        response = client.post(
            "/x402/verify-native",
            content=body,
            headers={**auth_headers(), "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Request body too large"

    def test_invalid_json(self, client):
        response = client.post(
            "/x402/verify-native",
            content=b"{not json",
            headers={**auth_headers(), "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request body"}

    def test_missing_fields(self, client):
        response = client.post("/x402/verify-native", json={"payload": {}}, headers=auth_headers())
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request body"}


class TestDispatch:
    """Routing by scheme and chain."""

    def test_verify_native(self, client):
        response = client.post("/x402/verify-native", json=native_body(), headers=auth_headers())
        assert response.status_code == 200
        assert response.json() == {"valid": True}

    def test_verify_invalid_is_200(self, client, mock_w3):
        mock_w3.eth.get_transaction.return_value = {"value": 1, "from": BUYER, "to": CONTRACT}
        response = client.post("/x402/verify-native", json=native_body(), headers=auth_headers())
        assert response.status_code == 200
        assert response.json() == {"valid": False, "reason": "Insufficient amount"}

    def test_unsupported_version(self, client, mock_w3):
        response = client.post("/x402/verify-native", json=native_body(version=1), headers=auth_headers())
        assert response.json() == {"valid": False, "reason": "Unsupported x402 version"}
        mock_w3.eth.get_transaction_receipt.assert_not_called()

    def test_unknown_scheme(self, client):
        response = client.post("/x402/verify-bitcoin", json=native_body(), headers=auth_headers())
        assert response.status_code == 404

    def test_unknown_chain(self, client):
        response = client.post("/x402/verify-native", json=native_body(chain_id=999), headers=auth_headers())
        assert response.status_code == 400
        assert response.json() == {"error": "Unsupported chain: 999"}

    def test_default_network_when_omitted(self, client):
        """Without a network the proof is checked against the default chain."""
        response = client.post("/x402/verify-native", json=native_body(network=False), headers=auth_headers())
        assert response.json() == {"valid": True}

    def test_settle_native(self, client):
        response = client.post("/x402/settle-native", json=native_body(), headers=auth_headers())
        assert response.status_code == 200
        assert response.json() == {"success": True, "transaction": TX_HASH, "payer": BUYER}

    def test_settle_failure_is_500(self, client):
        body = native_body()
        del body["payload"]["payload"]["txHash"]
        response = client.post("/x402/settle-native", json=body, headers=auth_headers())
        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Missing txHash"}

    @patch("x402_gateway.core.chain.TransactionSender.transact")
    def test_settle_erc20(self, mock_transact, client):
        mock_transact.return_value = {"transactionHash": b"\x5a" * 32, "status": 1}
        body = native_body()
        body["token"].update({
            "address": "0x" + "d4" * 20,
            "symbol": "USDT",
            "paymentMethod": "erc20",
            "pricePerQuery": "1000",
        })
        body["payload"]["payload"] = {"from": BUYER, "amount": "1000", "invoiceId": "inv-1"}

        response = client.post("/x402/settle-erc20", json=body, headers=auth_headers())

        assert response.status_code == 200
        assert response.json() == {"success": True, "transaction": "0x" + "5a" * 32, "payer": BUYER}

    def test_settle_without_relayer(self, mock_w3, mock_settings):
        pool = ConnectionPool("testnet", relayer_key="", web3_factory=lambda url: mock_w3)
        client = TestClient(create_app(pool=pool))
        response = client.post("/x402/settle-native", json=native_body(), headers=auth_headers())
        assert response.status_code == 500
        assert response.json()["success"] is False


class TestHealth:
    """Health endpoint reports relayer and contract."""

    @patch("x402_gateway.facilitator.health.settings")
    def test_health_report(self, mock_health_settings, client):
        mock_health_settings.FACILITATOR_BALANCE_WARN_THRESHOLD = 1.0
        response = client.get("/x402/health")
        data = response.json()
        assert data["status"] == "ok"
        assert data["chainId"] == 71
        assert data["balance"] == "5"
        assert data["paymentContract"] == CONTRACT
        assert data["facilitator"].startswith("0x")

    def test_health_with_malformed_relayer_key(self, mock_w3, mock_settings):
        pool = ConnectionPool("testnet", relayer_key="0xdeadbeef", web3_factory=lambda url: mock_w3)

        response = TestClient(create_app(pool=pool)).get("/x402/health")

        assert response.status_code == 200
        assert response.json()["status"] == "unconfigured"
        assert response.json()["facilitator"] is None
