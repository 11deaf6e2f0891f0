# tests/conftest.py
import pytest
from unittest.mock import patch

from x402_gateway.facilitator.health import clear_balance_cache
from x402_gateway.x402.demo import reset_demo_payer
from x402_gateway.x402.invoices import reset_invoice_store
from x402_gateway.x402.ratelimit import reset_rate_limiter


@pytest.fixture(autouse=True)
def isolated_state(tmp_path):
    """Keep audit output in tmp_path and reset process-wide caches."""
    reset_rate_limiter()
    reset_invoice_store()
    reset_demo_payer()
    clear_balance_cache()
    with patch("x402_gateway.x402.audit.settings") as mock_settings:
        mock_settings.X402_AUDIT_LOG_PATH = str(tmp_path / "audit" / "x402_audit.jsonl")
        yield mock_settings
    reset_rate_limiter()
    reset_invoice_store()
    reset_demo_payer()
