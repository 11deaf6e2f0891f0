# x402_gateway/x402/__init__.py
"""
x402 Payment Protocol integration for the seller API.

Gates endpoints behind on-chain payment and delegates verification and
settlement to the facilitator service.

Key components:
- middleware: FastAPI middleware running the challenge/verify/settle flow
- challenge: 402 PaymentRequired envelope and headers
- facilitator_client: HTTP client for the facilitator
- demo: testnet auto-pay from a held key
- invoices: in-memory invoice lifecycle
- ratelimit: per-IP sliding window limits
- audit: JSON-lines payment audit trail

Configuration is loaded from environment variables via x402_gateway.core.config.
"""
