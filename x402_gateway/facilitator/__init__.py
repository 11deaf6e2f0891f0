# x402_gateway/facilitator/__init__.py
"""
x402 facilitator service.

Verifies buyer payment proofs against the chain and settles them with the
relayer key. The seller talks to it over HTTP with a shared API key.

Key components:
- schemes: verify/settle pairs for native, erc20 and eip3009 payments
- pool: per-chain RPC clients and relayer signers
- routes: authenticated HTTP API
- health: relayer balance report
"""
