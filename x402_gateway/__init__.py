"""
x402 payment gateway.

Two FastAPI services share this package:
- x402_gateway.main: seller API that gates endpoints behind x402 payments
- x402_gateway.facilitator.main: facilitator that verifies and settles
  payments on-chain with the relayer key
"""

__version__ = "1.0.0"
