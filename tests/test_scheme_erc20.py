# tests/test_scheme_erc20.py
"""
Unit tests for the ERC-20 approve + relayed transferFrom scheme.
"""
from unittest.mock import MagicMock

from web3 import Web3

from x402_gateway.core.chain import TransactionReverted, invoice_id_to_bytes32
from x402_gateway.facilitator.schemes import erc20
from tests.scheme_fixtures import BUYER, PAYMENT_CONTRACT, TOKEN_ADDRESS, make_request

APPROVE_TX = "0x" + "aa" * 32


def make_w3(allowance=1000, balance=1000, approve_status=1):
    w3 = MagicMock()
    w3.eth.get_transaction_receipt.return_value = {"status": approve_status}
    functions = w3.eth.contract.return_value.functions
    functions.allowance.return_value.call.return_value = allowance
    functions.balanceOf.return_value.call.return_value = balance
    return w3


def erc20_request(amount="1000", price=1000, **payload_overrides):
    payload = {"from": BUYER, "amount": amount, "invoiceId": "inv-1"}
    payload.update(payload_overrides)
    return make_request(payload, payment_method="erc20", price=price)


class TestErc20Verify:
    """Test allowance, balance and price checks."""

    def test_valid(self):
        assert erc20.verify(erc20_request(), make_w3()).valid is True

    def test_amount_one_below_price(self):
        """Price 1000: amount 999 is rejected, 1000 accepted."""
        w3 = make_w3(allowance=10_000, balance=10_000)
        assert erc20.verify(erc20_request(amount="999"), w3).reason == "Insufficient amount"
        assert erc20.verify(erc20_request(amount="1000"), w3).valid is True

    def test_insufficient_allowance_with_enough_balance(self):
        result = erc20.verify(erc20_request(), make_w3(allowance=999, balance=5000))
        assert result.valid is False
        assert result.reason == "Insufficient allowance: 999 < 1000"

    def test_insufficient_balance_with_enough_allowance(self):
        result = erc20.verify(erc20_request(), make_w3(allowance=5000, balance=999))
        assert result.reason == "Insufficient balance"

    def test_allowance_checked_against_payment_contract(self):
        w3 = make_w3()
        erc20.verify(erc20_request(), w3)
        owner, spender = w3.eth.contract.return_value.functions.allowance.call_args[0]
        assert owner == Web3.to_checksum_address(BUYER)
        assert spender == Web3.to_checksum_address(PAYMENT_CONTRACT)
        assert w3.eth.contract.call_args[1]["address"] == Web3.to_checksum_address(TOKEN_ADDRESS)

    def test_missing_from(self):
        request = make_request({"amount": "1000"}, payment_method="erc20")
        assert erc20.verify(request, make_w3()).reason == "Missing from or amount"

    def test_missing_amount(self):
        request = make_request({"from": BUYER}, payment_method="erc20")
        assert erc20.verify(request, make_w3()).reason == "Missing from or amount"

    def test_approve_receipt_confirmed(self):
        w3 = make_w3()
        assert erc20.verify(erc20_request(approveTxHash=APPROVE_TX), w3).valid is True
        w3.eth.get_transaction_receipt.assert_called_once_with(APPROVE_TX)

    def test_approve_receipt_failed(self):
        result = erc20.verify(erc20_request(approveTxHash=APPROVE_TX), make_w3(approve_status=0))
        assert result.reason == "Approve transaction not confirmed"

    def test_approve_receipt_missing(self):
        w3 = make_w3()
        w3.eth.get_transaction_receipt.return_value = None
        result = erc20.verify(erc20_request(approveTxHash=APPROVE_TX), w3)
        assert result.reason == "Approve transaction not confirmed"

    def test_payment_contract_required(self):
        request = make_request({"from": BUYER, "amount": "1000"}, payment_method="erc20", payment_contract="")
        assert erc20.verify(request, make_w3()).reason == "Payment contract not configured"

    def test_rpc_error(self):
        w3 = make_w3()
        w3.eth.contract.return_value.functions.allowance.return_value.call.side_effect = ConnectionError("timeout")
        result = erc20.verify(erc20_request(), w3)
        assert result.valid is False
        assert result.reason == "timeout"

    def test_unsupported_version(self):
        w3 = make_w3()
        request = make_request({"from": BUYER, "amount": "1000"}, payment_method="erc20", version=1)
        assert erc20.verify(request, w3).reason == "Unsupported x402 version"
        w3.eth.contract.assert_not_called()


class TestErc20Settle:
    """Test relayed payWithTokenFrom settlement."""

    def make_sender(self):
        sender = MagicMock()
        sender.transact.return_value = {"transactionHash": b"\x5a" * 32, "status": 1}
        return sender

    def test_settle_success(self):
        sender = self.make_sender()
        result = erc20.settle(erc20_request(), sender)

        assert result.success is True
        assert result.transaction == "0x" + "5a" * 32
        assert result.payer == BUYER

        functions = sender.w3.eth.contract.return_value.functions
        args = functions.payWithTokenFrom.call_args[0]
        assert args == (
            Web3.to_checksum_address(TOKEN_ADDRESS),
            Web3.to_checksum_address(BUYER),
            1000,
            invoice_id_to_bytes32("inv-1"),
        )
        assert sender.transact.call_args[1]["gas"] == erc20.SETTLE_GAS_LIMIT
        assert sender.w3.eth.contract.call_args[1]["address"] == Web3.to_checksum_address(PAYMENT_CONTRACT)

    def test_settle_default_invoice(self):
        sender = self.make_sender()
        request = make_request({"from": BUYER, "amount": "1000"}, payment_method="erc20")
        erc20.settle(request, sender)
        args = sender.w3.eth.contract.return_value.functions.payWithTokenFrom.call_args[0]
        assert args[3] == invoice_id_to_bytes32("x402")

    def test_settle_revert(self):
        sender = self.make_sender()
        sender.transact.side_effect = TransactionReverted("0xdead")
        result = erc20.settle(erc20_request(), sender)
        assert result.success is False
        assert result.error == "Transaction reverted: 0xdead"

    def test_settle_replay_fails_at_chain(self):
        """A replayed settlement surfaces as failure, not as a crash."""
        sender = self.make_sender()
        error = ValueError("execution reverted")
        error.message = "execution reverted: ERC20: insufficient allowance"
        sender.transact.side_effect = [{"transactionHash": b"\x01" * 32}, error]

        first = erc20.settle(erc20_request(), sender)
        second = erc20.settle(erc20_request(), sender)

        assert first.success is True
        assert second.success is False
        assert second.error == "execution reverted: ERC20: insufficient allowance"

    def test_settle_without_payment_contract(self):
        request = make_request({"from": BUYER, "amount": "1000"}, payment_method="erc20", payment_contract="")
        result = erc20.settle(request, self.make_sender())
        assert result.error == "Payment contract not configured"
