"""Tests for exact-payment validation."""

import pytest

from nestmint.errors import MintZeroError, WrongPaymentAmountError
from nestmint.money import MAX_UINT256
from nestmint.payment_gate import PaymentGate


class TestPaymentGate:
    def test_exact_payment_accepted(self):
        assert PaymentGate().validate(5, 10, 50) == 50

    def test_underpayment_rejected(self):
        with pytest.raises(WrongPaymentAmountError) as exc:
            PaymentGate().validate(5, 10, 49)
        assert exc.value.expected == 50
        assert exc.value.supplied == 49

    def test_overpayment_rejected(self):
        with pytest.raises(WrongPaymentAmountError):
            PaymentGate().validate(5, 10, 51)

    def test_free_mint_requires_zero_value(self):
        gate = PaymentGate()
        assert gate.validate(3, 0, 0) == 0
        with pytest.raises(WrongPaymentAmountError):
            gate.validate(3, 0, 1)

    def test_zero_count_rejected(self):
        with pytest.raises(MintZeroError):
            PaymentGate().validate(0, 10, 0)

    def test_price_overflow_guarded(self):
        with pytest.raises(OverflowError):
            PaymentGate().validate(2, MAX_UINT256, 0)
