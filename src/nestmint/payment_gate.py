"""Exact-payment check for mint requests."""

from __future__ import annotations

from .errors import MintZeroError, WrongPaymentAmountError
from .money import checked_mul


class PaymentGate:
    """
    Accepts a mint only when the attached value is exactly
    ``count * price_per_mint``.

    Overpayment is rejected like underpayment: nothing is refunded and
    nothing is partially accepted, so callers must compute the cost first.
    """

    def expected_value(self, count: int, price_per_mint_wei: int) -> int:
        if count <= 0:
            raise MintZeroError(f"Mint count must be positive, got {count}")
        return checked_mul(count, price_per_mint_wei)

    def validate(self, count: int, price_per_mint_wei: int, supplied_wei: int) -> int:
        expected = self.expected_value(count, price_per_mint_wei)
        if supplied_wei != expected:
            raise WrongPaymentAmountError(expected=expected, supplied=supplied_wei)
        return expected
