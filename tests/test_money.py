"""Tests for wei conversion helpers."""

from decimal import Decimal

import pytest

from nestmint.money import MAX_UINT256, checked_mul, ether_to_wei, format_wei


def test_ether_to_wei():
    assert ether_to_wei("1") == 10**18
    assert ether_to_wei("0.01") == 10**16
    assert ether_to_wei(Decimal("0.000000000000000001")) == 1
    assert ether_to_wei("123456789012.5") == 123456789012500000000000000000


def test_ether_to_wei_rejects_sub_wei_and_negative():
    with pytest.raises(ValueError):
        ether_to_wei("0.0000000000000000001")
    with pytest.raises(ValueError):
        ether_to_wei("-1")


def test_format_wei():
    assert format_wei(0) == "0 ETH"
    assert format_wei(10**18) == "1 ETH"
    assert format_wei(15 * 10**17) == "1.5 ETH"
    assert format_wei(50) == "0.00000000000000005 ETH"


def test_checked_mul():
    assert checked_mul(5, 10) == 50
    assert checked_mul(1, MAX_UINT256) == MAX_UINT256
    with pytest.raises(OverflowError):
        checked_mul(2, MAX_UINT256)
