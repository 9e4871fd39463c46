"""Native-currency helpers using integer wei."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR, localcontext


WEI_PER_ETHER = 10**18
MAX_UINT256 = 2**256 - 1
# uint256 has 78 decimal digits
_PRECISION = 100


def ether_to_wei(value: Decimal | int | str) -> int:
    """Convert an ether amount to wei, rejecting sub-wei precision."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        dec = Decimal(str(value)) * WEI_PER_ETHER
        if dec < 0:
            raise ValueError(f"Amount must not be negative: {value}")
        if dec != dec.to_integral_value(rounding=ROUND_FLOOR):
            raise ValueError(f"Amount has more precision than 1 wei: {value}")
        return int(dec)


def wei_to_ether_decimal(value: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(value) / Decimal(WEI_PER_ETHER)


def format_wei(value: int) -> str:
    """Format wei as an ether string, trimming trailing zeros."""
    text = format(wei_to_ether_decimal(value), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"{text} ETH"


def checked_mul(a: int, b: int) -> int:
    """Multiply two uint256 values, raising OverflowError past 2**256 - 1."""
    if a < 0 or b < 0:
        raise ValueError("uint256 operands must not be negative")
    product = a * b
    if product > MAX_UINT256:
        raise OverflowError(f"{a} * {b} overflows uint256")
    return product
