"""
Conversions between on-chain integer units and Decimal amounts.
"""

from decimal import Decimal, localcontext

# uint256 has 78 decimal digits; keep every one of them
_PRECISION = 100

WEI_DECIMALS = 18


def to_decimal_amount(raw: int, decimals: int) -> Decimal:
    """
    Convert a chain-native integer amount into currency units.

    Args:
        raw: Integer amount in the token's smallest unit
        decimals: Token decimals

    Returns:
        Exact Decimal amount
    """
    if raw < 0:
        raise ValueError(f"Amount must be non-negative, got {raw}")
    if decimals < 0:
        raise ValueError(f"Decimals must be non-negative, got {decimals}")

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(raw) / (Decimal(10) ** decimals)


def wei_to_native(raw: int) -> Decimal:
    """Convert wei into native token units."""
    return to_decimal_amount(raw, WEI_DECIMALS)

