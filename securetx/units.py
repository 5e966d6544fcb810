"""
Amount and address helpers.

All amounts inside the SDK are integers in wei. User-facing values are
parsed through ``decimal.Decimal`` so that "1.5" and 1.5 mean exactly
1500000000000000000 wei, and anything finer than one wei is rejected.
"""
from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, Union

from web3 import Web3

from .exceptions import InvalidAmountError

UNITS = {
    "wei": 0,
    "gwei": 9,
    "ether": 18,
}

AmountLike = Union[int, float, str, Decimal]

# wide enough for any uint256 value at 18 decimals
_PRECISION = 100


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidAmountError(f"Amount must be numeric, got {value!r}")
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Amount is not a number: {value!r}")
    if not number.is_finite():
        raise InvalidAmountError(f"Amount must be finite, got {value!r}")
    return number


def _scale(number: Decimal, unit: str, original: Any) -> int:
    if unit not in UNITS:
        raise ValueError(f"Unknown unit: {unit}. Valid units: {', '.join(UNITS)}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = number.scaleb(UNITS[unit])
    if scaled != scaled.to_integral_value():
        raise InvalidAmountError(
            f"Amount {original!r} has more precision than 1 wei",
            hint=f"Use at most {UNITS[unit]} decimal places."
        )
    return int(scaled)


def parse_amount(value: AmountLike, unit: str = "ether") -> int:
    """
    Convert a user-supplied amount to a positive integer number of wei.

    Args:
        value: Amount as int, float, Decimal or numeric string
        unit: Denomination of ``value`` (ether, gwei or wei)

    Returns:
        Amount in wei

    Raises:
        InvalidAmountError: If the amount is not numeric, not finite,
            finer than one wei, or not strictly positive
    """
    if isinstance(value, int) and not isinstance(value, bool) and unit == "wei":
        wei = value
    else:
        wei = _scale(_to_decimal(value), unit, value)
    if wei <= 0:
        raise InvalidAmountError(f"Amount must be greater than zero, got {value!r}")
    return wei


def parse_balance(value: AmountLike) -> int:
    """
    Parse a balance as reported by a notification payload.

    Integers are wei; strings and decimals are ether. Zero is allowed.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        wei = value
    else:
        wei = _scale(_to_decimal(value), "ether", value)
    if wei < 0:
        raise InvalidAmountError(f"Balance cannot be negative, got {value!r}")
    return wei


def format_amount(wei: int, unit: str = "ether") -> str:
    """Render a wei amount in ``unit`` without exponent notation."""
    if unit not in UNITS:
        raise ValueError(f"Unknown unit: {unit}. Valid units: {', '.join(UNITS)}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        text = format(Decimal(wei).scaleb(-UNITS[unit]), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def is_valid_address(value: Any) -> bool:
    """Return True if ``value`` is a syntactically valid account address."""
    if not isinstance(value, str) or not Web3.is_address(value):
        return False
    digits = value[2:] if value[:2].lower() == "0x" else value
    if digits != digits.lower() and digits != digits.upper():
        return Web3.is_checksum_address(value)
    return True


def normalize_address(value: str) -> str:
    """Return the EIP-55 checksum form of ``value``."""
    return Web3.to_checksum_address(value)
