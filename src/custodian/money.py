"""Native-token amount helpers using integer wei precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from eth_utils import from_wei, to_wei

from .errors import ValidationError


WEI_PER_NATIVE = 10**18
NATIVE_SYMBOL = "BNB"


def parse_native(value: Decimal | float | int | str) -> Decimal:
    """Parse a native-unit amount (e.g. ``"0.5"`` BNB) into a Decimal."""
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not dec.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    if dec < 0:
        raise ValidationError(f"Amount must not be negative: {value}")
    return dec


def native_to_wei(value: Decimal | float | int | str) -> int:
    """Convert a native-unit amount to wei. Sub-wei dust is truncated."""
    return int(to_wei(parse_native(value), "ether"))


def parse_wei(value: int | str, name: str = "amount") -> int:
    """Parse a non-negative integer wei value such as a gas price."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {name}: {value!r}")
    try:
        wei = int(str(value).strip())
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: {value!r}") from e
    if wei < 0:
        raise ValidationError(f"{name} must not be negative: {value}")
    return wei


def wei_to_native(value: int | str) -> Decimal:
    """Convert integer wei (or its decimal string) to native units."""
    return Decimal(from_wei(int(value), "ether"))


def format_native(value: int | str) -> str:
    """Render wei as a trimmed native-unit string (``"1.5"``, ``"0.1"``)."""
    dec = wei_to_native(value)
    text = format(dec.normalize(), "f")
    return text if text else "0"
