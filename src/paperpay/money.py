"""Amount conversion between currency units and wallet asset-scaled integers."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Parse an amount without binary float artefacts."""
    try:
        dec = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not dec.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return dec


def quantize(value: Decimal | float | int | str, asset_scale: int) -> Decimal:
    """Round an amount to the precision the asset supports."""
    exp = Decimal(1).scaleb(-asset_scale)
    return to_decimal(value).quantize(exp, rounding=ROUND_HALF_UP)


def to_scaled(value: Decimal | float | int | str, asset_scale: int) -> int:
    """Convert currency units to the integer the wallet expects.

    ``50.00`` at scale 2 becomes ``5000``.
    """
    dec = to_decimal(value) * (Decimal(10) ** asset_scale)
    return int(dec.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_scaled(value: int | str, asset_scale: int) -> Decimal:
    """Convert a wallet integer amount back to currency units."""
    return quantize(Decimal(int(value)).scaleb(-asset_scale), asset_scale)


def format_amount(value: Decimal, asset_code: str) -> str:
    return f"{value} {asset_code}"
