from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

DEFAULT_PLATFORM_FEE_PERCENT = Decimal("2")


def _fee_percent(fee_percent) -> Decimal:
    if fee_percent is None:
        return DEFAULT_PLATFORM_FEE_PERCENT
    value = Decimal(str(fee_percent))
    if value < 0 or value > 100:
        raise ValueError("platform_fee_percent fuera de rango (0-100)")
    return value


def platform_fee(amount: int, fee_percent=None) -> int:
    """Platform commission in integer currency units, rounded half up."""
    if amount < 0:
        raise ValueError("amount no puede ser negativo")
    raw = Decimal(amount) * _fee_percent(fee_percent) / Decimal(100)
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def net_amount(amount: int, fee: int) -> int:
    return amount - fee


def split_amount(amount: int, fee_percent=None) -> tuple[int, int]:
    fee = platform_fee(amount, fee_percent)
    return (fee, net_amount(amount, fee))
