from __future__ import annotations

from decimal import Decimal

CENT = Decimal("0.01")


def money(value: Decimal | float | int) -> str:
    return f"₱{Decimal(value).quantize(CENT):,.2f}"
