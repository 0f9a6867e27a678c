from __future__ import annotations

from decimal import Decimal


def money(value: Decimal | float | int) -> str:
    return f"{Decimal(value):.2f} zł".replace(".", ",")


def grosze_to_money(value: int) -> str:
    return money(Decimal(value) / Decimal(100))
