from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from sqlalchemy.dialects import postgresql, sqlite

from crm.core.extensions import db
from crm.core.models import (
    BeneficiaryType,
    Commission,
    CommissionStatus,
    Montage,
    Settlement,
    SettlementStatus,
    SettlementLine,
    SettlementRule,
)
from crm.core.utils import grosze_to_money, money
from crm.montage.gateways import Rates, log_audit

logger = logging.getLogger(__name__)

RateLookup = Callable[[int | None], Rates]

_INSERT_BY_DIALECT = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


@dataclass(frozen=True)
class LineItem:
    rule: SettlementRule
    amount: Decimal
    description: str


@dataclass(frozen=True)
class CommissionDraft:
    beneficiary_type: BeneficiaryType
    beneficiary_id: int
    amount: int
    rate: Decimal
    area: float


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def measurement_fee_line(rate) -> LineItem | None:
    if rate is None:
        return None
    amount = _to_decimal(rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if amount <= 0:
        return None
    return LineItem(
        rule=SettlementRule.MEASUREMENT_FEE,
        amount=amount,
        description="Opłata za pomiar",
    )


def commission_amount(area, rate) -> int:
    # grosze, half-up
    value = _to_decimal(area) * _to_decimal(rate) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def plan_commissions(montage: Montage, rate_lookup: RateLookup) -> list[CommissionDraft]:
    if not montage.floor_area or montage.floor_area <= 0:
        return []

    drafts: list[CommissionDraft] = []
    for beneficiary_type, beneficiary_id in (
        (BeneficiaryType.ARCHITECT, montage.architect_id),
        (BeneficiaryType.PARTNER, montage.partner_id),
    ):
        if not beneficiary_id:
            continue
        rate = rate_lookup(beneficiary_id).commission_rate
        if rate is None:
            continue
        amount = commission_amount(montage.floor_area, rate)
        if amount <= 0:
            continue
        drafts.append(
            CommissionDraft(
                beneficiary_type=beneficiary_type,
                beneficiary_id=beneficiary_id,
                amount=amount,
                rate=_to_decimal(rate),
                area=float(montage.floor_area),
            )
        )
    return drafts


def _insert_ignoring_conflict(model, values: dict, index_elements: list[str]) -> bool:
    """Insert a row unless it collides with a unique key; True when the row was written."""
    db.session.flush()
    dialect = db.session.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise RuntimeError(f"Unsupported database dialect for idempotent inserts: {dialect}")
    stmt = insert(model.__table__).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = db.session.execute(stmt)
    return bool(result.rowcount)


def ensure_measurement_fee(montage: Montage, rate, user_id: int | None) -> LineItem | None:
    line = measurement_fee_line(rate)
    if line is None:
        return None
    owner_id = montage.measurer_id
    if not owner_id:
        logger.warning("Montage %s has no measurer, measurement fee skipped", montage.id)
        return None

    _insert_ignoring_conflict(
        Settlement,
        {
            "montage_id": montage.id,
            "installer_id": owner_id,
            "status": SettlementStatus.DRAFT,
            "total_amount": Decimal("0.00"),
        },
        ["montage_id"],
    )
    settlement = Settlement.query.filter_by(montage_id=montage.id).one()
    if settlement.status != SettlementStatus.DRAFT:
        logger.warning(
            "Settlement %s for montage %s is %s, measurement fee not added",
            settlement.id,
            montage.id,
            settlement.status.value,
        )
        db.session.commit()
        return None

    created = _insert_ignoring_conflict(
        SettlementLine,
        {
            "settlement_id": settlement.id,
            "rule": line.rule,
            "amount": line.amount,
            "description": line.description,
        },
        ["settlement_id", "rule"],
    )
    if not created:
        db.session.commit()
        return None

    settlement.total_amount = Settlement.total_amount + line.amount
    db.session.add(settlement)
    log_audit(
        "create_settlement_line",
        f"Dodano opłatę za pomiar {money(line.amount)} do rozliczenia montażu {montage.label}",
        user_id,
        montage.id,
    )
    db.session.commit()
    logger.info("Measurement fee %s recorded for montage %s", line.amount, montage.id)
    return line


def ensure_commissions(montage: Montage, rate_lookup: RateLookup, user_id: int | None) -> list[CommissionDraft]:
    created: list[CommissionDraft] = []
    for draft in plan_commissions(montage, rate_lookup):
        inserted = _insert_ignoring_conflict(
            Commission,
            {
                "montage_id": montage.id,
                "beneficiary_type": draft.beneficiary_type,
                "beneficiary_id": draft.beneficiary_id,
                "amount": draft.amount,
                "rate": draft.rate,
                "area": draft.area,
                "status": CommissionStatus.PENDING,
            },
            ["montage_id", "beneficiary_type"],
        )
        if not inserted:
            continue
        log_audit(
            "create_commission",
            f"Prowizja {draft.beneficiary_type.value} {grosze_to_money(draft.amount)} "
            f"({draft.area} m² × {draft.rate}) dla montażu {montage.label}",
            user_id,
            montage.id,
        )
        created.append(draft)
        logger.info(
            "Commission %s of %s grosze recorded for montage %s",
            draft.beneficiary_type.value,
            draft.amount,
            montage.id,
        )
    db.session.commit()
    return created
