from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import CheckConstraint, Enum as SAEnum, ForeignKey, Index, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column, relationship
from werkzeug.security import generate_password_hash

from crm.core.extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


TERMINAL_STATUS = "completed"


class UserRole(str, Enum):
    ADMIN = "admin"
    OFFICE = "office"
    INSTALLER = "installer"
    ARCHITECT = "architect"
    PARTNER = "partner"


class SampleStatus(str, Enum):
    NONE = "none"
    TO_SEND = "to_send"
    SENT = "sent"
    DELIVERED = "delivered"


class SettlementStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    PAID = "paid"


class SettlementRule(str, Enum):
    # Each rule appears at most once per settlement
    MEASUREMENT_FEE = "MEASUREMENT_FEE"
    LABOR = "LABOR"
    ADJUSTMENT = "ADJUSTMENT"


class BeneficiaryType(str, Enum):
    ARCHITECT = "ARCHITECT"
    PARTNER = "PARTNER"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    CANCELLED = "cancelled"


class User(UserMixin, db.Model):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    password_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    role: Mapped[str] = mapped_column(db.String(30), nullable=False, default=UserRole.OFFICE.value)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    # PLN per measurement visit
    measurement_rate: Mapped[Decimal | None] = mapped_column(db.Numeric(10, 2), nullable=True)
    # PLN per m2 of floor area for architects and partners
    commission_rate: Mapped[Decimal | None] = mapped_column(db.Numeric(10, 4), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class Customer(db.Model):
    __tablename__ = "customer"
    __table_args__ = (UniqueConstraint("tax_id", name="uq_customer_tax_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(db.String(30), nullable=True, index=True)
    tax_id: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class Montage(db.Model):
    __tablename__ = "montage"
    __table_args__ = (
        CheckConstraint(
            "(completed_at IS NOT NULL AND status = 'completed') "
            "OR (completed_at IS NULL AND status <> 'completed')",
            name="ck_montage_completed_at",
        ),
        Index("ix_montage_status_updated", "status", "updated_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    display_id: Mapped[str] = mapped_column(db.String(20), unique=True, nullable=False)
    client_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    contact_phone: Mapped[str | None] = mapped_column(db.String(30), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    installation_address: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    installation_city: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    status: Mapped[str] = mapped_column(db.String(50), nullable=False, default="new_lead", index=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    installer_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True, index=True)
    measurer_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True, index=True)
    architect_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True, index=True)
    partner_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True, index=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customer.id"), nullable=True)
    floor_area: Mapped[float | None] = mapped_column(nullable=True)
    is_housing_vat: Mapped[bool] = mapped_column(nullable=False, default=True)
    material_details: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    sample_status: Mapped[SampleStatus] = mapped_column(
        SAEnum(SampleStatus, name="sample_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SampleStatus.NONE,
    )
    measurement_date: Mapped[datetime | None] = mapped_column(nullable=True)
    scheduled_installation_at: Mapped[datetime | None] = mapped_column(nullable=True)
    scheduled_installation_end_at: Mapped[datetime | None] = mapped_column(nullable=True)
    calendar_event_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    access_token: Mapped[str | None] = mapped_column(db.String(64), unique=True, nullable=True)
    payment_order_id: Mapped[int | None] = mapped_column(ForeignKey("shop_order.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    installer = relationship("User", foreign_keys=[installer_id])
    measurer = relationship("User", foreign_keys=[measurer_id])
    architect = relationship("User", foreign_keys=[architect_id])
    partner = relationship("User", foreign_keys=[partner_id])
    customer = relationship("Customer")
    payment_order = relationship("Order", foreign_keys=[payment_order_id])
    attachments = relationship("MontageAttachment", back_populates="montage", cascade="all, delete-orphan")
    checklist_items = relationship(
        "MontageChecklistItem",
        back_populates="montage",
        cascade="all, delete-orphan",
        order_by="MontageChecklistItem.order_index",
    )
    notes = relationship("MontageNote", back_populates="montage", cascade="all, delete-orphan")

    @property
    def label(self) -> str:
        return f"{self.display_id} ({self.client_name})" if self.display_id else self.client_name


class MontageAttachment(db.Model):
    __tablename__ = "montage_attachment"

    id: Mapped[int] = mapped_column(primary_key=True)
    montage_id: Mapped[int] = mapped_column(ForeignKey("montage.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(db.String(40), nullable=False, default="general")
    title: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    url: Mapped[str] = mapped_column(db.String(500), nullable=False)
    uploaded_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    montage = relationship("Montage", back_populates="attachments")


class MontageChecklistItem(db.Model):
    __tablename__ = "montage_checklist_item"

    id: Mapped[int] = mapped_column(primary_key=True)
    montage_id: Mapped[int] = mapped_column(ForeignKey("montage.id"), nullable=False, index=True)
    template_id: Mapped[str | None] = mapped_column(db.String(60), nullable=True)
    label: Mapped[str] = mapped_column(db.String(255), nullable=False)
    allow_attachment: Mapped[bool] = mapped_column(nullable=False, default=False)
    completed: Mapped[bool] = mapped_column(nullable=False, default=False)
    order_index: Mapped[int] = mapped_column(nullable=False, default=0)
    attachment_id: Mapped[int | None] = mapped_column(ForeignKey("montage_attachment.id"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    montage = relationship("Montage", back_populates="checklist_items")


class MontageNote(db.Model):
    __tablename__ = "montage_note"

    id: Mapped[int] = mapped_column(primary_key=True)
    montage_id: Mapped[int] = mapped_column(ForeignKey("montage.id"), nullable=False, index=True)
    content: Mapped[str] = mapped_column(db.Text, nullable=False)
    is_internal: Mapped[bool] = mapped_column(nullable=False, default=False)
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    montage = relationship("Montage", back_populates="notes")


class Settlement(db.Model):
    __tablename__ = "settlement"
    __table_args__ = (UniqueConstraint("montage_id", name="uq_settlement_montage"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    montage_id: Mapped[int] = mapped_column(ForeignKey("montage.id"), nullable=False)
    installer_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False)
    status: Mapped[SettlementStatus] = mapped_column(
        SAEnum(SettlementStatus, name="settlement_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SettlementStatus.DRAFT,
    )
    total_amount: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    lines = relationship("SettlementLine", back_populates="settlement", cascade="all, delete-orphan")


class SettlementLine(db.Model):
    __tablename__ = "settlement_line"
    __table_args__ = (UniqueConstraint("settlement_id", "rule", name="uq_settlement_line_rule"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    settlement_id: Mapped[int] = mapped_column(ForeignKey("settlement.id"), nullable=False)
    rule: Mapped[SettlementRule] = mapped_column(
        SAEnum(SettlementRule, name="settlement_rule", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False)
    description: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    settlement = relationship("Settlement", back_populates="lines")


class Commission(db.Model):
    __tablename__ = "commission"
    __table_args__ = (
        UniqueConstraint("montage_id", "beneficiary_type", name="uq_commission_montage_beneficiary"),
        CheckConstraint("amount > 0", name="ck_commission_amount_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    montage_id: Mapped[int] = mapped_column(ForeignKey("montage.id"), nullable=False, index=True)
    beneficiary_type: Mapped[BeneficiaryType] = mapped_column(
        SAEnum(BeneficiaryType, name="beneficiary_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    beneficiary_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False, index=True)
    # grosze
    amount: Mapped[int] = mapped_column(nullable=False)
    rate: Mapped[Decimal] = mapped_column(db.Numeric(10, 4), nullable=False)
    area: Mapped[float] = mapped_column(nullable=False)
    status: Mapped[CommissionStatus] = mapped_column(
        SAEnum(CommissionStatus, name="commission_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=CommissionStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    beneficiary = relationship("User")


class Product(db.Model):
    __tablename__ = "product"

    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[str] = mapped_column(db.String(60), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    # gross PLN
    price: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False, default=Decimal("0.00"))


class Order(db.Model):
    __tablename__ = "shop_order"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(30), nullable=False, default="shop")
    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus, name="order_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=OrderStatus.AWAITING_PAYMENT,
    )
    customer_id: Mapped[int] = mapped_column(ForeignKey("customer.id"), nullable=False)
    montage_id: Mapped[int | None] = mapped_column(ForeignKey("montage.id", use_alter=True), nullable=True, index=True)
    # grosze
    total_net: Mapped[int] = mapped_column(nullable=False, default=0)
    total_gross: Mapped[int] = mapped_column(nullable=False, default=0)
    currency: Mapped[str] = mapped_column(db.String(3), nullable=False, default="PLN")
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(db.Model):
    __tablename__ = "shop_order_item"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("shop_order.id"), nullable=False)
    name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    sku: Mapped[str] = mapped_column(db.String(60), nullable=False)
    quantity: Mapped[int] = mapped_column(nullable=False, default=1)
    # gross grosze
    unit_price: Mapped[int] = mapped_column(nullable=False)
    tax_rate: Mapped[int] = mapped_column(nullable=False, default=23)

    order = relationship("Order", back_populates="items")


class AppSetting(db.Model):
    __tablename__ = "app_setting"

    key: Mapped[str] = mapped_column(db.String(80), primary_key=True)
    value: Mapped[str] = mapped_column(db.Text, nullable=False)
    updated_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class AuditLog(db.Model):
    __tablename__ = "audit_log"
    __table_args__ = (Index("ix_audit_log_montage_created", "montage_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    action: Mapped[str] = mapped_column(db.String(60), nullable=False, index=True)
    details: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    montage_id: Mapped[int | None] = mapped_column(ForeignKey("montage.id"), nullable=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    user = relationship("User")


@event.listens_for(AuditLog, "before_update")
def audit_log_before_update(_mapper, _connection, target: AuditLog) -> None:
    raise ValueError(f"Audit log entry #{target.id} is immutable")


def seed_demo_data(session) -> None:
    admin = User(
        email="admin@montaze.local",
        full_name="Biuro Admin",
        role=UserRole.ADMIN.value,
        password_hash=generate_password_hash("admin123"),
    )
    office = User(
        email="biuro@montaze.local",
        full_name="Anna Biuro",
        role=UserRole.OFFICE.value,
        password_hash=generate_password_hash("biuro123"),
    )
    installer = User(
        email="montazysta@montaze.local",
        full_name="Piotr Montażysta",
        role=UserRole.INSTALLER.value,
        password_hash=generate_password_hash("montaz123"),
        measurement_rate=Decimal("150.00"),
    )
    architect = User(
        email="architekt@montaze.local",
        full_name="Ewa Architekt",
        role=UserRole.ARCHITECT.value,
        password_hash=generate_password_hash("architekt123"),
        commission_rate=Decimal("0.0200"),
    )
    partner = User(
        email="partner@montaze.local",
        full_name="Studio Partner",
        role=UserRole.PARTNER.value,
        password_hash=generate_password_hash("partner123"),
        commission_rate=Decimal("0.0100"),
    )
    session.add_all([admin, office, installer, architect, partner])
    session.flush()

    customer = Customer(name="Jan Kowalski", email="jan.kowalski@example.com", phone="600100200")
    session.add(customer)
    measurement_product = Product(sku="USLUGA-POMIAR", name="Usługa Pomiaru", price=Decimal("199.00"))
    session.add(measurement_product)
    session.add(AppSetting(key="shop.config", value=json.dumps({"measurement_product_sku": "USLUGA-POMIAR"})))
    session.flush()

    session.add_all(
        [
            Montage(
                display_id="M/2026/0001",
                client_name="Jan Kowalski",
                contact_phone="600100200",
                contact_email="jan.kowalski@example.com",
                installation_city="Kraków",
                status="new_lead",
                customer_id=customer.id,
                architect_id=architect.id,
                floor_area=45.0,
            ),
            Montage(
                display_id="M/2026/0002",
                client_name="Maria Nowak",
                contact_phone="600300400",
                installation_city="Wieliczka",
                status="measurement_scheduled",
                measurer_id=installer.id,
                installer_id=installer.id,
                partner_id=partner.id,
                floor_area=62.5,
            ),
        ]
    )
    session.commit()
