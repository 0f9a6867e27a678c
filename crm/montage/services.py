from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from flask import current_app
from sqlalchemy import func, or_

from crm.core.extensions import db
from crm.core.models import (
    AuditLog,
    Customer,
    Montage,
    MontageAttachment,
    MontageChecklistItem,
    MontageNote,
    Order,
    OrderStatus,
    OrderItem,
    Product,
    SampleStatus,
    User,
    utcnow,
)
from crm.montage.catalog import (
    CUSTOM_TEMPLATE_ID,
    SAMPLE_TEMPLATE_ID,
    STATUS_COMPLETED,
    STATUS_INSTALLATION_SCHEDULED,
    STATUS_MEASUREMENT_SCHEDULED,
    STATUS_MEASUREMENT_TO_SCHEDULE,
    STATUS_NEW_LEAD,
    STATUS_PAYMENT_PENDING,
    WorkflowConfig,
    load_workflow_config,
    shop_config,
)
from crm.montage.engine import ToggleOutcome, TransitionEngine, TransitionOutcome
from crm.montage.errors import (
    ChecklistItemNotFound,
    DuplicateTaxId,
    MeasurementProductMissing,
    MontageNotFound,
    NoCustomerForPayment,
    NotALead,
)
from crm.montage.gateways import MEASUREMENT_SCHEDULED, MONTAGE_SCHEDULED, MEASURER_ASSIGNED, Gateways, log_audit

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
VAT_DIVISOR = Decimal("1.23")
VAT_RATE = 23
MATERIALS_STATUSES = {"materials_ordered", "materials_pickup_ready", "materials_delivered"}


@dataclass
class ConversionOutcome:
    payment_required: bool
    payment_link: str | None = None
    order_id: int | None = None


def build_engine(
    actor_id: int | None = None,
    config: WorkflowConfig | None = None,
    gateways: Gateways | None = None,
) -> TransitionEngine:
    return TransitionEngine(
        config or load_workflow_config(),
        gateways or Gateways(),
        actor_id=actor_id,
        max_hops=int(current_app.config.get("MAX_TRANSITION_HOPS", 8)),
    )


def _parse_datetime(value: str | None, field_name: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValueError(f"{field_name}: nieprawidłowy format daty") from exc


def _clean(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


def _normalize_phone(value: str | None) -> str | None:
    digits = re.sub(r"[^\d+]", "", value or "")
    return digits or None


def montage_by_id(montage_id: int) -> Montage:
    montage = db.session.get(Montage, montage_id)
    if not montage:
        raise MontageNotFound()
    return montage


def list_montages(filters: dict[str, str]) -> list[Montage]:
    query = Montage.query.order_by(Montage.updated_at.desc(), Montage.id.desc())
    status = (filters.get("status") or "").strip()
    if status:
        query = query.filter(Montage.status == status)
    text = (filters.get("q") or "").strip()
    if text:
        like = f"%{text}%"
        query = query.filter(
            or_(Montage.client_name.ilike(like), Montage.display_id.ilike(like), Montage.installation_city.ilike(like))
        )
    return query.all()


def montage_history(montage_id: int) -> list[AuditLog]:
    montage_by_id(montage_id)
    return (
        AuditLog.query.filter_by(montage_id=montage_id)
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        .all()
    )


def _next_display_id(year: int) -> str:
    prefix = f"M/{year}/"
    count = (
        db.session.query(func.count(Montage.id))
        .filter(Montage.display_id.like(f"{prefix}%"))
        .scalar()
    )
    return f"{prefix}{count + 1:04d}"


def _match_customer(email: str | None, phone: str | None, tax_id: str | None) -> Customer | None:
    existing = None
    if email:
        existing = Customer.query.filter_by(email=email).first()
    if not existing and phone:
        existing = Customer.query.filter_by(phone=phone).first()
    if tax_id:
        with_tax_id = Customer.query.filter_by(tax_id=tax_id).first()
        if with_tax_id:
            if existing and existing.id != with_tax_id.id:
                raise DuplicateTaxId()
            existing = existing or with_tax_id
    return existing


def _create_template_checklist(montage: Montage, config: WorkflowConfig) -> list[MontageChecklistItem]:
    items = []
    for index, template in enumerate(config.templates):
        completed = template.id == SAMPLE_TEMPLATE_ID and montage.sample_status in {
            SampleStatus.NONE,
            SampleStatus.DELIVERED,
        }
        item = MontageChecklistItem(
            montage_id=montage.id,
            template_id=template.id,
            label=template.label,
            allow_attachment=template.allow_attachment,
            completed=completed,
            order_index=index,
        )
        db.session.add(item)
        items.append(item)
    return items


def create_montage(payload: dict[str, str], user_id: int | None, config: WorkflowConfig | None = None) -> Montage:
    client_name = (payload.get("client_name") or "").strip()
    if not client_name:
        raise ValueError("Podaj nazwę klienta.")

    email = (payload.get("contact_email") or "").strip().lower() or None
    if email and not EMAIL_RE.match(email):
        raise ValueError("Podaj prawidłowy adres e-mail.")
    phone = _normalize_phone(payload.get("contact_phone"))
    tax_id = _clean(payload.get("tax_id"))

    customer = _match_customer(email, phone, tax_id)
    if customer is None:
        customer = Customer(name=client_name, email=email, phone=phone, tax_id=tax_id)
        db.session.add(customer)
        db.session.flush()
    elif tax_id and not customer.tax_id:
        customer.tax_id = tax_id

    sample_raw = (payload.get("sample_status") or SampleStatus.NONE.value).strip().lower()
    try:
        sample_status = SampleStatus(sample_raw)
    except ValueError as exc:
        raise ValueError("Nieprawidłowy status próbek") from exc

    floor_area_raw = str(payload.get("floor_area") or "").strip().replace(",", ".")
    try:
        floor_area = float(floor_area_raw) if floor_area_raw else None
    except ValueError as exc:
        raise ValueError("Powierzchnia musi być liczbą") from exc

    montage = Montage(
        display_id=_next_display_id(date.today().year),
        client_name=client_name,
        contact_email=email,
        contact_phone=phone,
        installation_address=_clean(payload.get("installation_address")),
        installation_city=_clean(payload.get("installation_city")),
        material_details=_clean(payload.get("material_details")),
        status=STATUS_NEW_LEAD,
        customer_id=customer.id,
        floor_area=floor_area,
        sample_status=sample_status,
    )
    for field_name in ("installer_id", "measurer_id", "architect_id", "partner_id"):
        raw = str(payload.get(field_name) or "").strip()
        if raw:
            if not raw.isdigit() or not db.session.get(User, int(raw)):
                raise ValueError(f"Nie znaleziono użytkownika ({field_name})")
            setattr(montage, field_name, int(raw))
    db.session.add(montage)
    db.session.flush()

    _create_template_checklist(montage, config or load_workflow_config())
    log_audit("create_montage", f"Utworzono montaż {montage.label}", user_id, montage.id)
    db.session.commit()
    logger.info("Montage %s created", montage.display_id)
    return montage


def update_montage_status(montage_id: int, status: str, user_id: int | None) -> TransitionOutcome:
    return build_engine(user_id).transition(montage_id, (status or "").strip())


def finish_montage(montage_id: int, user_id: int | None) -> TransitionOutcome:
    engine = build_engine(user_id)
    outcome = engine.transition(montage_id, STATUS_COMPLETED)
    montage = montage_by_id(montage_id)
    log_audit("montage_finished", f"Zakończono montaż {montage.label}", user_id, montage.id)
    db.session.commit()
    return outcome


def initialize_checklist(montage_id: int, user_id: int | None) -> list[MontageChecklistItem]:
    montage = montage_by_id(montage_id)
    if montage.checklist_items:
        return list(montage.checklist_items)
    config = load_workflow_config()
    if not config.templates:
        raise ValueError("Brak zdefiniowanych szablonów listy kontrolnej")
    items = _create_template_checklist(montage, config)
    log_audit("checklist_initialized", f"Utworzono listę kontrolną ({len(items)})", user_id, montage.id)
    db.session.commit()
    return items


def _checklist_item(montage_id: int, item_id: int) -> MontageChecklistItem:
    item = MontageChecklistItem.query.filter_by(id=item_id, montage_id=montage_id).first()
    if not item:
        raise ChecklistItemNotFound()
    return item


def add_checklist_item(montage_id: int, payload: dict[str, str], user_id: int | None) -> MontageChecklistItem:
    montage = montage_by_id(montage_id)
    label = (payload.get("label") or "").strip()
    if not label:
        raise ValueError("Podaj nazwę elementu listy")
    last_index = (
        db.session.query(func.max(MontageChecklistItem.order_index))
        .filter(MontageChecklistItem.montage_id == montage.id)
        .scalar()
    )
    item = MontageChecklistItem(
        montage_id=montage.id,
        template_id=CUSTOM_TEMPLATE_ID,
        label=label,
        allow_attachment=str(payload.get("allow_attachment") or "").lower() in {"1", "true", "on", "yes"},
        completed=False,
        order_index=(last_index + 1) if last_index is not None else 0,
    )
    db.session.add(item)
    log_audit("checklist_item_added", f"Dodano element listy \"{label}\"", user_id, montage.id)
    db.session.commit()
    return item


def rename_checklist_item(montage_id: int, item_id: int, label: str, user_id: int | None) -> MontageChecklistItem:
    item = _checklist_item(montage_id, item_id)
    label = (label or "").strip()
    if not label:
        raise ValueError("Podaj nazwę elementu listy")
    previous = item.label
    item.label = label
    db.session.add(item)
    log_audit("checklist_item_renamed", f"Zmieniono nazwę \"{previous}\" na \"{label}\"", user_id, montage_id)
    db.session.commit()
    return item


def delete_checklist_item(montage_id: int, item_id: int, user_id: int | None) -> None:
    item = _checklist_item(montage_id, item_id)
    log_audit("checklist_item_deleted", f"Usunięto element listy \"{item.label}\"", user_id, montage_id)
    db.session.delete(item)
    db.session.commit()


def toggle_checklist_item(montage_id: int, item_id: int, completed: bool, user_id: int | None) -> ToggleOutcome:
    return build_engine(user_id).toggle_checklist_item(montage_id, item_id, completed)


def add_attachment(montage_id: int, payload: dict[str, str], user_id: int | None) -> MontageAttachment:
    montage = montage_by_id(montage_id)
    url = (payload.get("url") or "").strip()
    if not url:
        raise ValueError("Adres pliku jest wymagany")
    doc_type = (payload.get("type") or "general").strip().lower() or "general"
    attachment = MontageAttachment(
        montage_id=montage.id,
        type=doc_type,
        title=(payload.get("title") or "").strip(),
        url=url,
        uploaded_by_id=user_id,
    )
    db.session.add(attachment)
    db.session.flush()

    item_raw = str(payload.get("checklist_item_id") or "").strip()
    if item_raw.isdigit():
        item = _checklist_item(montage.id, int(item_raw))
        item.attachment_id = attachment.id
        db.session.add(item)

    log_audit("add_attachment", f"Dodano załącznik ({doc_type}): {attachment.title or url}", user_id, montage.id)
    db.session.commit()
    return attachment


def add_note(montage_id: int, content: str, user_id: int | None, internal: bool = True) -> MontageNote:
    content = (content or "").strip()
    if not content:
        raise ValueError("Treść notatki jest wymagana")
    note = MontageNote(montage_id=montage_id, content=content, is_internal=internal, created_by_id=user_id)
    db.session.add(note)
    db.session.commit()
    return note


def _measurement_product() -> Product:
    sku = (shop_config().get("measurement_product_sku") or "").strip()
    if not sku:
        raise MeasurementProductMissing()
    product = Product.query.filter_by(sku=sku).first()
    if not product:
        raise MeasurementProductMissing()
    return product


def _notify(gateways: Gateways, template_id: str, recipient: str | None, variables: dict[str, object]) -> None:
    try:
        gateways.notifications.send(template_id, recipient, variables)
    except Exception:
        logger.exception("Notification %s to %s failed", template_id, recipient)


def assign_measurer_and_advance(
    montage_id: int,
    measurer_id: int,
    require_payment: bool,
    user_id: int | None,
    gateways: Gateways | None = None,
) -> ConversionOutcome:
    gateways = gateways or Gateways()
    engine = build_engine(user_id, gateways=gateways)
    montage = montage_by_id(montage_id)
    if not engine.config.is_lead_status(montage.status):
        raise NotALead()
    measurer = db.session.get(User, measurer_id)
    if not measurer:
        raise ValueError("Nie znaleziono pomiarowca")

    if require_payment:
        product = _measurement_product()
        if not montage.customer_id:
            raise NoCustomerForPayment()

        gross = int((Decimal(product.price) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        net = int((Decimal(gross) / VAT_DIVISOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        order = Order(
            source="shop",
            status=OrderStatus.AWAITING_PAYMENT,
            customer_id=montage.customer_id,
            montage_id=montage.id,
            total_net=net,
            total_gross=gross,
            currency="PLN",
        )
        order.items.append(
            OrderItem(name=product.name, sku=product.sku, quantity=1, unit_price=gross, tax_rate=VAT_RATE)
        )
        db.session.add(order)
        db.session.flush()

        montage.payment_order_id = order.id
        montage.measurer_id = measurer.id
        montage.status = STATUS_PAYMENT_PENDING
        montage.completed_at = None
        if not montage.access_token:
            montage.access_token = secrets.token_urlsafe(24)
        db.session.add(montage)
        log_audit(
            "montage.payment_requested",
            "Wymuszono płatność za pomiar. Zlecenie wstrzymane do czasu wpłaty.",
            user_id,
            montage.id,
        )
        db.session.commit()
        base_path = current_app.config.get("PORTAL_BASE_PATH", "/montaz").rstrip("/")
        return ConversionOutcome(
            payment_required=True,
            payment_link=f"{base_path}/{montage.access_token}",
            order_id=order.id,
        )

    montage.measurer_id = measurer.id
    db.session.add(montage)
    engine.apply(
        montage,
        STATUS_MEASUREMENT_TO_SCHEDULE,
        audit_action="montage.measurer_assigned",
        audit_details=f"Zlecono pomiar do: {measurer.full_name}",
    )
    db.session.add(
        MontageNote(
            montage_id=montage.id,
            content=f"[System]: Zlecono pomiar do: {measurer.full_name}. Oczekuje na kontakt z klientem.",
            is_internal=False,
            created_by_id=user_id,
        )
    )
    db.session.commit()
    _notify(gateways, MEASURER_ASSIGNED, measurer.email, {"montage": montage.display_id, "client": montage.client_name})
    return ConversionOutcome(payment_required=False)


def mark_order_paid(order_id: int, user_id: int | None) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise ValueError("Nie znaleziono zamówienia")
    if order.status == OrderStatus.PAID:
        return order
    order.status = OrderStatus.PAID
    order.paid_at = utcnow()
    db.session.add(order)
    db.session.commit()

    if order.montage_id:
        engine = build_engine(user_id)
        montage = montage_by_id(order.montage_id)
        unlock_enabled = engine.config.is_automation_enabled("auto_measurement_unlock")
        if montage.status == STATUS_PAYMENT_PENDING and unlock_enabled:
            engine.apply(
                montage,
                STATUS_MEASUREMENT_TO_SCHEDULE,
                audit_details=f"Opłacono zamówienie #{order.id}, pomiar odblokowany",
            )
    return order


def _calendar_owner(montage: Montage, user_id: int | None) -> int | None:
    return montage.measurer_id or montage.installer_id or user_id


def schedule_measurement(
    montage_id: int,
    when: str | None,
    user_id: int | None,
    gateways: Gateways | None = None,
) -> Montage:
    gateways = gateways or Gateways()
    montage = montage_by_id(montage_id)
    measurement_date = _parse_datetime(when, "Data pomiaru")
    montage.measurement_date = measurement_date
    db.session.add(montage)
    log_audit(
        "update_measurement_date",
        f"Data pomiaru: {measurement_date.isoformat() if measurement_date else 'brak'}",
        user_id,
        montage.id,
    )
    db.session.commit()

    owner_id = _calendar_owner(montage, user_id)
    try:
        if measurement_date:
            montage.calendar_event_id = gateways.calendar.upsert_event(
                montage.calendar_event_id,
                owner_id,
                f"Pomiar: {montage.client_name}",
                measurement_date,
                measurement_date + timedelta(hours=1),
                montage.installation_address,
            )
        elif montage.calendar_event_id:
            gateways.calendar.delete_event(montage.calendar_event_id, owner_id)
            montage.calendar_event_id = None
        db.session.add(montage)
        db.session.commit()
    except Exception:
        logger.exception("Calendar sync failed for montage %s", montage.id)
        db.session.rollback()

    if measurement_date:
        _notify(
            gateways,
            MEASUREMENT_SCHEDULED,
            montage.contact_phone or montage.contact_email,
            {"client": montage.client_name, "date": measurement_date.isoformat()},
        )
        if montage.status == STATUS_MEASUREMENT_TO_SCHEDULE:
            build_engine(user_id, gateways=gateways).transition(montage.id, STATUS_MEASUREMENT_SCHEDULED)
    return montage


def schedule_installation(
    montage_id: int,
    start: str | None,
    end: str | None,
    user_id: int | None,
    gateways: Gateways | None = None,
) -> Montage:
    gateways = gateways or Gateways()
    montage = montage_by_id(montage_id)
    start_at = _parse_datetime(start, "Data montażu")
    end_at = _parse_datetime(end, "Koniec montażu")
    if start_at and end_at and end_at < start_at:
        raise ValueError("Koniec montażu nie może być przed startem")
    montage.scheduled_installation_at = start_at
    montage.scheduled_installation_end_at = end_at
    db.session.add(montage)
    log_audit(
        "update_installation_date",
        f"Termin montażu: {start_at.isoformat() if start_at else 'brak'}",
        user_id,
        montage.id,
    )
    db.session.commit()

    owner_id = montage.installer_id or user_id
    try:
        if start_at:
            montage.calendar_event_id = gateways.calendar.upsert_event(
                montage.calendar_event_id,
                owner_id,
                f"Montaż: {montage.client_name}",
                start_at,
                end_at,
                montage.installation_address,
            )
        elif montage.calendar_event_id:
            gateways.calendar.delete_event(montage.calendar_event_id, owner_id)
            montage.calendar_event_id = None
        db.session.add(montage)
        db.session.commit()
    except Exception:
        logger.exception("Calendar sync failed for montage %s", montage.id)
        db.session.rollback()

    if start_at:
        _notify(
            gateways,
            MONTAGE_SCHEDULED,
            montage.contact_phone or montage.contact_email,
            {"client": montage.client_name, "date": start_at.isoformat()},
        )
        if montage.status in MATERIALS_STATUSES:
            build_engine(user_id, gateways=gateways).transition(montage.id, STATUS_INSTALLATION_SCHEDULED)
    return montage
