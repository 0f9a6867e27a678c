from __future__ import annotations

from datetime import date

import pytest

from crm.core.extensions import db
from crm.core.models import AppSetting, AuditLog, Customer, Montage, MontageNote, Order, OrderStatus, utcnow
from crm.montage.catalog import load_workflow_config, save_status_catalog
from crm.montage.errors import DuplicateTaxId, MeasurementProductMissing, NoCustomerForPayment, NotALead
from crm.montage.gateways import MEASUREMENT_SCHEDULED, MEASURER_ASSIGNED, Gateways
from crm.montage.services import (
    assign_measurer_and_advance,
    create_montage,
    mark_order_paid,
    schedule_measurement,
)

from conftest import RecordingCalendar, RecordingNotifications


def test_payment_without_customer_fails_and_creates_no_order(app, make_montage, users):
    montage_id = make_montage(status="new_lead")
    with pytest.raises(NoCustomerForPayment):
        assign_measurer_and_advance(montage_id, users["installer"].id, True, users["office"].id)
    assert Order.query.count() == 0
    montage = db.session.get(Montage, montage_id)
    assert montage.status == "new_lead"
    assert montage.measurer_id is None


def test_payment_requires_configured_product(app, make_montage, users):
    db.session.delete(db.session.get(AppSetting, "shop.config"))
    db.session.commit()
    customer = Customer.query.first()
    montage_id = make_montage(status="lead_contact", customer_id=customer.id)
    with pytest.raises(MeasurementProductMissing):
        assign_measurer_and_advance(montage_id, users["installer"].id, True, None)


def test_payment_flow_creates_order_and_link(app, make_montage, users):
    customer = Customer.query.first()
    montage_id = make_montage(status="lead_pre_estimate", customer_id=customer.id)

    outcome = assign_measurer_and_advance(montage_id, users["installer"].id, True, users["office"].id)

    montage = db.session.get(Montage, montage_id)
    order = db.session.get(Order, outcome.order_id)
    assert outcome.payment_required is True
    assert outcome.payment_link == f"/montaz/{montage.access_token}"
    assert montage.status == "lead_payment_pending"
    assert montage.measurer_id == users["installer"].id
    assert montage.payment_order_id == order.id
    assert order.status == OrderStatus.AWAITING_PAYMENT
    assert order.total_gross == 19900
    assert order.total_net == 16179
    assert order.items[0].tax_rate == 23
    assert AuditLog.query.filter_by(montage_id=montage_id, action="montage.payment_requested").count() == 1

    token = montage.access_token
    again = assign_measurer_and_advance(montage_id, users["installer"].id, True, None)
    assert again.payment_link == f"/montaz/{token}"


def test_paid_order_unlocks_measurement(app, make_montage, users):
    customer = Customer.query.first()
    montage_id = make_montage(status="new_lead", customer_id=customer.id)
    outcome = assign_measurer_and_advance(montage_id, users["installer"].id, True, None)

    order = mark_order_paid(outcome.order_id, users["admin"].id)
    assert order.status == OrderStatus.PAID
    assert order.paid_at is not None
    assert db.session.get(Montage, montage_id).status == "measurement_to_schedule"


def test_conversion_without_payment(app, make_montage, users):
    notifications = RecordingNotifications()
    montage_id = make_montage(status="new_lead")

    outcome = assign_measurer_and_advance(
        montage_id,
        users["installer"].id,
        False,
        users["office"].id,
        gateways=Gateways(notifications=notifications),
    )

    montage = db.session.get(Montage, montage_id)
    assert outcome.payment_required is False
    assert outcome.payment_link is None
    assert montage.status == "measurement_to_schedule"
    assert montage.completed_at is None
    note = MontageNote.query.filter_by(montage_id=montage_id).one()
    assert note.is_internal is False
    assert users["installer"].full_name in note.content
    assert AuditLog.query.filter_by(montage_id=montage_id, action="montage.measurer_assigned").count() == 1
    assert [sent[0] for sent in notifications.sent] == [MEASURER_ASSIGNED]


def test_only_leads_can_be_converted(app, make_montage, users):
    montage_id = make_montage(status="measurement_scheduled")
    with pytest.raises(NotALead):
        assign_measurer_and_advance(montage_id, users["installer"].id, False, None)


def test_scheduling_measurement_syncs_calendar_and_advances(app, make_montage, users):
    calendar = RecordingCalendar()
    notifications = RecordingNotifications()
    montage_id = make_montage(
        status="measurement_to_schedule",
        measurer_id=users["installer"].id,
        contact_phone="600100200",
    )

    montage = schedule_measurement(
        montage_id,
        "2026-11-02T10:00",
        users["office"].id,
        gateways=Gateways(calendar=calendar, notifications=notifications),
    )

    assert montage.status == "measurement_scheduled"
    assert montage.calendar_event_id == "evt-1"
    assert calendar.upserts[0]["owner_id"] == users["installer"].id
    assert notifications.sent[0][0] == MEASUREMENT_SCHEDULED
    assert notifications.sent[0][1] == "600100200"


def test_calendar_failure_does_not_block_scheduling(app, make_montage, users):
    montage_id = make_montage(status="measurement_to_schedule", measurer_id=users["installer"].id)

    montage = schedule_measurement(
        montage_id,
        "2026-11-02T10:00",
        None,
        gateways=Gateways(calendar=RecordingCalendar(fail=True), notifications=RecordingNotifications()),
    )
    assert montage.status == "measurement_scheduled"
    assert montage.measurement_date is not None
    assert montage.calendar_event_id is None


def test_create_montage_reuses_customer_and_builds_checklist(app, users):
    montage = create_montage(
        {"client_name": "Jan Kowalski", "contact_email": "JAN.KOWALSKI@example.com", "floor_area": "45"},
        users["office"].id,
    )
    assert montage.display_id.startswith(f"M/{date.today().year}/")
    assert montage.status == "new_lead"
    assert montage.customer.email == "jan.kowalski@example.com"
    assert Customer.query.count() == 1
    assert len(montage.checklist_items) == 7


def test_create_montage_rejects_tax_id_of_other_customer(app, users):
    db.session.add(Customer(name="Firma", email="firma@example.com", tax_id="1234567890"))
    db.session.commit()
    with pytest.raises(DuplicateTaxId):
        create_montage(
            {"client_name": "Jan Kowalski", "contact_email": "jan.kowalski@example.com", "tax_id": "1234567890"},
            None,
        )


def test_create_montage_requires_client_name(app):
    with pytest.raises(ValueError):
        create_montage({"client_name": "  "}, None)


def test_saved_catalog_without_groups_keeps_lead_gate(app, make_montage, users):
    save_status_catalog(
        [
            {"id": "new_lead", "label": "Nowe"},
            {"id": "measurement_to_schedule", "label": "Do umówienia"},
            {"id": "quote_sent", "label": "Oferta"},
            {"id": "completed", "label": "Koniec"},
            {"id": "on_hold", "label": "Wstrzymane"},
            {"id": "complaint", "label": "Reklamacja"},
        ],
        users["admin"].id,
    )
    for status, fields in (("quote_sent", {}), ("completed", {"completed_at": utcnow()})):
        montage_id = make_montage(status=status, **fields)
        with pytest.raises(NotALead):
            assign_measurer_and_advance(montage_id, users["installer"].id, False, None)
        assert db.session.get(Montage, montage_id).status == status

    config = load_workflow_config()
    assert config.status("on_hold").group == "special"
    assert config.next_status("completed") is None
    assert config.next_status("quote_sent").id == "completed"
