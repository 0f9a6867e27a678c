from __future__ import annotations

from flask import jsonify, request
from flask_login import current_user, login_required

from crm.core.models import AuditLog, Montage
from crm.core.permissions import require_role
from crm.core.utils import money
from crm.montage import montage_bp
from crm.montage.catalog import load_workflow_config, save_status_catalog
from crm.montage.engine import ToggleOutcome, TransitionOutcome
from crm.montage.services import (
    add_attachment,
    add_checklist_item,
    assign_measurer_and_advance,
    create_montage,
    delete_checklist_item,
    finish_montage,
    initialize_checklist,
    list_montages,
    mark_order_paid,
    montage_by_id,
    montage_history,
    rename_checklist_item,
    schedule_installation,
    schedule_measurement,
    toggle_checklist_item,
    update_montage_status,
)


def _payload() -> dict[str, str]:
    data = request.get_json(silent=True) if request.is_json else request.form.to_dict()
    return {key: "" if value is None else str(value) for key, value in (data or {}).items()}


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "on", "yes"}


def _montage_json(montage: Montage) -> dict[str, object]:
    return {
        "id": montage.id,
        "display_id": montage.display_id,
        "client_name": montage.client_name,
        "status": montage.status,
        "completed_at": montage.completed_at.isoformat() if montage.completed_at else None,
        "installer_id": montage.installer_id,
        "measurer_id": montage.measurer_id,
        "architect_id": montage.architect_id,
        "partner_id": montage.partner_id,
        "customer_id": montage.customer_id,
        "floor_area": montage.floor_area,
        "sample_status": montage.sample_status.value,
        "measurement_date": montage.measurement_date.isoformat() if montage.measurement_date else None,
        "checklist": [
            {
                "id": item.id,
                "template_id": item.template_id,
                "label": item.label,
                "completed": item.completed,
                "order_index": item.order_index,
            }
            for item in montage.checklist_items
        ],
    }


def _transition_json(outcome: TransitionOutcome) -> dict[str, object]:
    return {
        "from": outcome.previous_status,
        "to": outcome.status,
        "settlement_line": money(outcome.settlement_line.amount) if outcome.settlement_line else None,
        "commissions": [
            {"beneficiary_type": draft.beneficiary_type.value, "amount": draft.amount}
            for draft in outcome.commissions
        ],
    }


def _toggle_json(outcome: ToggleOutcome) -> dict[str, object]:
    return {
        "item_id": outcome.item_id,
        "completed": outcome.completed,
        "transitions": [_transition_json(t) for t in outcome.transitions],
        "blocked": [
            {"status": b.target_status, "error": b.code, "message": b.message} for b in outcome.blocked
        ],
    }


def _audit_json(entry: AuditLog) -> dict[str, object]:
    return {
        "action": entry.action,
        "details": entry.details,
        "user": entry.user.full_name if entry.user else None,
        "created_at": entry.created_at.isoformat(),
    }


@montage_bp.get("")
@login_required
def montage_list():
    rows = list_montages({"status": request.args.get("status", ""), "q": request.args.get("q", "")})
    return jsonify([_montage_json(row) for row in rows])


@montage_bp.post("")
@login_required
def montage_create():
    montage = create_montage(_payload(), current_user.id)
    return jsonify(_montage_json(montage)), 201


@montage_bp.get("/<int:montage_id>")
@login_required
def montage_detail(montage_id: int):
    return jsonify(_montage_json(montage_by_id(montage_id)))


@montage_bp.post("/<int:montage_id>/status")
@login_required
def montage_status(montage_id: int):
    outcome = update_montage_status(montage_id, _payload().get("status", ""), current_user.id)
    return jsonify(_transition_json(outcome))


@montage_bp.post("/<int:montage_id>/finish")
@login_required
def montage_finish(montage_id: int):
    return jsonify(_transition_json(finish_montage(montage_id, current_user.id)))


@montage_bp.post("/<int:montage_id>/checklist")
@login_required
def checklist_add(montage_id: int):
    payload = _payload()
    if _flag(payload.get("initialize", "")):
        items = initialize_checklist(montage_id, current_user.id)
        return jsonify({"items": len(items)})
    item = add_checklist_item(montage_id, payload, current_user.id)
    return jsonify({"id": item.id, "label": item.label, "order_index": item.order_index}), 201


@montage_bp.post("/<int:montage_id>/checklist/<int:item_id>")
@login_required
def checklist_toggle(montage_id: int, item_id: int):
    outcome = toggle_checklist_item(montage_id, item_id, _flag(_payload().get("completed", "")), current_user.id)
    return jsonify(_toggle_json(outcome))


@montage_bp.patch("/<int:montage_id>/checklist/<int:item_id>")
@login_required
def checklist_rename(montage_id: int, item_id: int):
    item = rename_checklist_item(montage_id, item_id, _payload().get("label", ""), current_user.id)
    return jsonify({"id": item.id, "label": item.label})


@montage_bp.delete("/<int:montage_id>/checklist/<int:item_id>")
@login_required
def checklist_delete(montage_id: int, item_id: int):
    delete_checklist_item(montage_id, item_id, current_user.id)
    return jsonify({"ok": True})


@montage_bp.post("/<int:montage_id>/measurer")
@login_required
def measurer_assign(montage_id: int):
    payload = _payload()
    measurer_raw = payload.get("measurer_id", "").strip()
    if not measurer_raw.isdigit():
        raise ValueError("Wybierz pomiarowca")
    outcome = assign_measurer_and_advance(
        montage_id,
        int(measurer_raw),
        _flag(payload.get("require_payment", "")),
        current_user.id,
    )
    return jsonify(
        {
            "payment_required": outcome.payment_required,
            "payment_link": outcome.payment_link,
            "order_id": outcome.order_id,
        }
    )


@montage_bp.post("/<int:montage_id>/measurement-date")
@login_required
def measurement_date(montage_id: int):
    montage = schedule_measurement(montage_id, _payload().get("measurement_date"), current_user.id)
    return jsonify(_montage_json(montage))


@montage_bp.post("/<int:montage_id>/installation-date")
@login_required
def installation_date(montage_id: int):
    payload = _payload()
    montage = schedule_installation(montage_id, payload.get("start"), payload.get("end"), current_user.id)
    return jsonify(_montage_json(montage))


@montage_bp.post("/<int:montage_id>/attachments")
@login_required
def attachment_add(montage_id: int):
    attachment = add_attachment(montage_id, _payload(), current_user.id)
    return jsonify({"id": attachment.id, "type": attachment.type, "url": attachment.url}), 201


@montage_bp.get("/<int:montage_id>/history")
@login_required
def history(montage_id: int):
    return jsonify([_audit_json(entry) for entry in montage_history(montage_id)])


@montage_bp.post("/orders/<int:order_id>/paid")
@login_required
@require_role("admin")
def order_paid(order_id: int):
    order = mark_order_paid(order_id, current_user.id)
    return jsonify({"id": order.id, "status": order.status.value, "montage_id": order.montage_id})


@montage_bp.get("/config/statuses")
@login_required
def statuses_list():
    config = load_workflow_config()
    return jsonify(
        [
            {"id": s.id, "label": s.label, "description": s.description, "order": s.order, "group": s.group}
            for s in config.statuses
        ]
    )


@montage_bp.post("/config/statuses")
@login_required
@require_role("admin")
def statuses_save():
    data = request.get_json(silent=True) or {}
    statuses = save_status_catalog(data.get("statuses") or [], current_user.id)
    return jsonify([{"id": s.id, "label": s.label, "order": s.order} for s in statuses])
