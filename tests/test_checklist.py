from __future__ import annotations

import json

import pytest

from crm.core.extensions import db
from crm.core.models import AppSetting, AuditLog, Montage, SampleStatus, SettlementLine
from crm.montage.catalog import (
    GROUP_JOB,
    AutomationRule,
    ChecklistTemplate,
    StatusDefinition,
    WorkflowConfig,
)
from crm.montage.engine import TransitionEngine
from crm.montage.errors import ChecklistItemNotFound
from crm.montage.services import initialize_checklist, toggle_checklist_item


def _status(montage_id: int) -> str:
    return db.session.get(Montage, montage_id).status


def test_completing_last_stage_item_advances_to_next_status(app, make_montage, users, find_item):
    montage_id = make_montage(status="measurement_scheduled", measurer_id=users["installer"].id)
    initialize_checklist(montage_id, None)
    item = find_item(montage_id, "measurement_protocol")

    outcome = toggle_checklist_item(montage_id, item.id, True, users["office"].id)

    assert [t.status for t in outcome.transitions] == ["measurement_done"]
    assert _status(montage_id) == "measurement_done"
    assert SettlementLine.query.count() == 1
    assert AuditLog.query.filter_by(montage_id=montage_id, action="checklist_completed").count() == 1


def test_stage_items_do_not_advance_a_montage_in_another_status(app, make_montage, find_item):
    montage_id = make_montage(status="quote_sent")
    initialize_checklist(montage_id, None)
    item = find_item(montage_id, "measurement_protocol")

    outcome = toggle_checklist_item(montage_id, item.id, True, None)
    assert outcome.transitions == []
    assert _status(montage_id) == "quote_sent"


def test_disabled_stage_automation_keeps_status(app, make_montage, find_item):
    db.session.add(
        AppSetting(key="montage.automation_settings", value=json.dumps({"auto_advance_measurement_scheduled": False}))
    )
    db.session.commit()
    montage_id = make_montage(status="measurement_scheduled")
    initialize_checklist(montage_id, None)

    outcome = toggle_checklist_item(montage_id, find_item(montage_id, "measurement_protocol").id, True, None)
    assert outcome.transitions == []
    assert _status(montage_id) == "measurement_scheduled"


def test_new_lead_stage_never_auto_advances(app, make_montage, find_item):
    config = WorkflowConfig.build(templates=[ChecklistTemplate("call_client", "Telefon", False, "new_lead")])
    montage_id = make_montage(status="new_lead", checklist=[("call_client", False)])

    outcome = TransitionEngine(config).toggle_checklist_item(montage_id, find_item(montage_id, "call_client").id, True)
    assert outcome.transitions == []
    assert _status(montage_id) == "new_lead"


def test_unchecking_item_of_passed_stage_rolls_back(app, make_montage, legacy_statuses, find_item):
    config = WorkflowConfig.build(
        statuses=legacy_statuses,
        templates=[ChecklistTemplate("measurement_check", "Pomiar", False, "before_measurement")],
    )
    montage_id = make_montage(status="before_first_payment", checklist=[("measurement_check", True)])

    outcome = TransitionEngine(config).toggle_checklist_item(
        montage_id, find_item(montage_id, "measurement_check").id, False
    )

    assert _status(montage_id) == "before_measurement"
    assert [t.status for t in outcome.transitions] == ["before_measurement"]
    rollback = AuditLog.query.filter_by(montage_id=montage_id, action="rollback_montage_status").one()
    assert "before_measurement" in rollback.details


def test_unchecking_item_of_current_stage_keeps_status(app, make_montage, legacy_statuses, find_item):
    config = WorkflowConfig.build(
        statuses=legacy_statuses,
        templates=[ChecklistTemplate("measurement_check", "Pomiar", False, "before_measurement")],
    )
    montage_id = make_montage(status="before_measurement", checklist=[("measurement_check", True)])

    outcome = TransitionEngine(config).toggle_checklist_item(
        montage_id, find_item(montage_id, "measurement_check").id, False
    )
    assert outcome.transitions == []
    assert _status(montage_id) == "before_measurement"


def test_sample_item_mirrors_sample_status(app, make_montage, find_item):
    montage_id = make_montage(
        status="new_lead",
        sample_status=SampleStatus.SENT,
        checklist=[("sample_verification", False)],
    )
    item_id = find_item(montage_id, "sample_verification").id

    toggle_checklist_item(montage_id, item_id, True, None)
    assert db.session.get(Montage, montage_id).sample_status == SampleStatus.DELIVERED

    toggle_checklist_item(montage_id, item_id, False, None)
    assert db.session.get(Montage, montage_id).sample_status == SampleStatus.SENT


def test_sample_item_leaves_unrequested_samples_alone(app, make_montage, find_item):
    montage_id = make_montage(status="new_lead", checklist=[("sample_verification", False)])
    toggle_checklist_item(montage_id, find_item(montage_id, "sample_verification").id, True, None)
    assert db.session.get(Montage, montage_id).sample_status == SampleStatus.NONE


def test_automation_rule_moves_to_target_status(app, make_montage, find_item):
    db.session.add(
        AppSetting(
            key="montage.automation",
            value=json.dumps([{"checklist_item_id": "quote_prepared", "target_status": "quote_sent"}]),
        )
    )
    db.session.commit()
    montage_id = make_montage(status="measurement_done")
    initialize_checklist(montage_id, None)

    toggle_checklist_item(montage_id, find_item(montage_id, "quote_prepared").id, True, None)
    assert _status(montage_id) == "quote_sent"


def test_blocked_automatic_hop_keeps_toggle(app, make_montage, find_item):
    montage_id = make_montage(status="waiting_for_deposit")
    initialize_checklist(montage_id, None)
    item_id = find_item(montage_id, "advance_invoice").id

    outcome = toggle_checklist_item(montage_id, item_id, True, None)

    assert _status(montage_id) == "waiting_for_deposit"
    assert find_item(montage_id, "advance_invoice").completed is True
    assert [(b.target_status, b.code) for b in outcome.blocked] == [("deposit_paid", "missing_document")]
    assert AuditLog.query.filter_by(montage_id=montage_id, action="auto_transition_blocked").count() == 1


def test_completed_next_stage_cascades(app, make_montage, find_item):
    config = WorkflowConfig.build(
        templates=[
            ChecklistTemplate("protocol", "Protokół", False, "measurement_scheduled"),
            ChecklistTemplate("photos", "Zdjęcia", False, "measurement_done"),
        ]
    )
    montage_id = make_montage(status="measurement_scheduled", checklist=[("protocol", False), ("photos", True)])

    outcome = TransitionEngine(config).toggle_checklist_item(montage_id, find_item(montage_id, "protocol").id, True)
    assert [t.status for t in outcome.transitions] == ["measurement_done", "quote_in_progress"]
    assert _status(montage_id) == "quote_in_progress"


def _loop_statuses():
    return [StatusDefinition(f"s{n}", f"S{n}", "", n, GROUP_JOB) for n in (1, 2, 3)]


def test_cycle_guard_stops_reentering_a_status(app, make_montage, find_item):
    config = WorkflowConfig.build(
        statuses=_loop_statuses(),
        templates=[ChecklistTemplate("t1", "T1", False, "s1")],
        rules=[AutomationRule("t1", "s1")],
    )
    montage_id = make_montage(status="s1", checklist=[("t1", False)])

    outcome = TransitionEngine(config).toggle_checklist_item(montage_id, find_item(montage_id, "t1").id, True)

    assert [t.status for t in outcome.transitions] == ["s2"]
    assert [(b.target_status, b.code) for b in outcome.blocked] == [("s1", "transition_loop")]
    assert _status(montage_id) == "s2"
    assert find_item(montage_id, "t1").completed is True
    assert AuditLog.query.filter_by(montage_id=montage_id, action="auto_transition_blocked").count() == 1


def test_hop_limit_stops_long_cascades(app, make_montage, find_item):
    config = WorkflowConfig.build(
        statuses=_loop_statuses(),
        templates=[ChecklistTemplate("t1", "T1", False, "s1"), ChecklistTemplate("t2", "T2", False, "s2")],
    )
    montage_id = make_montage(status="s1", checklist=[("t1", False), ("t2", True)])

    outcome = TransitionEngine(config, max_hops=1).toggle_checklist_item(
        montage_id, find_item(montage_id, "t1").id, True
    )
    assert [t.status for t in outcome.transitions] == ["s2"]
    assert [(b.target_status, b.code) for b in outcome.blocked] == [("s3", "transition_loop")]
    assert _status(montage_id) == "s2"


def test_stopped_cascade_is_reported_over_http(app, client, login_admin, make_montage, find_item):
    db.session.add(
        AppSetting(
            key="montage.automation",
            value=json.dumps([{"checklist_item_id": "measurement_protocol", "target_status": "measurement_scheduled"}]),
        )
    )
    db.session.commit()
    login_admin()
    montage_id = make_montage(status="measurement_scheduled")
    initialize_checklist(montage_id, None)

    response = client.post(
        f"/montaze/{montage_id}/checklist/{find_item(montage_id, 'measurement_protocol').id}",
        json={"completed": True},
    )
    assert response.status_code == 200
    payload = response.get_json()
    assert [t["to"] for t in payload["transitions"]] == ["measurement_done"]
    assert [b["error"] for b in payload["blocked"]] == ["transition_loop"]


def test_unknown_checklist_item(app, make_montage):
    montage_id = make_montage(status="new_lead")
    with pytest.raises(ChecklistItemNotFound):
        toggle_checklist_item(montage_id, 9999, True, None)


def test_initialize_checklist_is_idempotent(app, make_montage):
    montage_id = make_montage(status="new_lead")
    first = initialize_checklist(montage_id, None)
    second = initialize_checklist(montage_id, None)
    assert len(first) == len(second) == 7
    sample = next(item for item in second if item.template_id == "sample_verification")
    assert sample.completed is True
