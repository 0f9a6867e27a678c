from __future__ import annotations

import json
from decimal import Decimal
from types import SimpleNamespace

import pytest

from crm.core.models import BeneficiaryType, SettlementRule
from crm.montage.catalog import (
    DEFAULT_STATUSES,
    GROUP_JOB,
    GROUP_LEAD,
    GROUP_SPECIAL,
    AutomationRule,
    ChecklistTemplate,
    WorkflowConfig,
    parse_automation_flags,
    parse_automation_rules,
    parse_checklist_templates,
    parse_status_catalog,
)
from crm.montage.gateways import Rates
from crm.montage.settlements import commission_amount, measurement_fee_line, plan_commissions


def test_commission_amount_is_rounded_grosze():
    assert commission_amount(45, Decimal("0.02")) == 90
    assert commission_amount(45, 0.02) == 90
    assert commission_amount(Decimal("1"), Decimal("0.005")) == 1
    assert commission_amount(Decimal("62.5"), Decimal("0.01")) == 63


def test_measurement_fee_line_skips_missing_or_zero_rate():
    assert measurement_fee_line(None) is None
    assert measurement_fee_line(Decimal("0")) is None

    line = measurement_fee_line(Decimal("150"))
    assert line.rule == SettlementRule.MEASUREMENT_FEE
    assert line.amount == Decimal("150.00")


def test_plan_commissions_orders_architect_before_partner_and_skips_missing_rates():
    rates = {
        1: Rates(commission_rate=Decimal("0.02")),
        2: Rates(commission_rate=Decimal("0.01")),
        3: Rates(commission_rate=None),
    }
    montage = SimpleNamespace(floor_area=45.0, architect_id=1, partner_id=2)
    drafts = plan_commissions(montage, lambda user_id: rates.get(user_id, Rates()))
    assert [d.beneficiary_type for d in drafts] == [BeneficiaryType.ARCHITECT, BeneficiaryType.PARTNER]
    assert [d.amount for d in drafts] == [90, 45]

    no_rate = SimpleNamespace(floor_area=45.0, architect_id=3, partner_id=None)
    assert plan_commissions(no_rate, lambda user_id: rates.get(user_id, Rates())) == []

    no_area = SimpleNamespace(floor_area=None, architect_id=1, partner_id=2)
    assert plan_commissions(no_area, lambda user_id: rates.get(user_id, Rates())) == []


def test_status_catalog_falls_back_to_defaults():
    assert parse_status_catalog(None) == DEFAULT_STATUSES
    assert parse_status_catalog("{not json") == DEFAULT_STATUSES
    assert parse_status_catalog(json.dumps({"id": "x"})) == DEFAULT_STATUSES
    assert parse_status_catalog(json.dumps([{"id": 1, "label": "x", "description": ""}])) == DEFAULT_STATUSES


def test_status_catalog_keeps_valid_entries_sorted_by_order():
    raw = json.dumps(
        [
            {"id": "b", "label": "B", "description": "", "order": 2, "group": "job"},
            {"id": "a", "label": "A", "description": ""},
            {"id": "broken", "label": "No description"},
        ]
    )
    statuses = parse_status_catalog(raw)
    assert [s.id for s in statuses] == ["a", "b"]
    assert statuses[0].order == 0
    assert statuses[0].group == GROUP_JOB


def test_status_catalog_without_groups_keeps_known_groups():
    raw = json.dumps(
        [
            {"id": status_id, "label": status_id, "description": "", "order": index}
            for index, status_id in enumerate(["new_lead", "quote_sent", "completed", "on_hold", "lead_contact"])
        ]
    )
    config = WorkflowConfig.build(statuses=parse_status_catalog(raw))
    assert [s.group for s in config.statuses] == [GROUP_LEAD, GROUP_JOB, GROUP_JOB, GROUP_SPECIAL, GROUP_LEAD]
    assert not config.is_lead_status("quote_sent")
    assert not config.is_lead_status("completed")
    assert config.next_status("completed").id == "lead_contact"


def test_checklist_and_automation_settings_parsing():
    templates = parse_checklist_templates(
        json.dumps([{"id": "scan", "label": "Skan", "associatedStage": "contract_signed", "allowAttachment": True}])
    )
    assert templates == (ChecklistTemplate("scan", "Skan", True, "contract_signed"),)

    rules = parse_automation_rules(json.dumps([{"checklist_item_id": "scan", "target_status": "deposit_paid"}]))
    assert rules == (AutomationRule("scan", "deposit_paid"),)
    assert parse_automation_rules("[]") == ()
    assert parse_automation_flags(json.dumps({"auto_advance_quote_sent": False})) == {"auto_advance_quote_sent": False}


def test_workflow_config_lookups():
    config = WorkflowConfig.build()
    assert config.next_status("measurement_scheduled").id == "measurement_done"
    assert config.next_status("completed") is None
    assert config.index_of("nope") == -1
    assert config.is_valid_status("before_measurement")
    assert not config.is_valid_status("bogus")
    assert config.required_documents("deposit_paid") == ("invoice_advance",)
    assert config.required_documents("completed") == ("invoice_final",)
    assert config.step_for_status("lead_samples_sent").automation_flag_id == "auto_advance_lead_active"
    assert config.is_lead_status("lead_payment_pending")
    assert not config.is_lead_status("measurement_to_schedule")
    assert config.is_automation_enabled("auto_advance_anything")


def test_workflow_config_is_immutable():
    config = WorkflowConfig.build(automation={"auto_advance_measurement_scheduled": False})
    assert not config.is_stage_automation_enabled("measurement_scheduled")
    with pytest.raises(TypeError):
        config.automation["auto_advance_measurement_scheduled"] = True
    with pytest.raises(AttributeError):
        config.statuses = ()
