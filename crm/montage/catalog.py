from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping

from crm.core.extensions import db
from crm.core.models import AppSetting
from crm.montage.gateways import log_audit

logger = logging.getLogger(__name__)

STATUSES_SETTING = "montage.statuses"
CHECKLIST_SETTING = "montage.checklist"
AUTOMATION_RULES_SETTING = "montage.automation"
AUTOMATION_FLAGS_SETTING = "montage.automation_settings"
SHOP_CONFIG_SETTING = "shop.config"

GROUP_LEAD = "lead"
GROUP_JOB = "job"
GROUP_SPECIAL = "special"

STATUS_NEW_LEAD = "new_lead"
STATUS_PAYMENT_PENDING = "lead_payment_pending"
STATUS_MEASUREMENT_TO_SCHEDULE = "measurement_to_schedule"
STATUS_MEASUREMENT_SCHEDULED = "measurement_scheduled"
STATUS_MEASUREMENT_DONE = "measurement_done"
STATUS_INSTALLATION_SCHEDULED = "installation_scheduled"
STATUS_COMPLETED = "completed"

SAMPLE_TEMPLATE_ID = "sample_verification"
CUSTOM_TEMPLATE_ID = "custom"


class LegacyStatus(str, Enum):
    LEAD = "lead"
    BEFORE_MEASUREMENT = "before_measurement"
    BEFORE_FIRST_PAYMENT = "before_first_payment"
    BEFORE_INSTALLATION = "before_installation"
    BEFORE_FINAL_INVOICE = "before_final_invoice"
    COMPLETED = "completed"


LEGACY_LABELS: dict[str, str] = {
    LegacyStatus.LEAD.value: "Lead",
    LegacyStatus.BEFORE_MEASUREMENT.value: "Przed pomiarem",
    LegacyStatus.BEFORE_FIRST_PAYMENT.value: "Przed pierwszą wpłatą",
    LegacyStatus.BEFORE_INSTALLATION.value: "Przed montażem",
    LegacyStatus.BEFORE_FINAL_INVOICE.value: "Przed fakturą końcową",
    LegacyStatus.COMPLETED.value: "Zakończony",
}

LEAD_PHASE_STATUSES = frozenset(
    {
        "new_lead",
        "lead_contact",
        "lead_payment_pending",
        "lead_samples_pending",
        "lead_samples_sent",
        "lead_pre_estimate",
        LegacyStatus.LEAD.value,
    }
)


@dataclass(frozen=True)
class StatusDefinition:
    id: str
    label: str
    description: str = ""
    order: int = 0
    group: str = GROUP_JOB


@dataclass(frozen=True)
class ProcessStep:
    id: str
    label: str
    related_statuses: tuple[str, ...]
    required_documents: tuple[str, ...] = ()
    actor: str = "office"

    @property
    def automation_flag_id(self) -> str:
        return f"auto_advance_{self.id}"


@dataclass(frozen=True)
class ChecklistTemplate:
    id: str
    label: str
    allow_attachment: bool = False
    associated_stage: str | None = None


@dataclass(frozen=True)
class AutomationRule:
    checklist_item_id: str
    target_status: str


DEFAULT_STATUSES: tuple[StatusDefinition, ...] = (
    StatusDefinition("new_lead", "Nowe Zgłoszenie", "Wpadło, nikt nie dzwonił.", 1, GROUP_LEAD),
    StatusDefinition("lead_contact", "Kontakt Nawiązany", "Rozmawialiśmy, ustalamy co dalej.", 2, GROUP_LEAD),
    StatusDefinition("lead_samples_pending", "Próbki do Wysłania", "Klient czeka na próbki.", 3, GROUP_LEAD),
    StatusDefinition("lead_samples_sent", "Próbki Wysłane", "Próbki w drodze do klienta.", 4, GROUP_LEAD),
    StatusDefinition("lead_pre_estimate", "Wstępna Wycena", "Szacunek przed pomiarem.", 5, GROUP_LEAD),
    StatusDefinition("lead_payment_pending", "Oczekiwanie na Płatność", "Wymagana opłata za pomiar.", 6, GROUP_LEAD),
    StatusDefinition("measurement_to_schedule", "Do umówienia", "Zlecono pomiar, montażysta dzwoni.", 7, GROUP_JOB),
    StatusDefinition("measurement_scheduled", "Pomiar Umówiony", "Jest data w kalendarzu.", 8, GROUP_JOB),
    StatusDefinition("measurement_done", "Po Pomiarze", "Montażysta był, ale brak wyceny.", 9, GROUP_JOB),
    StatusDefinition("quote_in_progress", "Wycena w Toku", "Liczymy, sprawdzamy dostępność.", 10, GROUP_JOB),
    StatusDefinition("quote_sent", "Oferta Wysłana", "Klient ma maila, czekamy.", 11, GROUP_JOB),
    StatusDefinition("quote_accepted", "Oferta Zaakceptowana", "Klient powiedział TAK, ale brak papierów.", 12, GROUP_JOB),
    StatusDefinition("contract_signed", "Umowa Podpisana", "Jest podpis na umowie.", 13, GROUP_JOB),
    StatusDefinition("waiting_for_deposit", "Oczekiwanie na Zaliczkę", "Faktura zaliczkowa wysłana.", 14, GROUP_JOB),
    StatusDefinition("deposit_paid", "Zaliczka Opłacona", "Kasa na koncie, startujemy.", 15, GROUP_JOB),
    StatusDefinition("materials_ordered", "Materiały Zamówione", "Poszło zamówienie do producenta.", 16, GROUP_JOB),
    StatusDefinition("materials_pickup_ready", "Gotowe do Odbioru", "Towar czeka w magazynie/hurtowni.", 17, GROUP_JOB),
    StatusDefinition("installation_scheduled", "Montaż Zaplanowany", "Ekipa ma termin startu.", 18, GROUP_JOB),
    StatusDefinition("materials_delivered", "Materiały u Klienta", "Towar dostarczony na budowę.", 19, GROUP_JOB),
    StatusDefinition("installation_in_progress", "Montaż w Toku", "Prace trwają.", 20, GROUP_JOB),
    StatusDefinition("protocol_signed", "Protokół Podpisany", "Koniec prac, odbiór techniczny.", 21, GROUP_JOB),
    StatusDefinition("final_invoice_issued", "Faktura Końcowa", "Wystawiona, wysłana.", 22, GROUP_JOB),
    StatusDefinition("final_settlement", "Rozliczenie Końcowe", "Czekamy na dopłatę.", 23, GROUP_JOB),
    StatusDefinition("completed", "Zakończone", "Wszystko na czysto, archiwum.", 24, GROUP_JOB),
    StatusDefinition("on_hold", "Wstrzymane", "Klient buduje dom, wróci za pół roku.", 25, GROUP_SPECIAL),
    StatusDefinition("rejected", "Odrzucone", "Za drogo / konkurencja.", 26, GROUP_SPECIAL),
    StatusDefinition("complaint", "Reklamacja", "Coś poszło nie tak po montażu.", 27, GROUP_SPECIAL),
)

DEFAULT_PROCESS_STEPS: tuple[ProcessStep, ...] = (
    ProcessStep("new_lead", "Nowe Zgłoszenie", ("new_lead",)),
    ProcessStep(
        "lead_active",
        "Proces Handlowy",
        ("lead_contact", "lead_samples_pending", "lead_samples_sent", "lead_pre_estimate"),
    ),
    ProcessStep("waiting_for_measurement_fee", "Oczekiwanie na Płatność", ("lead_payment_pending",), actor="client"),
    ProcessStep("measurement_to_schedule", "Do umówienia", ("measurement_to_schedule",), actor="installer"),
    ProcessStep("measurement_scheduled", "Pomiar Umówiony", ("measurement_scheduled",)),
    ProcessStep("measurement_done", "Po Pomiarze", ("measurement_done",), actor="installer"),
    ProcessStep("quote_in_progress", "Wycena w Toku", ("quote_in_progress",)),
    ProcessStep("quote_sent", "Oferta Wysłana", ("quote_sent",)),
    ProcessStep("quote_accepted", "Oferta Zaakceptowana", ("quote_accepted",), actor="client"),
    ProcessStep("contract_signed", "Umowa Podpisana", ("contract_signed",)),
    ProcessStep("waiting_for_deposit", "Oczekiwanie na Zaliczkę", ("waiting_for_deposit",)),
    ProcessStep("deposit_paid", "Zaliczka Opłacona", ("deposit_paid",), required_documents=("invoice_advance",)),
    ProcessStep("materials_ordered", "Materiały Zamówione", ("materials_ordered",)),
    ProcessStep("materials_pickup_ready", "Gotowe do Odbioru", ("materials_pickup_ready",)),
    ProcessStep("installation_scheduled", "Montaż Zaplanowany", ("installation_scheduled",)),
    ProcessStep("materials_delivered", "Materiały u Klienta", ("materials_delivered",)),
    ProcessStep("installation_in_progress", "Montaż w Toku", ("installation_in_progress",), actor="installer"),
    ProcessStep("protocol_signed", "Protokół Podpisany", ("protocol_signed",), actor="installer"),
    ProcessStep("final_invoice_issued", "Faktura Końcowa", ("final_invoice_issued",)),
    ProcessStep("final_settlement", "Rozliczenie Końcowe", ("final_settlement",)),
    ProcessStep("completed", "Zakończone", ("completed",), required_documents=("invoice_final",), actor="system"),
)

_DEFAULT_GROUPS: dict[str, str] = {status.id: status.group for status in DEFAULT_STATUSES}


def default_group(status_id: str) -> str:
    """Group for a saved status that does not name one."""
    if status_id in _DEFAULT_GROUPS:
        return _DEFAULT_GROUPS[status_id]
    return GROUP_LEAD if status_id in LEAD_PHASE_STATUSES else GROUP_JOB


DEFAULT_CHECKLIST_TEMPLATES: tuple[ChecklistTemplate, ...] = (
    ChecklistTemplate(SAMPLE_TEMPLATE_ID, "Weryfikacja próbek", associated_stage="lead_samples_sent"),
    ChecklistTemplate("measurement_protocol", "Protokół pomiarowy", True, "measurement_scheduled"),
    ChecklistTemplate("quote_prepared", "Przygotowana wycena", False, "quote_in_progress"),
    ChecklistTemplate("contract_scan", "Skan umowy", True, "contract_signed"),
    ChecklistTemplate("advance_invoice", "Faktura zaliczkowa", True, "waiting_for_deposit"),
    ChecklistTemplate("installation_protocol", "Protokół odbioru", True, "installation_in_progress"),
    ChecklistTemplate("final_invoice", "Faktura końcowa", True, "final_invoice_issued"),
)


@dataclass(frozen=True)
class WorkflowConfig:
    """Immutable snapshot of the workflow configuration.

    Built once per user action and handed to the transition engine, so a
    single operation never sees two different catalogues.
    """

    statuses: tuple[StatusDefinition, ...]
    steps: tuple[ProcessStep, ...] = DEFAULT_PROCESS_STEPS
    templates: tuple[ChecklistTemplate, ...] = DEFAULT_CHECKLIST_TEMPLATES
    rules: tuple[AutomationRule, ...] = ()
    automation: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))
    _positions: Mapping[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "statuses", tuple(self.statuses))
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "templates", tuple(self.templates))
        object.__setattr__(self, "rules", tuple(self.rules))
        object.__setattr__(self, "automation", MappingProxyType(dict(self.automation)))
        positions: dict[str, int] = {}
        for index, status in enumerate(self.statuses):
            positions.setdefault(status.id, index)
        object.__setattr__(self, "_positions", MappingProxyType(positions))

    @classmethod
    def build(
        cls,
        statuses: Iterable[StatusDefinition] | None = None,
        steps: Iterable[ProcessStep] | None = None,
        templates: Iterable[ChecklistTemplate] | None = None,
        rules: Iterable[AutomationRule] = (),
        automation: Mapping[str, bool] | None = None,
    ) -> WorkflowConfig:
        return cls(
            statuses=tuple(statuses) if statuses is not None else DEFAULT_STATUSES,
            steps=tuple(steps) if steps is not None else DEFAULT_PROCESS_STEPS,
            templates=tuple(templates) if templates is not None else DEFAULT_CHECKLIST_TEMPLATES,
            rules=tuple(rules),
            automation=dict(automation or {}),
        )

    def status(self, status_id: str) -> StatusDefinition | None:
        index = self.index_of(status_id)
        return self.statuses[index] if index >= 0 else None

    def index_of(self, status_id: str | None) -> int:
        if status_id is None:
            return -1
        return self._positions.get(status_id, -1)

    def next_status(self, status_id: str) -> StatusDefinition | None:
        index = self.index_of(status_id)
        if index < 0:
            return None
        for candidate in self.statuses[index + 1 :]:
            if candidate.group != GROUP_SPECIAL:
                return candidate
        return None

    def label_for(self, status_id: str) -> str:
        status = self.status(status_id)
        if status:
            return status.label
        return LEGACY_LABELS.get(status_id, status_id)

    def is_valid_status(self, status_id: str | None) -> bool:
        if not status_id:
            return False
        return self.index_of(status_id) >= 0 or status_id in LEGACY_LABELS

    def is_lead_status(self, status_id: str | None) -> bool:
        return bool(status_id) and status_id in LEAD_PHASE_STATUSES

    def step_for_status(self, status_id: str) -> ProcessStep | None:
        for step in self.steps:
            if status_id in step.related_statuses:
                return step
        return None

    def required_documents(self, status_id: str) -> tuple[str, ...]:
        step = self.step_for_status(status_id)
        return step.required_documents if step else ()

    def template(self, template_id: str | None) -> ChecklistTemplate | None:
        if not template_id:
            return None
        for template in self.templates:
            if template.id == template_id:
                return template
        return None

    def templates_for_stage(self, stage: str) -> set[str]:
        return {template.id for template in self.templates if template.associated_stage == stage}

    def rule_for_template(self, template_id: str | None) -> AutomationRule | None:
        if not template_id:
            return None
        for rule in self.rules:
            if rule.checklist_item_id == template_id:
                return rule
        return None

    def is_automation_enabled(self, flag_id: str | None) -> bool:
        if flag_id is None:
            return True
        return bool(self.automation.get(flag_id, True))

    def is_stage_automation_enabled(self, stage: str) -> bool:
        step = self.step_for_status(stage)
        return self.is_automation_enabled(step.automation_flag_id if step else None)


def _load_json(key: str, raw: str | None):
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Setting %s holds invalid JSON, using defaults", key)
        return None


def parse_status_catalog(raw: str | None) -> tuple[StatusDefinition, ...]:
    data = _load_json(STATUSES_SETTING, raw)
    if not isinstance(data, list):
        return DEFAULT_STATUSES

    parsed: list[StatusDefinition] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        if not all(isinstance(item.get(key), str) for key in ("id", "label", "description")):
            continue
        order = item.get("order")
        group = item.get("group")
        parsed.append(
            StatusDefinition(
                id=item["id"],
                label=item["label"],
                description=item["description"],
                order=int(order) if isinstance(order, (int, float)) and not isinstance(order, bool) else 0,
                group=group if isinstance(group, str) and group else default_group(item["id"]),
            )
        )
    if not parsed:
        return DEFAULT_STATUSES
    return tuple(sorted(parsed, key=lambda status: status.order))


def parse_checklist_templates(raw: str | None) -> tuple[ChecklistTemplate, ...]:
    data = _load_json(CHECKLIST_SETTING, raw)
    if not isinstance(data, list):
        return DEFAULT_CHECKLIST_TEMPLATES

    parsed: list[ChecklistTemplate] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        template_id = item.get("id")
        label = item.get("label")
        if not isinstance(template_id, str) or not isinstance(label, str) or not label.strip():
            continue
        stage = item.get("associated_stage", item.get("associatedStage"))
        parsed.append(
            ChecklistTemplate(
                id=template_id,
                label=label.strip(),
                allow_attachment=bool(item.get("allow_attachment", item.get("allowAttachment", False))),
                associated_stage=stage if isinstance(stage, str) and stage else None,
            )
        )
    return tuple(parsed) if parsed else DEFAULT_CHECKLIST_TEMPLATES


def parse_automation_rules(raw: str | None) -> tuple[AutomationRule, ...]:
    data = _load_json(AUTOMATION_RULES_SETTING, raw)
    if not isinstance(data, list):
        return ()
    rules = []
    for item in data:
        if not isinstance(item, dict):
            continue
        item_id = item.get("checklist_item_id", item.get("checklistItemId"))
        target = item.get("target_status", item.get("targetStatus"))
        if isinstance(item_id, str) and isinstance(target, str) and item_id and target:
            rules.append(AutomationRule(item_id, target))
    return tuple(rules)


def parse_automation_flags(raw: str | None) -> dict[str, bool]:
    data = _load_json(AUTOMATION_FLAGS_SETTING, raw)
    if not isinstance(data, dict):
        return {}
    return {str(key): bool(value) for key, value in data.items()}


def read_settings(keys: Iterable[str]) -> dict[str, str]:
    rows = AppSetting.query.filter(AppSetting.key.in_(list(keys))).all()
    return {row.key: row.value for row in rows}


def load_workflow_config() -> WorkflowConfig:
    values = read_settings(
        [STATUSES_SETTING, CHECKLIST_SETTING, AUTOMATION_RULES_SETTING, AUTOMATION_FLAGS_SETTING]
    )
    return WorkflowConfig(
        statuses=parse_status_catalog(values.get(STATUSES_SETTING)),
        steps=DEFAULT_PROCESS_STEPS,
        templates=parse_checklist_templates(values.get(CHECKLIST_SETTING)),
        rules=parse_automation_rules(values.get(AUTOMATION_RULES_SETTING)),
        automation=parse_automation_flags(values.get(AUTOMATION_FLAGS_SETTING)),
    )


def shop_config() -> dict:
    data = _load_json(SHOP_CONFIG_SETTING, read_settings([SHOP_CONFIG_SETTING]).get(SHOP_CONFIG_SETTING))
    return data if isinstance(data, dict) else {}


def _write_setting(key: str, value: str, user_id: int | None) -> None:
    setting = db.session.get(AppSetting, key)
    if setting is None:
        setting = AppSetting(key=key, value=value, updated_by_id=user_id)
    else:
        setting.value = value
        setting.updated_by_id = user_id
    db.session.add(setting)


def save_status_catalog(statuses: list[dict], user_id: int | None) -> tuple[StatusDefinition, ...]:
    sanitized: list[dict] = []
    for index, item in enumerate(statuses or []):
        if not isinstance(item, dict):
            continue
        label = str(item.get("label") or "").strip()
        if not label:
            continue
        status_id = str(item.get("id") or "").strip()
        if not status_id:
            raise ValueError(f"Status \"{label}\" nie ma identyfikatora")
        sanitized.append(
            {
                "id": status_id,
                "label": label,
                "description": str(item.get("description") or "").strip(),
                "order": index + 1,
                "group": str(item.get("group") or "").strip() or default_group(status_id),
            }
        )
    if not sanitized:
        raise ValueError("Lista statusów nie może być pusta")

    _write_setting(STATUSES_SETTING, json.dumps(sanitized, ensure_ascii=False), user_id)
    log_audit("update_montage_statuses", f"Zaktualizowano listę statusów ({len(sanitized)})", user_id)
    db.session.commit()
    return parse_status_catalog(json.dumps(sanitized))
