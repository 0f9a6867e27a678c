from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from crm.core.extensions import db
from crm.core.i18n import translate
from crm.core.models import Montage, MontageChecklistItem, SampleStatus, utcnow
from crm.montage.catalog import (
    SAMPLE_TEMPLATE_ID,
    STATUS_COMPLETED,
    STATUS_MEASUREMENT_DONE,
    STATUS_MEASUREMENT_SCHEDULED,
    STATUS_NEW_LEAD,
    WorkflowConfig,
)
from crm.montage.errors import (
    ChecklistItemNotFound,
    MissingAssignment,
    MissingDocument,
    MontageError,
    MontageNotFound,
    TransitionLoopError,
    UnknownStatus,
)
from crm.montage.gateways import Gateways
from crm.montage.settlements import CommissionDraft, LineItem, ensure_commissions, ensure_measurement_fee

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOPS = 8

HOP_ADVANCE = "advance"
HOP_ROLLBACK = "rollback"
HOP_RULE = "rule"


@dataclass
class TransitionOutcome:
    montage_id: int
    previous_status: str
    status: str
    completed_at: datetime | None = None
    settlement_line: LineItem | None = None
    commissions: list[CommissionDraft] = field(default_factory=list)


@dataclass(frozen=True)
class QueuedHop:
    target_status: str
    kind: str = HOP_ADVANCE


@dataclass
class BlockedTransition:
    target_status: str
    code: str
    message: str


@dataclass
class ToggleOutcome:
    item_id: int
    completed: bool
    transitions: list[TransitionOutcome] = field(default_factory=list)
    blocked: list[BlockedTransition] = field(default_factory=list)

    @property
    def final_status(self) -> str | None:
        return self.transitions[-1].status if self.transitions else None


class TransitionEngine:
    """Applies status changes to a montage.

    Every change goes through the same gates (catalogue membership, personnel,
    required documents). Checklist-driven changes are queued and drained by a
    single bounded loop, so a misconfigured stage graph cannot recurse.
    """

    def __init__(
        self,
        config: WorkflowConfig,
        gateways: Gateways | None = None,
        actor_id: int | None = None,
        max_hops: int = DEFAULT_MAX_HOPS,
    ) -> None:
        self.config = config
        self.gateways = gateways or Gateways()
        self.actor_id = actor_id
        self.max_hops = max_hops

    def montage(self, montage_id: int) -> Montage:
        montage = db.session.get(Montage, montage_id)
        if not montage:
            raise MontageNotFound()
        return montage

    def check_gates(self, montage: Montage, target_status: str) -> None:
        if not self.config.is_valid_status(target_status):
            raise UnknownStatus(target_status)

        if (
            montage.status == STATUS_NEW_LEAD
            and target_status == STATUS_MEASUREMENT_SCHEDULED
            and not montage.installer_id
            and not montage.measurer_id
        ):
            raise MissingAssignment()

        required = self.config.required_documents(target_status)
        if required:
            uploaded = {ref.type for ref in self.gateways.attachments(montage.id)}
            for doc_type in required:
                if doc_type not in uploaded:
                    raise MissingDocument(doc_type)

    def transition(self, montage_id: int, target_status: str) -> TransitionOutcome:
        montage = self.montage(montage_id)
        self.check_gates(montage, target_status)
        return self.apply(montage, target_status)

    def apply(
        self,
        montage: Montage,
        target_status: str,
        audit_action: str = "update_montage_status",
        audit_details: str | None = None,
    ) -> TransitionOutcome:
        """Persist a status whose gates already passed, then run its side effects."""
        previous = montage.status
        montage.status = target_status
        montage.completed_at = utcnow() if target_status == STATUS_COMPLETED else None
        db.session.add(montage)
        db.session.commit()

        outcome = TransitionOutcome(
            montage_id=montage.id,
            previous_status=previous,
            status=target_status,
            completed_at=montage.completed_at,
        )
        if target_status == STATUS_MEASUREMENT_DONE:
            outcome.settlement_line = self._record_measurement_fee(montage)
        if target_status == STATUS_COMPLETED:
            outcome.commissions = self._record_commissions(montage)

        label = self.config.label_for(target_status)
        self.gateways.audit(
            audit_action,
            audit_details or f"Zmieniono status montażu {montage.label} na \"{label}\"",
            self.actor_id,
            montage.id,
        )
        db.session.commit()
        logger.info("Montage %s moved %s -> %s", montage.id, previous, target_status)
        return outcome

    def _record_measurement_fee(self, montage: Montage) -> LineItem | None:
        try:
            rate = self.gateways.rates(montage.measurer_id).measurement_rate
            return ensure_measurement_fee(montage, rate, self.actor_id)
        except Exception:
            logger.exception("Measurement settlement failed for montage %s", montage.id)
            db.session.rollback()
            return None

    def _record_commissions(self, montage: Montage) -> list[CommissionDraft]:
        try:
            return ensure_commissions(montage, self.gateways.rates, self.actor_id)
        except Exception:
            logger.exception("Commission calculation failed for montage %s", montage.id)
            db.session.rollback()
            return []

    def toggle_checklist_item(self, montage_id: int, item_id: int, completed: bool) -> ToggleOutcome:
        montage = self.montage(montage_id)
        item = MontageChecklistItem.query.filter_by(id=item_id, montage_id=montage.id).first()
        if not item:
            raise ChecklistItemNotFound()

        item.completed = completed
        db.session.add(item)
        state_label = translate("checklist.done") if completed else translate("checklist.todo")
        self.gateways.audit(
            "checklist_completed" if completed else "checklist_uncompleted",
            f"Zmieniono status elementu \"{item.label or 'Element listy'}\" na: {state_label}",
            self.actor_id,
            montage.id,
        )

        if item.template_id == SAMPLE_TEMPLATE_ID and montage.sample_status != SampleStatus.NONE:
            montage.sample_status = SampleStatus.DELIVERED if completed else SampleStatus.SENT
            db.session.add(montage)
        db.session.commit()

        queue = self._hops_for_toggle(montage, item, completed)
        outcome = ToggleOutcome(item_id=item.id, completed=completed)
        self.drain(montage, queue, outcome)
        return outcome

    def _hops_for_toggle(self, montage: Montage, item: MontageChecklistItem, completed: bool) -> list[QueuedHop]:
        hops: list[QueuedHop] = []
        template = self.config.template(item.template_id)
        stage = template.associated_stage if template else None

        if stage and completed:
            if montage.status == stage and self._stage_ready_to_advance(montage, stage):
                next_status = self.config.next_status(stage)
                if next_status:
                    hops.append(QueuedHop(next_status.id, HOP_ADVANCE))
        elif stage:
            stage_index = self.config.index_of(stage)
            if stage_index >= 0 and self.config.index_of(montage.status) > stage_index:
                hops.append(QueuedHop(stage, HOP_ROLLBACK))

        if completed:
            rule = self.config.rule_for_template(item.template_id)
            if rule:
                hops.append(QueuedHop(rule.target_status, HOP_RULE))
        return hops

    def _stage_ready_to_advance(self, montage: Montage, stage: str) -> bool:
        if stage == STATUS_NEW_LEAD or not self.config.is_stage_automation_enabled(stage):
            return False
        bound = self.config.templates_for_stage(stage)
        items = [item for item in montage.checklist_items if item.template_id in bound]
        return bool(items) and all(item.completed for item in items)

    def drain(self, montage: Montage, queue: list[QueuedHop], outcome: ToggleOutcome) -> ToggleOutcome:
        pending = list(queue)
        visited = {montage.status}
        path = [montage.status]
        hops = 0
        while pending:
            hop = pending.pop(0)
            if hop.target_status == montage.status:
                continue
            if hops >= self.max_hops or hop.target_status in visited:
                path.append(hop.target_status)
                logger.error("Automatic transitions for montage %s stopped: %s", montage.id, " -> ".join(path))
                self._record_blocked(montage, hop, TransitionLoopError(hops, path), outcome)
                break

            try:
                self.check_gates(montage, hop.target_status)
            except MontageError as exc:
                self._record_blocked(montage, hop, exc, outcome)
                continue

            label = self.config.label_for(hop.target_status)
            details = None
            if hop.kind == HOP_ROLLBACK:
                details = f"Cofnięto status do \"{label}\" z powodu odznaczenia elementu listy."
            transition = self.apply(
                montage,
                hop.target_status,
                audit_action="rollback_montage_status" if hop.kind == HOP_ROLLBACK else "update_montage_status",
                audit_details=details,
            )
            outcome.transitions.append(transition)
            hops += 1
            visited.add(hop.target_status)
            path.append(hop.target_status)

            if hop.kind != HOP_ROLLBACK and self._stage_ready_to_advance(montage, hop.target_status):
                next_status = self.config.next_status(hop.target_status)
                if next_status:
                    pending.append(QueuedHop(next_status.id, HOP_ADVANCE))
        return outcome

    def _record_blocked(self, montage: Montage, hop: QueuedHop, exc: MontageError, outcome: ToggleOutcome) -> None:
        outcome.blocked.append(BlockedTransition(hop.target_status, exc.code, str(exc)))
        self.gateways.audit(
            "auto_transition_blocked",
            f"Automatyczna zmiana statusu na \"{self.config.label_for(hop.target_status)}\" zablokowana: {exc}",
            self.actor_id,
            montage.id,
        )
        db.session.commit()
        logger.warning("Automatic transition of montage %s to %s blocked: %s", montage.id, hop.target_status, exc)
