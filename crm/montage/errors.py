from __future__ import annotations

from crm.core.i18n import translate


class MontageError(ValueError):
    code = "montage_error"
    message_key = ""

    def __init__(self, message: str | None = None, **params: object) -> None:
        self.params = params
        super().__init__(message or translate(self.message_key, **params))


class UnknownStatus(MontageError):
    code = "unknown_status"
    message_key = "error.unknown_status"

    def __init__(self, status: str) -> None:
        self.status = status
        super().__init__(status=status)


class MissingAssignment(MontageError):
    code = "missing_assignment"
    message_key = "error.missing_assignment"


class MissingDocument(MontageError):
    code = "missing_document"
    message_key = "error.missing_document"

    def __init__(self, doc_type: str) -> None:
        self.doc_type = doc_type
        label = translate(f"doc.{doc_type}")
        super().__init__(label=label if label != f"doc.{doc_type}" else doc_type)


class NotALead(MontageError):
    code = "not_a_lead"
    message_key = "error.not_a_lead"


class NoCustomerForPayment(MontageError):
    code = "no_customer_for_payment"
    message_key = "error.no_customer_for_payment"


class DuplicateTaxId(MontageError):
    code = "duplicate_tax_id"
    message_key = "error.duplicate_tax_id"


class MontageNotFound(MontageError):
    code = "montage_not_found"
    message_key = "error.montage_not_found"


class ChecklistItemNotFound(MontageError):
    code = "checklist_item_not_found"
    message_key = "error.checklist_item_not_found"


class MeasurementProductMissing(MontageError):
    code = "measurement_product_missing"
    message_key = "error.measurement_product_missing"


class TransitionLoopError(MontageError):
    code = "transition_loop"
    message_key = "error.transition_loop"

    def __init__(self, hops: int, path: list[str] | None = None) -> None:
        self.hops = hops
        self.path = list(path or [])
        super().__init__(hops=hops)
