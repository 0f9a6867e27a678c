from __future__ import annotations

from flask import current_app, has_app_context, has_request_context, session

SUPPORTED_LANGS = {"pl", "en"}

I18N: dict[str, dict[str, str]] = {
    "error.unknown_status": {
        "pl": "Nieznany status montażu: {status}",
        "en": "Unknown montage status: {status}",
    },
    "error.missing_assignment": {
        "pl": "Aby skierować do pomiaru, musisz przypisać montażystę lub pomiarowca.",
        "en": "Assign an installer or a measurer before scheduling the measurement.",
    },
    "error.missing_document": {
        "pl": "Wymagany dokument: {label} nie został wgrany.",
        "en": "Required document {label} has not been uploaded.",
    },
    "error.not_a_lead": {
        "pl": "Tylko leady mogą być przekazywane do pomiaru.",
        "en": "Only leads can be handed over for measurement.",
    },
    "error.no_customer_for_payment": {
        "pl": "Montaż musi mieć przypisanego klienta, aby wystawić płatność.",
        "en": "The montage needs a customer before a payment can be requested.",
    },
    "error.duplicate_tax_id": {
        "pl": "Podany NIP jest już przypisany do innego klienta.",
        "en": "This tax id already belongs to another customer.",
    },
    "error.montage_not_found": {
        "pl": "Nie znaleziono montażu.",
        "en": "Montage not found.",
    },
    "error.checklist_item_not_found": {
        "pl": "Nie znaleziono elementu listy kontrolnej.",
        "en": "Checklist item not found.",
    },
    "error.measurement_product_missing": {
        "pl": "Brak skonfigurowanego produktu \"Usługa Pomiaru\" w ustawieniach sklepu.",
        "en": "No measurement service product is configured in the shop settings.",
    },
    "error.transition_loop": {
        "pl": "Przerwano automatyczne zmiany statusu po {hops} krokach.",
        "en": "Automatic status changes stopped after {hops} hops.",
    },
    "doc.proforma": {"pl": "Faktura Proforma", "en": "Proforma invoice"},
    "doc.invoice_advance": {"pl": "Faktura Zaliczkowa", "en": "Advance invoice"},
    "doc.invoice_final": {"pl": "Faktura Końcowa", "en": "Final invoice"},
    "checklist.done": {"pl": "Wykonane", "en": "Done"},
    "checklist.todo": {"pl": "Do zrobienia", "en": "To do"},
}


def get_locale() -> str:
    default = current_app.config.get("DEFAULT_LANG", "pl") if has_app_context() else "pl"
    if not has_request_context():
        return default if default in SUPPORTED_LANGS else "pl"
    lang = session.get("lang", default)
    if lang not in SUPPORTED_LANGS:
        return "pl"
    return lang


def translate(key: str, **params: object) -> str:
    lang = get_locale()
    template = I18N.get(key, {}).get(lang, key)
    return template.format(**params) if params else template
