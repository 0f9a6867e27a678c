from __future__ import annotations

import sys
from itertools import count
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from crm import create_app
from crm.core.config import Config
from crm.core.extensions import db
from crm.core.models import Montage, MontageChecklistItem, User, seed_demo_data
from crm.montage.catalog import GROUP_JOB, LegacyStatus, StatusDefinition, WorkflowConfig
from crm.montage.gateways import CalendarGateway, Gateways, NotificationGateway


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    MAX_TRANSITION_HOPS = 8


class RecordingCalendar(CalendarGateway):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.upserts: list[dict] = []
        self.deletes: list[str] = []

    def upsert_event(self, event_id, owner_id, title, start, end=None, location=None):
        if self.fail:
            raise RuntimeError("calendar offline")
        self.upserts.append({"event_id": event_id, "owner_id": owner_id, "title": title, "start": start})
        return event_id or f"evt-{len(self.upserts)}"

    def delete_event(self, event_id, owner_id):
        self.deletes.append(event_id)


class RecordingNotifications(NotificationGateway):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str | None, dict]] = []

    def send(self, template_id, recipient, variables):
        self.sent.append((template_id, recipient, variables))


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        seed_demo_data(db.session)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login_admin(client):
    def _login():
        return client.post("/auth/login", json={"email": "admin@montaze.local", "password": "admin123"})

    return _login


@pytest.fixture
def login_office(client):
    def _login():
        return client.post("/auth/login", json={"email": "biuro@montaze.local", "password": "biuro123"})

    return _login


@pytest.fixture
def users(app):
    return {user.role: user for user in User.query.all()}


@pytest.fixture
def make_montage(app):
    sequence = count(100)

    def _make(status: str = "new_lead", checklist: list[tuple[str, bool]] | None = None, **fields) -> int:
        montage = Montage(
            display_id=f"T/{next(sequence):04d}",
            client_name=fields.pop("client_name", "Test Klient"),
            status=status,
            **fields,
        )
        db.session.add(montage)
        db.session.flush()
        for index, (template_id, completed) in enumerate(checklist or []):
            db.session.add(
                MontageChecklistItem(
                    montage_id=montage.id,
                    template_id=template_id,
                    label=template_id,
                    completed=completed,
                    order_index=index,
                )
            )
        db.session.commit()
        return montage.id

    return _make


@pytest.fixture
def find_item(app):
    def _find(montage_id: int, template_id: str) -> MontageChecklistItem:
        return MontageChecklistItem.query.filter_by(montage_id=montage_id, template_id=template_id).one()

    return _find


@pytest.fixture
def legacy_statuses():
    return [
        StatusDefinition(status.value, status.value, "", index + 1, GROUP_JOB)
        for index, status in enumerate(LegacyStatus)
    ]


@pytest.fixture
def recording_gateways():
    return Gateways(calendar=RecordingCalendar(), notifications=RecordingNotifications())


@pytest.fixture
def default_config():
    return WorkflowConfig.build()
