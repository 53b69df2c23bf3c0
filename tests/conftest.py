import pytest
import os
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import fieldflow.models  # noqa: F401
from fieldflow.core.clock import utcnow
from fieldflow.core.config import settings
from fieldflow.core.deps import get_action_services, get_db, get_event_bus
from fieldflow.core.security import create_access_token
from fieldflow.db.base import Base
from fieldflow.main import app
from fieldflow.models.appointment import Appointment
from fieldflow.models.contact import Contact
from fieldflow.models.location import Location
from fieldflow.models.project import Project
from fieldflow.models.quote import Quote
from fieldflow.models.user import User
from fieldflow.services.automation_actions import ActionServices
from fieldflow.services.automation_bus import AutomationEventBus
from fieldflow.services.crm_client import CrmClientFactory
from fieldflow.services.messaging_provider import MessageSendRequest, MessageSendResult, StubSmsProvider
from fieldflow.services.weather_provider import WeatherReport, severity_for


class FakePublisher:
    def __init__(self):
        self.published: list[tuple[str, str, dict[str, Any]]] = []

    def publish(self, channel: str, name: str, data: dict[str, Any]) -> bool:
        self.published.append((channel, name, data))
        return True

    def names(self, channel: str | None = None) -> list[str]:
        return [name for item_channel, name, _ in self.published if channel is None or item_channel == channel]


class FakeMessagingProvider:
    name = "fake"

    def __init__(self):
        self.sent: list[MessageSendRequest] = []
        self.fail_with: Exception | None = None

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(request)
        return MessageSendResult(provider=self.name, message_id=f"fake-{len(self.sent)}", status="sent")


class FakeWeather:
    def __init__(self, condition_code: int = 800, wind_speed: float | None = 5.0):
        self.condition_code = condition_code
        self.wind_speed = wind_speed
        self.queries: list[str] = []

    def current(self, *, location_query: str) -> WeatherReport:
        self.queries.append(location_query)
        return WeatherReport(
            condition="Thunderstorm" if self.condition_code // 100 == 2 else "Clear",
            description="test conditions",
            condition_code=self.condition_code,
            temperature=71.0,
            wind_speed=self.wind_speed,
            severity=severity_for(self.condition_code, self.wind_speed),
        )


@dataclass
class CrmRecorder:
    requests: list[httpx.Request] = field(default_factory=list)
    status_code: int = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"message": "crm rejected"})
        return httpx.Response(200, json={"id": "crm-ok"})


@dataclass
class SeededLocation:
    location_id: str
    owner_id: str
    staff_id: str
    tech_id: str
    contact_id: str
    project_id: str
    quote_id: str
    appointment_id: str


@pytest.fixture()
def session_local():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_local):
    session = session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture()
def messaging() -> FakeMessagingProvider:
    return FakeMessagingProvider()


@pytest.fixture()
def weather() -> FakeWeather:
    return FakeWeather()


@pytest.fixture()
def crm() -> CrmRecorder:
    return CrmRecorder()


@pytest.fixture()
def services(publisher, messaging, weather, crm) -> ActionServices:
    return ActionServices(
        messaging={messaging.name: messaging, "sms_stub": StubSmsProvider()},
        crm=CrmClientFactory(transport=httpx.MockTransport(crm.handler)),
        realtime=publisher,
        weather=weather,
        default_messaging_provider=messaging.name,
    )


@pytest.fixture()
def bus(session_local) -> AutomationEventBus:
    return AutomationEventBus(session_local)


def seed_location(session_local, *, timezone_name: str = "America/Chicago") -> SeededLocation:
    ids = {key: str(uuid.uuid4()) for key in SeededLocation.__dataclass_fields__}
    now = utcnow()
    with session_local() as session:
        session.add(
            Location(
                id=ids["location_id"],
                name="Lone Star Roofing",
                timezone=timezone_name,
                crm_location_id=f"crm-loc-{ids['location_id'][:8]}",
                crm_access_token="crm-token",
                is_active=True,
            )
        )
        session.flush()
        for key, role, name in (
            ("owner_id", "owner", "Olivia Owner"),
            ("staff_id", "staff", "Sam Staff"),
            ("tech_id", "staff", "Terry Tech"),
        ):
            session.add(
                User(
                    id=ids[key],
                    location_id=ids["location_id"],
                    email=f"{key}-{ids[key][:6]}@example.com",
                    full_name=name,
                    role=role,
                    crm_user_id=f"crm-{key}",
                    is_active=True,
                )
            )
        session.flush()
        session.add(
            Contact(
                id=ids["contact_id"],
                location_id=ids["location_id"],
                crm_contact_id="crm-contact-1",
                first_name="Dana",
                last_name="Customer",
                email="dana@example.com",
                phone="+15125550100",
                city="Austin",
                state="TX",
                postal_code="78701",
                tags_json=["lead"],
                assigned_user_id=ids["tech_id"],
            )
        )
        session.flush()
        session.add(
            Project(
                id=ids["project_id"],
                location_id=ids["location_id"],
                contact_id=ids["contact_id"],
                title="Roof replacement",
                status="open",
                pipeline_id="pipe-main",
                pipeline_stage_id="stage-new",
                stage_entered_at=now - timedelta(days=2),
                crm_opportunity_id="opp-1",
                assigned_user_id=ids["tech_id"],
                monetary_value=4200.0,
            )
        )
        session.flush()
        session.add(
            Quote(
                id=ids["quote_id"],
                location_id=ids["location_id"],
                project_id=ids["project_id"],
                contact_id=ids["contact_id"],
                quote_number="Q-1001",
                title="Roof replacement quote",
                status="sent",
                total=4200.0,
                deposit_required=True,
                deposit_amount=1000.0,
                sent_at=now - timedelta(days=1),
            )
        )
        session.add(
            Appointment(
                id=ids["appointment_id"],
                location_id=ids["location_id"],
                contact_id=ids["contact_id"],
                project_id=ids["project_id"],
                calendar_id="cal-1",
                crm_appointment_id="evt-1",
                title="Roof inspection",
                status="scheduled",
                start_time=now + timedelta(days=3),
                end_time=now + timedelta(days=3, hours=1),
                assigned_user_id=ids["tech_id"],
            )
        )
        session.commit()
    return SeededLocation(**ids)


@pytest.fixture()
def seeded(session_local) -> SeededLocation:
    return seed_location(session_local)


def auth_headers(user_id: str, location_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, location_id)}"}


@pytest.fixture()
def test_context(session_local, bus, services):
    original_secret = settings.secret_key
    original_cron_secret = settings.cron_secret
    settings.secret_key = "test-secret-key"
    settings.cron_secret = "test-cron-secret-value"

    def override_get_db():
        session = session_local()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_action_services] = lambda: services

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    settings.secret_key = original_secret
    settings.cron_secret = original_cron_secret


def make_rule(session_local, location_id: str, **kwargs):
    from fieldflow.services.automation_rules import create_rule

    created_at = kwargs.pop("created_at", None)
    kwargs.setdefault("name", f"Rule {uuid.uuid4().hex[:6]}")
    kwargs.setdefault("trigger_type", "quote-event")
    kwargs.setdefault("actions", [{"type": "update-realtime-channel", "config_json": {"event": "ping"}}])
    with session_local() as session:
        rule = create_rule(session, location_id=location_id, actor_user_id=None, **kwargs)
        if created_at is not None:
            rule.created_at = created_at
        session.commit()
        return rule.id
