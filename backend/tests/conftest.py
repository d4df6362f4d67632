"""
Shared fixtures: an in-memory SQLite database, a recording email transport,
campaign factories and staff tokens.
"""
import asyncio
from datetime import timedelta
from typing import Callable, Iterable, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import mailroom.models  # noqa: F401
from mailroom.lib.config_flags import EngineConfig, reset_engine_config, set_engine_config
from mailroom.lib.db import Base
from mailroom.lib.jwt import create_staff_token
from mailroom.lib.metrics import reset_metrics
from mailroom.models.campaigns import Campaign, CampaignStatus, CampaignType
from mailroom.services import recipient_service
from mailroom.services.email_transport import EmailMessage, EmailTransport, SendResult


class FakeTransport(EmailTransport):
    """Records every message; fails or stalls for chosen addresses."""

    def __init__(
        self,
        fail_for: Iterable[str] = (),
        raise_for: Iterable[str] = (),
        delay_for: Iterable[str] = (),
        delay: float = 0.0,
        on_send: Optional[Callable[[EmailMessage], None]] = None,
    ):
        self.sent: list[EmailMessage] = []
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.delay_for = set(delay_for)
        self.delay = delay
        self.on_send = on_send

    @property
    def name(self) -> str:
        return "fake"

    @property
    def recipients(self) -> list[str]:
        return [m.to_email for m in self.sent]

    async def send(self, message: EmailMessage) -> SendResult:
        if self.on_send:
            self.on_send(message)
        if message.to_email in self.delay_for:
            await asyncio.sleep(self.delay)
        if message.to_email in self.raise_for:
            raise RuntimeError("connection reset by peer")
        self.sent.append(message)
        if message.to_email in self.fail_for:
            return SendResult(success=False, error="Mailbox unavailable")
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}")


@pytest.fixture(autouse=True)
def reset_state():
    reset_metrics()
    reset_engine_config()
    yield
    reset_metrics()
    reset_engine_config()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(db_engine):
    Session = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def engine_config() -> EngineConfig:
    config = EngineConfig(
        chunk_size=200,
        time_budget_seconds=50,
        stall_threshold_hours=2,
        lease_ttl_seconds=120,
        recipient_send_timeout_seconds=5,
        ab_min_sample_size=2,
        max_recipients=10_000,
    )
    set_engine_config(config)
    return config


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


def emails(count: int, prefix: str = "user") -> list[str]:
    return [f"{prefix}{i:04d}@example.com" for i in range(count)]


@pytest.fixture
def make_campaign(db):
    """
    Insert a campaign directly in ``status`` with the given recipient addresses.
    """

    def factory(
        recipients: Iterable[str] = (),
        status: CampaignStatus = CampaignStatus.DRAFT,
        campaign_type: CampaignType = CampaignType.PROMOTIONAL,
        html_content: Optional[str] = "<p>Hello {{ params.firstName }}</p>",
        template_id: Optional[int] = None,
        **fields,
    ) -> Campaign:
        campaign = Campaign(
            name=fields.pop("name", "Spring promo"),
            subject=fields.pop("subject", "Spring boxes are here"),
            campaign_type=campaign_type,
            status=status,
            html_content=html_content,
            template_id=template_id,
            params=fields.pop("params", {"season": "spring"}),
            target_filter=fields.pop("target_filter", {}),
            created_by=fields.pop("created_by", "staff-1"),
            **fields,
        )
        db.add(campaign)
        db.flush()
        count = recipient_service.add_recipients(
            db,
            campaign.id,
            [recipient_service.RecipientInput(email=e, full_name=None, params={}) for e in recipients],
        )
        campaign.total_recipients = count
        db.commit()
        return campaign

    return factory


def staff_headers(roles: Iterable[str] = ("marketing",), user_id: str = "staff-1") -> dict:
    token = create_staff_token(user_id, roles, expires_delta=timedelta(minutes=10))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db, transport):
    """TestClient bound to the test database and the recording transport."""
    from fastapi.testclient import TestClient

    from mailroom.api.app import app
    from mailroom.api.dependencies import get_db, get_transport

    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_transport] = lambda: transport
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
