"""
E2E test fixtures for the Quoteflow backend.

Provides:
- A per-test SQLite database file (aiosqlite) with the full schema
- Seed data: one tenant with contractor settings, two clients, proposals in
  several states and magic links (live, expired, revoked)
- An in-process FastAPI app wired to that database through
  ``app.dependency_overrides``, driven with httpx ``AsyncClient`` over
  ``ASGITransport`` (no network)
- A fake Stripe PaymentIntent store patched in at the integration boundary

The route -> service -> database path is exercised for real; only Stripe
and the OTP code generator are replaced, plus the document generator where a
test asks for the ``documents`` recorder.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, func, select
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

from quoteflow.core.cache import InMemoryCache
from quoteflow.core.config import settings
from quoteflow.integrations.stripe import clear_processed_events, paymentService
from quoteflow.integrations.stripe.paymentService import (
    PaymentError,
    PaymentIntentResult,
    PaymentIntentSnapshot,
)
from quoteflow.models import (
    Base,
    Client,
    ContractorSettings,
    Job,
    MagicLink,
    Proposal,
    ProposalStatus,
    Tenant,
)
from quoteflow.services import documentService


@compiles(JSONB, "sqlite")
def compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# A bare UUID column type gets NUMERIC affinity in SQLite, which turns
# all-digit hex ids into REAL. Store them as 32-char hex text instead.
@compiles(UUID, "sqlite")
def compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


# ---------------------------------------------------------------------------
# Test IDs (stable across tests so cross-references work)
# ---------------------------------------------------------------------------

TENANT_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
CLIENT_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
OTHER_CLIENT_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")

PROPOSAL_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
SECOND_PROPOSAL_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
DRAFT_PROPOSAL_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")
OTHER_CLIENT_PROPOSAL_ID = uuid.UUID("44444444-4444-4444-4444-444444444444")

LINK_TOKEN = "a" * 128
EXPIRED_LINK_TOKEN = "b" * 128
REVOKED_LINK_TOKEN = "c" * 128

OTP_CODE = "123456"
API = settings.api_v1_prefix


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'quoteflow.db'}")

    # SQLite does not enforce foreign keys by default
    @event.listens_for(engine.sync_engine, "connect")
    def _enable_fk(dbapi_conn, _):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def _seed_data(db: AsyncSession) -> None:
    now = datetime.now(timezone.utc)
    areas = [
        {"id": "a1", "name": "Living Room", "surfaces": ["walls", "trim"]},
        {"id": "a2", "name": "Kitchen", "surfaces": ["walls"]},
    ]

    db.add(Tenant(id=TENANT_ID, company_name="Brush & Roller Co", contact_email="office@brush.test"))
    await db.flush()
    db.add(
        ContractorSettings(
            tenant_id=TENANT_ID,
            deposit_percent=50,
            portal_duration_days=14,
            magic_link_expiry_days=7,
            notification_email="jobs@brush.test",
        )
    )
    db.add_all(
        [
            Client(
                id=CLIENT_ID,
                tenant_id=TENANT_ID,
                name="Jane Doe",
                email="jane@example.com",
                phone="+14165551234",
            ),
            Client(id=OTHER_CLIENT_ID, tenant_id=TENANT_ID, name="John Roe", email="john@example.com"),
        ]
    )
    await db.flush()

    def proposal(proposal_id, number, base, *, client_id=CLIENT_ID, status=ProposalStatus.SENT, age_days=3):
        return Proposal(
            id=proposal_id,
            tenant_id=TENANT_ID,
            client_id=client_id,
            quote_number=number,
            status=status,
            customer_name="Jane Doe",
            customer_email="jane@example.com",
            customer_phone="+14165551234",
            customer_address="12 Elm St",
            job_type="Interior",
            base_total=Decimal(base),
            total=Decimal(base),
            valid_until=now + timedelta(days=30),
            areas=areas,
            sent_at=None if status == ProposalStatus.DRAFT else now - timedelta(days=age_days),
            created_at=now - timedelta(days=age_days),
        )

    db.add_all(
        [
            proposal(PROPOSAL_ID, "Q-2026-0001", "1000.00", age_days=3),
            proposal(SECOND_PROPOSAL_ID, "Q-2026-0002", "2000.00", age_days=2),
            proposal(DRAFT_PROPOSAL_ID, "Q-2026-0003", "500.00", status=ProposalStatus.DRAFT, age_days=1),
            proposal(OTHER_CLIENT_PROPOSAL_ID, "Q-2026-0004", "750.00", client_id=OTHER_CLIENT_ID),
        ]
    )
    await db.flush()

    def link(token, **overrides):
        fields = {
            "token": token,
            "tenant_id": TENANT_ID,
            "client_id": CLIENT_ID,
            "quote_id": PROPOSAL_ID,
            "purpose": "quote_view",
            "expires_at": now + timedelta(days=7),
            "is_single_use": False,
            "use_count": 0,
        }
        fields.update(overrides)
        return MagicLink(**fields)

    db.add_all(
        [
            link(LINK_TOKEN),
            link(EXPIRED_LINK_TOKEN, expires_at=now - timedelta(minutes=1)),
            link(REVOKED_LINK_TOKEN, revoked_at=now - timedelta(hours=1)),
        ]
    )
    await db.commit()


@pytest_asyncio.fixture
async def seeded_db(session_factory) -> async_sessionmaker[AsyncSession]:
    async with session_factory() as db:
        await _seed_data(db)
    return session_factory


async def fetch(session_factory, model, ident) -> Any:
    """Load a row in a fresh session so assertions see committed state."""
    async with session_factory() as db:
        return await db.get(model, ident)


async def set_fields(session_factory, model, ident, **values) -> None:
    """Overwrite columns directly, e.g. to move a deadline into the past."""
    async with session_factory() as db:
        row = await db.get(model, ident)
        for name, value in values.items():
            setattr(row, name, value)
        await db.commit()


async def job_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(Job.id)))).scalar_one()


# ---------------------------------------------------------------------------
# App + HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
def query_cache() -> InMemoryCache:
    return InMemoryCache()


@pytest_asyncio.fixture
async def client(seeded_db, query_cache) -> AsyncGenerator[AsyncClient, None]:
    from quoteflow.api.deps import get_db, get_query_cache
    from quoteflow.main import app

    async def _override_get_db():
        async with seeded_db() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_query_cache] = lambda: query_cache

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def open_session(client: AsyncClient, token: str = LINK_TOKEN) -> dict[str, str]:
    """Open the magic link and return the bearer headers for its session."""
    response = await client.get(f"{API}/portal/access/{token}")
    assert response.status_code == 200, response.text
    session_token = response.json()["data"]["session"]["session_token"]
    return {"Authorization": f"Bearer {session_token}"}


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fast_otp():
    """Deterministic OTP codes with cheap hashing."""
    with patch(
        "quoteflow.services.otpVerificationService.generate_code",
        return_value=OTP_CODE,
    ), patch.object(settings, "otp_bcrypt_rounds", 4):
        yield


@pytest.fixture(autouse=True)
def _reset_webhook_events():
    clear_processed_events()
    yield
    clear_processed_events()


class RecordingDocumentGenerator:
    """Collects generation requests instead of calling the rendering service."""

    def __init__(self, fail: bool = False) -> None:
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.fail = fail

    async def generate(self, document_type: str, snapshot: dict[str, Any]) -> None:
        self.requests.append((document_type, snapshot))
        if self.fail:
            raise RuntimeError("rendering service unavailable")

    @property
    def types(self) -> list[str]:
        return [kind for kind, _ in self.requests]


@pytest.fixture
def documents() -> RecordingDocumentGenerator:
    recorder = RecordingDocumentGenerator()
    documentService.set_document_generator(recorder)
    yield recorder
    documentService.set_document_generator(None)


class FakeStripe:
    """In-memory PaymentIntent store standing in for the Stripe API."""

    def __init__(self) -> None:
        self.intents: dict[str, PaymentIntentSnapshot] = {}
        self.created: list[dict[str, Any]] = []

    def add_intent(
        self,
        intent_id: str,
        *,
        proposal_id: uuid.UUID = PROPOSAL_ID,
        amount_cents: int = 50000,
        status: str = "succeeded",
    ) -> PaymentIntentSnapshot:
        intent = PaymentIntentSnapshot(
            id=intent_id,
            status=status,
            amount_cents=amount_cents,
            currency="usd",
            metadata={"proposalId": str(proposal_id), "tenantId": str(TENANT_ID)},
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve(self, payment_intent_id: str) -> PaymentIntentSnapshot:
        try:
            return self.intents[payment_intent_id]
        except KeyError:
            raise PaymentError(
                f"No such payment_intent: '{payment_intent_id}'",
                stripe_error_code="resource_missing",
                stripe_error_type="invalid_request_error",
            )

    async def create(self, amount_cents: int, metadata: dict[str, str], **kwargs) -> PaymentIntentResult:
        intent_id = f"pi_test_{len(self.created) + 1}"
        self.created.append({"amount_cents": amount_cents, "metadata": metadata})
        self.intents[intent_id] = PaymentIntentSnapshot(
            id=intent_id,
            status="requires_payment_method",
            amount_cents=amount_cents,
            currency="usd",
            metadata=dict(metadata),
        )
        return PaymentIntentResult(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            status="requires_payment_method",
            amount_cents=amount_cents,
            currency="usd",
        )


@pytest.fixture
def fake_stripe() -> FakeStripe:
    fake = FakeStripe()
    with patch.object(
        paymentService, "retrieve_payment_intent", AsyncMock(side_effect=fake.retrieve)
    ), patch.object(
        paymentService, "create_payment_intent", AsyncMock(side_effect=fake.create)
    ):
        yield fake


def stripe_event(event_type: str, intent_id: str, metadata: dict[str, str], event_id: str = "evt_1"):
    """A minimal object shaped like a verified ``stripe.Event``."""
    return SimpleNamespace(
        id=event_id,
        type=event_type,
        data=SimpleNamespace(
            object=SimpleNamespace(id=intent_id, metadata=metadata, last_payment_error=None)
        ),
    )


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------


async def accept(client: AsyncClient, headers: dict[str, str], tier: str = "better", proposal_id=PROPOSAL_ID):
    response = await client.post(
        f"{API}/portal/proposals/{proposal_id}/accept",
        json={"selected_tier": tier},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


async def pay_deposit(
    client: AsyncClient,
    headers: dict[str, str],
    fake_stripe: FakeStripe,
    intent_id: str = "pi_deposit",
):
    """Accept at 'better' ($500 deposit) and verify a matching payment."""
    await accept(client, headers)
    fake_stripe.add_intent(intent_id, amount_cents=50000)
    response = await client.post(
        f"{API}/portal/proposals/{PROPOSAL_ID}/verify-deposit",
        json={"payment_intent_id": intent_id},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]
