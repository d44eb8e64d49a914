"""
Pytest configuration and fixtures.
"""
import json
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, Optional, Tuple
from unittest.mock import AsyncMock

# Settings are read at import time by the API module
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("STRIPE_MONTHLY_PRICE_ID", "price_monthly_test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("APP_URL", "https://app.example.com")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_ledger.config import Settings, get_settings
from billing_ledger.core.webhook_dispatcher import WebhookDispatcher
from billing_ledger.database.ledger import SqlAlchemyLedger
from billing_ledger.database.models import Account, Base, CommissionTransfer, Referral
from billing_ledger.integrations.stripe_client import StripeClient
from billing_ledger.integrations.webhook_handler import WebhookVerifier

from tests.helpers import API_KEY, WEBHOOK_SECRET, sign_payload, subscription_object

@pytest.fixture
def test_settings() -> Settings:
    """Settings built from the test environment."""
    return get_settings()


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[Any, Any]:
    """In-memory database engine shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: Any) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    session_factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def ledger(db_session: AsyncSession) -> SqlAlchemyLedger:
    return SqlAlchemyLedger(db_session)


@pytest.fixture
def stripe_mock() -> AsyncMock:
    """Stripe client double; every outbound call is an AsyncMock."""
    mock = AsyncMock(spec=StripeClient)
    mock.retrieve_customer.return_value = {"id": "cus_unknown", "email": None}
    return mock


@pytest.fixture
def verifier() -> WebhookVerifier:
    return WebhookVerifier(secret=WEBHOOK_SECRET, tolerance=300)


@pytest.fixture
def dispatcher(
    ledger: SqlAlchemyLedger,
    stripe_mock: AsyncMock,
    verifier: WebhookVerifier,
    test_settings: Settings,
) -> WebhookDispatcher:
    return WebhookDispatcher(ledger, stripe_mock, verifier, test_settings)


@pytest.fixture
def make_account(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory inserting committed accounts."""

    async def _make(account_id: Optional[str] = None, **fields: Any) -> Account:
        account_id = account_id or f"user_{uuid.uuid4().hex[:8]}"
        fields.setdefault("email", f"{account_id}@example.com")
        account = Account(id=account_id, **fields)
        db_session.add(account)
        await db_session.commit()
        return account

    return _make


@pytest.fixture
def make_referral(db_session: AsyncSession) -> Callable[..., Any]:
    async def _make(referrer_id: str, referred_id: str) -> Referral:
        referral = Referral(referrer_id=referrer_id, referred_id=referred_id, status="pending")
        db_session.add(referral)
        await db_session.commit()
        return referral

    return _make


@pytest.fixture
def make_transfer(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory inserting committed transfers with strictly increasing created_at."""
    base_time = datetime(2024, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    async def _make(affiliate_id: str, amount: str = "25.00", **fields: Any) -> CommissionTransfer:
        counter["n"] += 1
        fields.setdefault("status", "pending")
        fields.setdefault("currency", "usd")
        fields.setdefault("created_at", base_time + timedelta(minutes=counter["n"]))
        transfer = CommissionTransfer(affiliate_id=affiliate_id, amount=Decimal(amount), **fields)
        db_session.add(transfer)
        await db_session.commit()
        return transfer

    return _make


@pytest.fixture
def make_event() -> Callable[..., Dict[str, Any]]:
    """Factory building Stripe event envelopes."""

    def _make(
        event_type: str,
        obj: Dict[str, Any],
        previous_attributes: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {"object": obj}
        if previous_attributes is not None:
            data["previous_attributes"] = previous_attributes
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "api_version": "2024-06-20",
            "data": data,
        }

    return _make


@pytest.fixture
def signed() -> Callable[[Dict[str, Any]], Tuple[bytes, str]]:
    """Serialize and sign an event envelope."""

    def _sign(event: Dict[str, Any]) -> Tuple[bytes, str]:
        payload = json.dumps(event).encode()
        return payload, sign_payload(payload)

    return _sign


@pytest.fixture
def subscription() -> Callable[..., Dict[str, Any]]:
    return subscription_object


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    stripe_mock: AsyncMock,
    verifier: WebhookVerifier,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client over the ASGI app, wired to the test database and Stripe double."""
    from billing_ledger.api.dependencies import (
        get_ledger,
        get_stripe_client,
        get_webhook_verifier,
    )
    from billing_ledger.api.main import app

    app.dependency_overrides[get_ledger] = lambda: SqlAlchemyLedger(db_session)
    app.dependency_overrides[get_stripe_client] = lambda: stripe_mock
    app.dependency_overrides[get_webhook_verifier] = lambda: verifier

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-API-Key": API_KEY},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
