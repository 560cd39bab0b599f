"""
Shared fixtures: in-memory SQLite record store, a mocked Stripe gateway,
fakeredis for the calendar cache and a FastAPI TestClient wired to all three.
"""
import hashlib
import hmac
import itertools
import json
import os
import time
from datetime import date, timedelta
from unittest.mock import MagicMock

# Settings are read at import time; configure before importing the app.
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_live"
os.environ["STRIPE_WEBHOOK_SECRET_TEST"] = "whsec_test_test"

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.security import create_access_token
from app.db.session import Base, get_db
from app.main import app
from app.models.record import Record, SetMember  # noqa: F401
from app.schemas.fleet import CarPrice, CarUpsert
from app.services import fleet_service
from app.services.availability_cache import AvailabilityCache
from app.services.record_store import RecordStore
from app.services.stripe_gateway import IntentResult, StripeConfig, StripeGateway

WEBHOOK_SECRET = "whsec_test_live"


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def store(db_session):
    return RecordStore(db_session)


@pytest.fixture
def cars(store):
    """Car A at $450/day (deposit tier 500) and Car B at $800/day (deposit tier 1000)."""
    a = fleet_service.upsert_car(store, "car-a", CarUpsert(brand="Porsche", model="911", year=2022, price=CarPrice(daily=450, weekly=2800)))
    b = fleet_service.upsert_car(store, "car-b", CarUpsert(brand="Ferrari", model="F8", year=2021, price=CarPrice(daily=800, weekly=5000)))
    return {"a": a, "b": b}


@pytest.fixture
def gateway():
    """Stripe gateway double: processor calls are mocked, webhook signatures are verified for real."""
    counter = itertools.count(1)
    gw = MagicMock(spec=StripeGateway)
    gw.cfg = StripeConfig(secret_key="sk_test_dummy", webhook_secrets=[WEBHOOK_SECRET, "whsec_test_test"])

    def deposit_intent(*, amount, customer_id, metadata, idempotency_key):
        n = next(counter)
        return IntentResult(id=f"pi_dep_{n}", status="requires_payment_method", amount=amount,
                            client_secret=f"pi_dep_{n}_secret", customer=customer_id)

    gw.ensure_customer.return_value = "cus_test"
    gw.create_deposit_intent.side_effect = deposit_intent
    gw.latest_payment_method.return_value = "pm_card_visa"
    gw.verify_event.side_effect = StripeGateway(gw.cfg).verify_event
    return gw


@pytest.fixture
def cache():
    return AvailabilityCache(fakeredis.FakeRedis(decode_responses=True), ttl_seconds=300)


@pytest.fixture
def client(session_factory, gateway, cache):
    def override_get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.gateway = gateway
    app.state.availability_cache = cache
    # No context manager: the lifespan would replace the gateway and cache with real ones.
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    token = create_access_token("admin-1", "admin@dtexotics.test", role="admin")
    return {"Authorization": f"Bearer {token}"}


# =============================================================================
# Helpers
# =============================================================================

def days_ahead(n: int) -> date:
    return date.today() + timedelta(days=n)


def customer_payload(email: str = "jane@example.com") -> dict:
    return {"firstName": "Jane", "lastName": "Doe", "email": email, "phone": "+1 702 555 0100", "driversLicense": "NV1234567"}


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    t = timestamp or int(time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{t}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={t},v1={sig}"


def intent_event(event_id: str, event_type: str, intent_id: str, **fields) -> dict:
    obj = {"id": intent_id, "object": "payment_intent", **fields}
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def post_event(client, event: dict, secret: str = WEBHOOK_SECRET):
    payload = json.dumps(event)
    return client.post(
        "/api/v1/webhooks/payments",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload, secret), "Content-Type": "application/json"},
    )
