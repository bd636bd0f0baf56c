import hashlib
import hmac
import json
import os
import tempfile
import time
from decimal import Decimal

# Settings are read at import time, so the environment goes first.
_TMP_DIR = tempfile.mkdtemp(prefix="gympay-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'app.db')}"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["PAYMENTS_ENABLED"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from gympay.auth import issue_token  # noqa: E402
from gympay.database import Base, get_db  # noqa: E402
from gympay.main import app as fastapi_app  # noqa: E402
from gympay.models import Enrollment, PaymentRecord  # noqa: E402
from gympay.rate_limiter import InMemoryRateLimiter, get_rate_limiter  # noqa: E402

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]

SQLALCHEMY_DATABASE_URL = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def limiter():
    return InMemoryRateLimiter()


@pytest.fixture
def client(limiter):
    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_rate_limiter] = lambda: limiter

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def enrollment(db):
    e = Enrollment(id=7, student_name="Maya Lopez", parent_name="Ana Lopez", parent_email="ana@example.com")
    db.add(e)
    db.commit()
    return e


@pytest.fixture
def make_payment(db):
    def _make(**fields):
        defaults = {
            "enrollment_id": 7,
            "amount": Decimal("95.00"),
            "payment_type": "tuition",
            "payment_method": "card",
            "status": "pending",
            "parent_email": "ana@example.com",
        }
        defaults.update(fields)
        payment = PaymentRecord(**defaults)
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment
    return _make


def fetch_payment(payment_id):
    session = TestingSessionLocal()
    try:
        return session.get(PaymentRecord, payment_id)
    finally:
        session.close()


def auth_headers(role="admin", user_id="1"):
    return {"Authorization": f"Bearer {issue_token(user_id, role)}"}


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a stripe-signature header exactly as Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })


def post_webhook(client, payload: str, signature: str = None):
    return client.post(
        "/payments/webhook",
        content=payload,
        headers={"stripe-signature": signature or sign_payload(payload)},
    )
