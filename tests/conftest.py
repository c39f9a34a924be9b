import json
import os
import tempfile
from decimal import Decimal
from itertools import count

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ADMIN_EMAIL", "admin@plateyard.example.com")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("MEDIA_DIR", tempfile.mkdtemp(prefix="plateyard-media-"))

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from plateyard.core.admin import require_admin  # noqa: E402
from plateyard.core.deps import get_http_client  # noqa: E402
from plateyard.core.stripe_client import CheckoutSession, get_payments  # noqa: E402
from plateyard.db.base import Base  # noqa: E402
from plateyard.db.init_db import create_tables  # noqa: E402
from plateyard.db.session import get_db  # noqa: E402
from plateyard.main import app  # noqa: E402
from plateyard.models.customer import Customer  # noqa: E402
from plateyard.models.product import Product  # noqa: E402
from plateyard.schemas.order import CheckoutIn  # noqa: E402
from plateyard.services import options  # noqa: E402
from plateyard.services.orders import create_order_from_checkout  # noqa: E402

WEBHOOK_URL = "https://hooks.example.test/orders"
VALID_SIGNATURE = "t=1,v1=valid"


class FakePayments:
    """Stands in for the Stripe gateway; records every call."""

    configured = True
    currency = "usd"

    def __init__(self):
        self._ids = count(1)
        self.sessions: dict[str, CheckoutSession] = {}
        self.checkout_calls: list[dict] = []
        self.customers: list[str] = []
        self.products: dict[str, dict] = {}
        self.prices: dict[str, list[dict]] = {}
        self.archived: list[str] = []
        self.after_session_created = None

    def create_customer(self, email, name, phone):
        self.customers.append(email)
        return f"cus_{next(self._ids)}"

    def create_checkout_session(self, **kwargs):
        self.checkout_calls.append(kwargs)
        n = next(self._ids)
        session = CheckoutSession(
            id=f"cs_test_{n}",
            url=f"https://checkout.stripe.test/pay/cs_test_{n}",
            payment_status="unpaid",
            amount_total=sum(
                li["price_data"]["unit_amount"] * li["quantity"]
                for li in kwargs["line_items"]
            ),
            metadata=kwargs["metadata"],
        )
        self.sessions[session.id] = session
        if self.after_session_created:
            self.after_session_created()
        return session

    def mark_session_paid(self, session_id):
        s = self.sessions[session_id]
        self.sessions[session_id] = CheckoutSession(
            id=s.id,
            url=s.url,
            payment_status="paid",
            payment_intent=f"pi_{s.id}",
            amount_total=s.amount_total,
            metadata=s.metadata,
        )

    def retrieve_checkout_session(self, session_id):
        return self.sessions[session_id]

    def create_product(self, *, name, description, tax_code, metadata):
        pid = f"prod_{next(self._ids)}"
        self.products[pid] = {"name": name, "tax_code": tax_code, "metadata": metadata}
        self.prices[pid] = []
        return pid

    def update_product(self, product_id, **fields):
        self.products[product_id].update(fields)

    def list_active_prices(self, product_id):
        return [p for p in self.prices.get(product_id, []) if p["active"]]

    def create_price(self, product_id, unit_amount):
        price_id = f"price_{next(self._ids)}"
        self.prices.setdefault(product_id, []).append(
            {"id": price_id, "unit_amount": unit_amount, "active": True}
        )
        return price_id

    def archive_price(self, price_id):
        self.archived.append(price_id)
        for prices in self.prices.values():
            for p in prices:
                if p["id"] == price_id:
                    p["active"] = False

    def construct_event(self, payload, sig_header, secret):
        if sig_header != VALID_SIGNATURE:
            raise ValueError("bad signature")
        return json.loads(payload)


class WebhookReceiver:
    """Mock transport target: answers with `status_code` and keeps requests."""

    def __init__(self):
        self.status_code = 200
        self.fail_with: Exception | None = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.mailgun.net":
            return httpx.Response(200, json={"id": "<msg@mailgun>"})
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        return httpx.Response(self.status_code, text="ok")

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """One session shared by the test and the app so both see the same rows."""
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def receiver():
    return WebhookReceiver()


@pytest.fixture
def http(receiver):
    with httpx.Client(transport=httpx.MockTransport(receiver)) as client:
        yield client


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def admin(db):
    customer = Customer(email=os.environ["ADMIN_EMAIL"], name="Admin")
    db.add(customer)
    db.commit()
    return customer


def _override_common(db, http, payments):
    def _get_db():
        yield db

    def _get_http():
        yield http

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_http_client] = _get_http
    app.dependency_overrides[get_payments] = lambda: payments


@pytest.fixture
def client(db, http, payments, admin):
    """Test client signed in as the admin."""
    _override_common(db, http, payments)
    app.dependency_overrides[require_admin] = lambda: admin
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def anon_client(db, http, payments):
    """Test client with no session cookie."""
    _override_common(db, http, payments)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(weight=45, price="50.00", regular="65.00", title=None, available=True):
        product = Product(
            title=title or f"{weight}lb Bumper Plate Pair",
            weight=weight,
            selling_price=Decimal(price),
            regular_price=Decimal(regular),
            available=available,
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def make_order(db, make_product):
    def _make(items=None, email="lifter@example.com", name="Sam Lifter", phone="555-0100"):
        if items is None:
            items = [(make_product(), 1)]
        data = CheckoutIn.model_validate(
            {
                "customer": {"name": name, "email": email, "phone": phone},
                "items": [{"product_id": p.id, "quantity": q} for p, q in items],
            }
        )
        order, _ = create_order_from_checkout(db, data)
        return order

    return _make


@pytest.fixture
def enable_webhooks(db):
    def _enable(**overrides):
        values = {
            "webhook_url": WEBHOOK_URL,
            "webhook_enabled": True,
            "webhook_retry_attempts": 3,
            "webhook_retry_delay": 5,
            "webhook_timeout": 10,
            **overrides,
        }
        options.set_options(
            db,
            [
                {"option_name": k, "option_value": v, "category": "webhooks"}
                for k, v in values.items()
            ],
        )

    return _enable
