import hashlib
from collections import deque
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event

from app.application.schemas import AddressIn, CartItemIn, CustomerIn
from app.core_settings import Settings
from app.domain.models import Base, OrderCounter, Product
from app.infrastructure.db import build_session_factory
from app.infrastructure.phonepe import PhonePeClient
from app.main import create_app

CLIENT_ID = "M22TESTMERCHANT_2506"
CLIENT_SECRET = "test-client-secret"


def make_sqlite_engine(path):
    """File-backed SQLite where every transaction takes the write lock up front.

    SQLite has no row locks; BEGIN IMMEDIATE serializes writers the way
    SELECT ... FOR UPDATE does on the product rows in Postgres.
    """
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest.fixture
def engine(tmp_path):
    engine = make_sqlite_engine(tmp_path / "storefront.db")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = build_session_factory(engine)
    with factory() as db:
        db.add(OrderCounter(name="order_number", value=0))
        db.commit()
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_product(session_factory):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        data = {
            "id": f"p{counter['n']}",
            "sku": f"SKU{counter['n']:04d}",
            "name": f"Kundan Necklace {counter['n']}",
            "category": "necklaces",
            "price": Decimal("100.00"),
            "discount": Decimal("0"),
            "stock": 5,
            "product_status": "active",
        }
        data.update(overrides)
        with session_factory() as session:
            product = Product(**data)
            session.add(product)
            session.commit()
            return product.id

    return _make


@pytest.fixture
def customer():
    return CustomerIn(name="Asha Verma", email="Asha@Example.com", phone="+91 98765-43210")


@pytest.fixture
def address():
    return AddressIn(line1="12 MG Road", line2="Flat 4B", city="Jaipur", state="Rajasthan", pincode="302001")


def cart(*lines):
    return [CartItemIn(product_id=product_id, quantity=quantity) for product_id, quantity in lines]


def sign_webhook(base64_body: str, secret: str = CLIENT_SECRET) -> str:
    return hashlib.sha256((base64_body + secret).encode()).hexdigest() + "###1"


class FakePhonePe:
    """httpx.MockTransport handler standing in for the PhonePe API.

    Queued responses are served first; an exception instance in a queue is
    raised instead, to simulate transport failures.
    """

    def __init__(self):
        self.requests = []
        self.token_responses = deque()
        self.pay_responses = deque()
        self.status_responses = deque()
        self.tokens_issued = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/v1/oauth/token"):
            self.tokens_issued += 1
            return self._next(self.token_responses) or httpx.Response(
                200, json={"access_token": f"token-{self.tokens_issued}", "expires_in": 3600}
            )
        if path.endswith("/pg/v1/pay"):
            return self._next(self.pay_responses) or httpx.Response(200, json={
                "success": True,
                "code": "PAYMENT_INITIATED",
                "data": {
                    "merchantTransactionId": "ignored",
                    "transactionId": "T2506001",
                    "instrumentResponse": {
                        "type": "PAY_PAGE",
                        "redirectInfo": {"url": "https://mercury.phonepe.com/transact/pg?token=abc", "method": "GET"},
                    },
                },
            })
        if "/pg/v1/status/" in path:
            return self._next(self.status_responses) or httpx.Response(
                200, json={"success": False, "code": "PAYMENT_PENDING", "data": {"state": "PENDING"}}
            )
        return httpx.Response(404, json={"message": "not found"})

    @staticmethod
    def _next(queue):
        if not queue:
            return None
        item = queue.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    def calls_to(self, suffix: str):
        return [r for r in self.requests if r.url.path.endswith(suffix)]


@pytest.fixture
def phonepe():
    return FakePhonePe()


@pytest.fixture
def gateway(phonepe):
    client = PhonePeClient(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        base_url="https://api.phonepe.com/apis/pg",
        auth_url="https://api.phonepe.com/apis/identity-manager",
        app_url="https://shop.example.in",
        transport=httpx.MockTransport(phonepe),
    )
    yield client
    client.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'storefront.db'}",
        PHONEPE_CLIENT_ID=CLIENT_ID,
        PHONEPE_CLIENT_SECRET=CLIENT_SECRET,
        APP_URL="https://shop.example.in",
        CRON_SECRET="cron-secret",
        PAYMENT_RETRY_BASE_DELAY=0,
    )


@pytest.fixture
def client(engine, session_factory, settings, gateway):
    app = create_app(settings=settings, engine=engine, gateway=gateway, migrate=False)
    with TestClient(app) as test_client:
        yield test_client
