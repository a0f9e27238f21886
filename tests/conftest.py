import os

# Must be set before any settlement module is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("LOG_JSON", "false")

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from settlement.database import Base, get_db, make_engine
from settlement.engine import PaymentEngine
from settlement.ledger import GiftCardLedger
from settlement.main import app as fastapi_app
from settlement.models import GiftCard, GiftCardStatus, Order, OrderLine, OrderStatus, utcnow
from settlement.stripe_service import CheckoutSession

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_settlement.db"
engine = make_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


def override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def make_token(business_id=1, employee_id=7, role="owner"):
    claims = {"businessId": business_id, "employeeId": employee_id, "role": role}
    return jwt.encode(claims, os.environ["JWT_SECRET"], algorithm="HS256")


def auth_headers(business_id=1, employee_id=7, role="owner"):
    return {"Authorization": f"Bearer {make_token(business_id, employee_id, role)}"}


@pytest.fixture
def gateway(mocker):
    gw = mocker.Mock()
    gw.create_checkout_session.return_value = CheckoutSession(
        session_id="cs_test_1",
        redirect_url="https://checkout.stripe.test/cs_test_1",
    )
    return gw


@pytest.fixture
def ledger():
    return GiftCardLedger(max_retries=3)


@pytest.fixture
def payments(gateway, ledger):
    return PaymentEngine(gateway, ledger)


@pytest.fixture
def make_gift_card(db):
    def _make(code="ABC", balance_cents=100_00, business_id=1,
              status=GiftCardStatus.ACTIVE, expires_in=timedelta(days=30)):
        card = GiftCard(
            business_id=business_id,
            code=code,
            balance_cents=balance_cents,
            status=status,
            expires_at=utcnow() + expires_in if expires_in is not None else None,
            issued_at=utcnow(),
        )
        db.add(card)
        db.commit()
        db.refresh(card)
        return card
    return _make


@pytest.fixture
def make_order(db):
    def _make(business_id=1, unit_price="10.00", qty="1", tip_cents=0):
        order = Order(
            business_id=business_id,
            employee_id=7,
            status=OrderStatus.OPEN,
            tip_cents=tip_cents,
            price_includes_tax=True,
            created_at=utcnow(),
        )
        db.add(order)
        db.flush()
        db.add(OrderLine(
            order_id=order.id,
            business_id=business_id,
            catalog_item_id=1,
            qty=Decimal(qty),
            item_name_snapshot="Haircut",
            unit_price_snapshot=Decimal(unit_price),
            tax_class_snapshot="standard",
            tax_rate_snapshot_pct=Decimal("21"),
            performed_at=utcnow(),
            performed_by_employee_id=7,
        ))
        db.commit()
        db.refresh(order)
        return order
    return _make


def balance_of(db, card_id):
    db.expire_all()
    return db.get(GiftCard, card_id).balance_cents
