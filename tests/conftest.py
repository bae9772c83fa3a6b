import hashlib
import hmac
import json
import time
from decimal import Decimal

from bson import ObjectId
import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_token, public_user
from database import get_db
from errors import PaymentFailedError, ValidationError
from main import app
from orders import OrderService
from payments import PaymentConfirmation, PaymentGateway, PaymentIntent, get_payment_gateways
from schemas import PaymentMethod, Product, ShippingAddress, User
from stores import AccountStore, CatalogStore, OrderLedger, ReviewStore

ADDRESS = ShippingAddress(street="12 MG Road", city="Bengaluru", state="Karnataka", zip_code="560001")


class FakeGateway(PaymentGateway):
    """Scripted gateway: `outcomes` maps intent id to a confirmation or an exception."""

    def __init__(self):
        self.outcomes = {}
        self.confirm_calls = []

    def succeed(self, intent_id, amount):
        self.outcomes[intent_id] = PaymentConfirmation(
            succeeded=True, status="succeeded", captured_amount=Decimal(str(amount))
        )

    def create_payment_intent(self, amount, metadata=None):
        intent_id = f"pi_{len(self.outcomes) + 1}"
        self.outcomes[intent_id] = PaymentConfirmation(succeeded=False, status="requires_payment_method")
        return PaymentIntent(client_secret=f"{intent_id}_secret", intent_id=intent_id)

    def confirm_payment(self, intent_id):
        self.confirm_calls.append(intent_id)
        outcome = self.outcomes.get(intent_id)
        if outcome is None:
            raise PaymentFailedError("No such payment_intent")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise ValidationError("Invalid webhook signature")
        return json.loads(payload)


def sign(payload: bytes, secret: str, timestamp=None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront"]


@pytest.fixture
def catalog(db):
    return CatalogStore(db)


@pytest.fixture
def accounts(db):
    return AccountStore(db)


@pytest.fixture
def ledger(db):
    return OrderLedger(db)


@pytest.fixture
def review_store(db):
    return ReviewStore(db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(catalog, accounts, ledger, gateway):
    return OrderService(catalog, accounts, ledger, {PaymentMethod.STRIPE: gateway})


@pytest.fixture
def make_user(accounts):
    counter = {"n": 0}

    def _make(role="customer", name=None, addresses=None):
        counter["n"] += 1
        n = counter["n"]
        user = accounts.create_user(User(
            name=name or f"{role.title()} {n}",
            email=f"{role}{n}@example.com",
            role=role,
            phone="9876543210",
            addresses=addresses or [],
        ))
        return public_user(user)

    return _make


@pytest.fixture
def seller(make_user):
    return make_user("seller", name="Green Farms")


@pytest.fixture
def customer(make_user):
    return make_user("customer", name="Asha")


@pytest.fixture
def admin(make_user):
    return make_user("admin", name="Root")


@pytest.fixture
def make_product(catalog, seller):
    def _make(name="Tomatoes", price=10.0, stock=5, seller_id=None, **extra):
        product = catalog.create_product(Product(
            name=name,
            description=f"Fresh {name.lower()}",
            price=price,
            category=extra.pop("category", "Vegetables"),
            images=["https://img.example.com/p.jpg"],
            stock=stock,
            unit="kg",
            seller_id=seller_id or seller["id"],
            **extra,
        ))
        return str(product["_id"])

    return _make


@pytest.fixture
def stock_of(catalog):
    return lambda product_id: catalog.collection.find_one({"_id": ObjectId(product_id)})["stock"]


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_gateways] = lambda: {PaymentMethod.STRIPE: gateway}
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user):
    return {"Authorization": f"Bearer {create_token(user['id'])}"}
