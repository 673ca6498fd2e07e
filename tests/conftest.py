"""Pytest fixtures for the order service tests."""

import mongomock
import pytest
from bson import ObjectId

from carts import CartStore
from config import Settings
from database import create_document, ensure_indexes
from errors import GatewayError
from inventory import InventoryStore
from notifications import NotificationSink
from payments import InitResult, PaymentGateway, Verification
from workflow import OrderWorkflow

SHIPPING = {
    "address": "12 Market Road",
    "city": "Ibadan",
    "state": "Oyo",
    "phone": "+2348012345678",
}


class FakeGateway(PaymentGateway):
    """Gateway double that records calls and returns scripted results."""

    name = "fake"

    def __init__(self):
        self.initialized = []
        self.verified = []
        self.init_result = None
        self.init_error = None
        self.verifications = {}
        self.verify_error = None

    def initialize(self, email, amount_minor, reference, callback_url, metadata):
        self.initialized.append({
            "email": email,
            "amount_minor": amount_minor,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata,
        })
        if self.init_error is not None:
            raise self.init_error
        if self.init_result is not None:
            return self.init_result
        return InitResult(status=True, redirect_url=f"https://pay.test/{reference}", message="ok")

    def verify(self, reference):
        self.verified.append(reference)
        if self.verify_error is not None:
            raise self.verify_error
        if reference in self.verifications:
            return self.verifications[reference]
        raise GatewayError("Unknown reference")

    def pays(self, order, amount_minor=None, **extra):
        """Script a successful verification for `order`."""
        reference = order["transaction_reference"]
        self.verifications[reference] = Verification(
            status=True,
            reference=reference,
            amount_minor=amount_minor if amount_minor is not None else round(order["total_price"] * 100),
            metadata={"orderId": str(order["_id"]), "userId": order["buyer_id"]},
            channel="card",
            paid_at="2024-05-01T10:00:00.000Z",
            **extra,
        )
        return reference


@pytest.fixture
def db():
    database = mongomock.MongoClient()["crop_connect_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(app_env="test", order_retry_backoff=0, frontend_url="https://shop.test")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def inventory(db):
    return InventoryStore(db)


@pytest.fixture
def carts(db, inventory, settings):
    return CartStore(db, inventory, settings)


@pytest.fixture
def notifier(db):
    return NotificationSink(db)


@pytest.fixture
def workflow(db, gateway, notifier, settings, inventory, carts):
    return OrderWorkflow(db, gateway, notifier, settings, inventory=inventory, carts=carts)


def _make_user(db, name, role, token):
    user_id = create_document(
        "user", {"name": name, "email": f"{token}@example.com", "role": role, "token": token}, database=db
    )
    return db["user"].find_one({"_id": ObjectId(user_id)})


@pytest.fixture
def buyer(db):
    return _make_user(db, "Ada Buyer", "buyer", "buyer-token")


@pytest.fixture
def other_buyer(db):
    return _make_user(db, "Bola Buyer", "buyer", "other-buyer-token")


@pytest.fixture
def farmer(db):
    return _make_user(db, "Femi Farmer", "farmer", "farmer-token")


@pytest.fixture
def other_farmer(db):
    return _make_user(db, "Gbenga Farmer", "farmer", "other-farmer-token")


@pytest.fixture
def make_product(db, farmer):
    def factory(name="Yam tubers", price=500.0, quantity=5, owner=None):
        owner = owner or farmer
        product_id = create_document(
            "product",
            {
                "name": name,
                "price": price,
                "quantity": quantity,
                "farmer_id": str(owner["_id"]),
                "farm_name": f"{owner['name']}'s farm",
            },
            database=db,
        )
        return product_id

    return factory


@pytest.fixture
def shipping():
    return dict(SHIPPING)


@pytest.fixture
def stock(db):
    def read(product_id):
        return db["product"].find_one({"_id": ObjectId(product_id)})["quantity"]

    return read
