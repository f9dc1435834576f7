from typing import Any, Dict, List, Optional

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from config import Settings
from database import create_document
from errors import PaymentVerificationFailed, ValidationError
from orders import OrderService
from payments import PaymentGateway, PaymentReceipt
from schemas import CartItem, Product, ShippingAddress, User

ADDRESS = {
    "fullName": "Asha Rao",
    "phone": "9876543210",
    "addressLine1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}


class RecordingDispatcher:
    def __init__(self, fail: bool = False):
        self.calls: List[tuple] = []
        self.fail = fail

    def order_placed(self, order, user):
        self.calls.append(("order_placed", order["id"], order["status"]))
        if self.fail:
            raise RuntimeError("smtp down")

    def status_changed(self, order, user):
        self.calls.append(("status_changed", order["id"], order["status"]))
        if self.fail:
            raise RuntimeError("smtp down")


class FakeGateway(PaymentGateway):
    """Accepts details with ok=True, rejects everything else."""
    name = "fake"

    def __init__(self):
        self.intents: List[Dict[str, Any]] = []

    def create_intent(self, amount, items, user_id):
        self.intents.append({"amount": amount, "items": items, "user_id": user_id})
        return {"success": True, "orderId": "gw_1", "amount": int(round(amount * 100)), "currency": "INR"}

    def confirm(self, details):
        if not details.get("razorpay_order_id"):
            raise ValidationError("Payment details are incomplete")
        if details.get("razorpay_signature") != "good":
            raise PaymentVerificationFailed()
        return PaymentReceipt(details["razorpay_order_id"], details["razorpay_payment_id"])


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret")


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(db, dispatcher, settings):
    return OrderService(db, dispatcher, settings)


def add_product(db, name="Basmati Rice", price=100.0, stock=5, **extra) -> str:
    fields = {"name": name, "price": price, "category": "Rice", "image_url": "http://img/x.png", "stock": stock}
    fields.update(extra)
    return create_document(db, "product", Product(**fields))


def add_user(db, name="Asha", email="asha@shopease.in", role="customer") -> Dict[str, Any]:
    uid = create_document(db, "user", User(name=name, email=email, password_hash="x", role=role))
    return db["user"].find_one({"_id": ObjectId(uid)})


def stock_of(db, product_id: str) -> int:
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


def lines(*pairs) -> List[CartItem]:
    return [CartItem(product_id=pid, quantity=qty) for pid, qty in pairs]


def address(**overrides) -> ShippingAddress:
    return ShippingAddress(**{**ADDRESS, **overrides})


@pytest.fixture
def client(db, dispatcher, gateway, settings):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_dispatcher] = lambda: dispatcher
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth_header(user: Dict[str, Any]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {main.create_access_token({'sub': str(user['_id'])})}"}


@pytest.fixture
def customer(db):
    return add_user(db)


@pytest.fixture
def admin(db):
    return add_user(db, name="Admin", email="admin@shopease.in", role="admin")


def fetch_order(db, order_id: str) -> Optional[Dict[str, Any]]:
    return db["order"].find_one({"_id": ObjectId(order_id)})
