from bson import ObjectId
from fastapi.testclient import TestClient

import main
from errors import PaymentNotCompleted
from payments import CashOnDeliveryGateway, PaymentGateway, PaymentReceipt
from conftest import ADDRESS, add_product, add_user, auth_header, fetch_order, stock_of


def _order_body(product_id, quantity=2, payment_method="cash_on_delivery", address=None):
    return {
        "products": [{"productId": product_id, "quantity": quantity}],
        "paymentMethod": payment_method,
        "shippingAddress": address if address is not None else ADDRESS,
    }


def test_place_cash_order_end_to_end(client, db, customer, dispatcher):
    p1 = add_product(db, price=100.0, stock=5)

    resp = client.post("/orders", json=_order_body(p1), headers=auth_header(customer))

    assert resp.status_code == 201
    order = resp.json()
    assert order["totalAmount"] == 200
    assert order["status"] == "pending"
    assert order["shippingAddress"]["fullName"] == "Asha Rao"
    assert stock_of(db, p1) == 3
    # background task ran after the response
    assert dispatcher.calls == [("order_placed", order["id"], "pending")]


def test_place_order_insufficient_stock(client, db, customer):
    p1 = add_product(db, price=100.0, stock=1)

    resp = client.post("/orders", json=_order_body(p1), headers=auth_header(customer))

    assert resp.status_code == 400
    assert resp.json()["message"] == "Insufficient stock for Basmati Rice"
    assert stock_of(db, p1) == 1
    assert db["order"].count_documents({}) == 0


def test_place_order_unknown_product(client, db, customer):
    resp = client.post("/orders", json=_order_body(str(ObjectId())), headers=auth_header(customer))
    assert resp.status_code == 404


def test_place_order_validation_errors(client, db, customer):
    p1 = add_product(db)
    headers = auth_header(customer)

    incomplete = {k: v for k, v in ADDRESS.items() if k != "city"}
    bodies = [
        {**_order_body(p1), "products": []},
        _order_body(p1, quantity=0),
        _order_body(p1, payment_method="cheque"),
        _order_body(p1, address=incomplete),
    ]
    for body in bodies:
        resp = client.post("/orders", json=body, headers=headers)
        assert resp.status_code == 400, body
        assert resp.json()["message"]
    assert stock_of(db, p1) == 5


def test_orders_require_authentication(client):
    assert client.get("/orders").status_code == 401
    resp = client.get("/orders", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid authentication"


def test_list_and_get_orders(client, db, customer, admin):
    p1 = add_product(db, stock=10)
    headers = auth_header(customer)
    first = client.post("/orders", json=_order_body(p1, 1), headers=headers).json()
    second = client.post("/orders", json=_order_body(p1, 2), headers=headers).json()

    mine = client.get("/orders", headers=headers).json()
    assert {o["id"] for o in mine} == {first["id"], second["id"]}

    assert client.get(f"/orders/{first['id']}", headers=headers).json()["id"] == first["id"]
    assert client.get(f"/orders/{first['id']}", headers=auth_header(admin)).status_code == 200

    stranger = add_user(db, name="Ravi", email="ravi@shopease.in")
    resp = client.get(f"/orders/{first['id']}", headers=auth_header(stranger))
    assert resp.status_code == 403

    assert client.get(f"/orders/{ObjectId()}", headers=headers).status_code == 404


def test_all_orders_is_admin_only(client, db, customer, admin):
    p1 = add_product(db)
    client.post("/orders", json=_order_body(p1, 1), headers=auth_header(customer))

    assert client.get("/orders/all", headers=auth_header(customer)).status_code == 403
    orders = client.get("/orders/all", headers=auth_header(admin)).json()
    assert len(orders) == 1
    assert orders[0]["customer"]["email"] == "asha@shopease.in"


def test_admin_marks_order_delivered(client, db, customer, admin):
    p1 = add_product(db)
    order = client.post("/orders", json=_order_body(p1), headers=auth_header(customer)).json()

    resp = client.put(f"/orders/{order['id']}", json={"status": "delivered"}, headers=auth_header(admin))

    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"
    notes = list(db["notification"].find({"type": "order_status_changed"}))
    assert len(notes) == 1
    assert notes[0]["orderId"] == order["id"]
    assert notes[0]["recipientId"] == str(admin["_id"])


def test_status_update_rules(client, db, customer, admin):
    p1 = add_product(db)
    order = client.post("/orders", json=_order_body(p1), headers=auth_header(customer)).json()

    resp = client.put(f"/orders/{order['id']}", json={"status": "packed"}, headers=auth_header(customer))
    assert resp.status_code == 403

    resp = client.put(f"/orders/{order['id']}", json={"status": "lost"}, headers=auth_header(admin))
    assert resp.status_code == 400
    assert fetch_order(db, order["id"])["status"] == "pending"


def test_cancel_order_endpoint(client, db, customer):
    p1 = add_product(db, stock=5)
    headers = auth_header(customer)
    order = client.post("/orders", json=_order_body(p1), headers=headers).json()

    resp = client.delete(f"/orders/{order['id']}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "cancelled"
    assert stock_of(db, p1) == 5

    again = client.delete(f"/orders/{order['id']}", headers=headers)
    assert again.status_code == 400
    assert again.json()["message"] == "This order cannot be cancelled"
    assert stock_of(db, p1) == 5


# ---------------------------------------------------------------- payments

def test_payment_intent_and_verify(client, db, customer, gateway):
    p1 = add_product(db, price=49.5, stock=5)
    headers = auth_header(customer)

    intent = client.post("/payment/create-order", json={"products": [{"productId": p1, "quantity": 2}]},
                         headers=headers)
    assert intent.status_code == 200
    assert intent.json()["amount"] == 9900

    body = {
        "razorpay_order_id": "order_1",
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": "good",
        "products": [{"productId": p1, "quantity": 2}],
        "shippingAddress": ADDRESS,
    }
    resp = client.post("/payment/verify", json=body, headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["order"]["status"] == "confirmed"
    assert data["order"]["paymentId"] == "pay_1"
    assert stock_of(db, p1) == 3


def test_verify_with_bad_signature(client, db, customer):
    p1 = add_product(db, stock=5)
    body = {
        "razorpay_order_id": "order_1",
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": "tampered",
        "products": [{"productId": p1, "quantity": 2}],
    }
    resp = client.post("/payment/verify", json=body, headers=auth_header(customer))

    assert resp.status_code == 400
    assert resp.json()["message"] == "Payment verification failed"
    assert stock_of(db, p1) == 5
    assert db["order"].count_documents({}) == 0


def test_verify_with_missing_details(client, db, customer):
    p1 = add_product(db)
    body = {"products": [{"productId": p1, "quantity": 1}]}
    resp = client.post("/payment/verify", json=body, headers=auth_header(customer))
    assert resp.status_code == 400
    assert resp.json()["message"] == "Payment details are incomplete"


def test_online_payment_disabled_without_gateway(client, db, customer):
    main.app.dependency_overrides[main.get_gateway] = CashOnDeliveryGateway
    p1 = add_product(db)
    resp = client.post("/payment/create-order", json={"products": [{"productId": p1, "quantity": 1}]},
                       headers=auth_header(customer))
    assert resp.status_code == 400
    assert resp.json()["message"] == "Online payment is not available"


def test_orders_endpoint_refuses_unpaid_online_orders(client, db, customer):
    p1 = add_product(db, stock=5)
    resp = client.post("/orders", json=_order_body(p1, payment_method="online_payment"),
                       headers=auth_header(customer))

    assert resp.status_code == 400
    assert stock_of(db, p1) == 5
    assert db["order"].count_documents({}) == 0


class CaptureGateway(PaymentGateway):
    name = "capture"

    def confirm(self, details):
        if details["orderId"] != "PP-OK":
            raise PaymentNotCompleted()
        return PaymentReceipt(details["orderId"], "CAP-1")


def test_capture_order_places_confirmed_order(client, db, customer):
    main.app.dependency_overrides[main.get_gateway] = CaptureGateway
    p1 = add_product(db, price=20.0, stock=4)
    headers = auth_header(customer)

    pending = client.post("/payment/capture-order", headers=headers,
                          json={"orderId": "PP-WAIT", "products": [{"productId": p1, "quantity": 1}]})
    assert pending.status_code == 400
    assert db["order"].count_documents({}) == 0

    resp = client.post("/payment/capture-order", headers=headers,
                       json={"orderId": "PP-OK", "products": [{"productId": p1, "quantity": 3}]})
    assert resp.status_code == 200
    order = resp.json()["order"]
    assert order["status"] == "confirmed"
    assert (order["paymentOrderId"], order["paymentId"]) == ("PP-OK", "CAP-1")
    assert order["totalAmount"] == 60.0
    assert stock_of(db, p1) == 1


# ------------------------------------------------------------------ admin

def test_dashboard(client, db, customer, admin):
    p1 = add_product(db, price=100.0, stock=10)
    client.post("/orders", json=_order_body(p1, 1), headers=auth_header(customer))

    assert client.get("/admin/dashboard", headers=auth_header(customer)).status_code == 403
    stats = client.get("/admin/dashboard", headers=auth_header(admin)).json()
    assert stats == {"totalProducts": 1, "totalOrders": 1, "pendingOrders": 1, "totalRevenue": 100.0}


def test_notification_inbox(client, db, customer, admin):
    p1 = add_product(db, stock=10)
    client.post("/orders", json=_order_body(p1, 1), headers=auth_header(customer))
    client.post("/orders", json=_order_body(p1, 1), headers=auth_header(customer))
    headers = auth_header(admin)

    notes = client.get("/notifications", headers=headers).json()
    assert len(notes) == 2
    assert client.get("/notifications/unread-count", headers=headers).json() == {"count": 2}

    read = client.put(f"/notifications/{notes[0]['id']}/read", headers=headers)
    assert read.json()["read"] is True
    assert client.get("/notifications/unread-count", headers=headers).json() == {"count": 1}

    client.put("/notifications/read-all", headers=headers)
    assert client.get("/notifications/unread-count", headers=headers).json() == {"count": 0}

    assert client.delete(f"/notifications/{notes[1]['id']}", headers=headers).status_code == 200
    assert client.delete(f"/notifications/{notes[1]['id']}", headers=headers).status_code == 404
    assert client.get("/notifications", headers=auth_header(customer)).status_code == 403


# ---------------------------------------------------------------- catalog

def test_product_crud(client, db, admin, customer):
    headers = auth_header(admin)
    body = {"name": "Mustard Oil", "price": 210, "category": "Oils", "imageUrl": "http://img/oil.png",
            "stock": 12, "unit": "L", "tags": ["oil", "kachi ghani"]}

    assert client.post("/products", json=body, headers=auth_header(customer)).status_code == 403
    created = client.post("/products", json=body, headers=headers)
    assert created.status_code == 201
    pid = created.json()["id"]

    updated = client.put(f"/products/{pid}", json={"price": 199.0}, headers=headers).json()
    assert updated["price"] == 199.0
    assert updated["stock"] == 12

    assert client.post("/products", json={**body, "category": "Toys"}, headers=headers).status_code == 400
    assert client.get(f"/products/{pid}").json()["name"] == "Mustard Oil"
    assert client.delete(f"/products/{pid}", headers=headers).status_code == 200
    assert client.get(f"/products/{pid}").status_code == 404
    assert client.get("/products/nonsense").status_code == 404


def test_product_listing_filters_and_sorts(client, db):
    add_product(db, name="Basmati Rice", price=120.0)
    add_product(db, name="Sona Masoori Rice", price=60.0)
    add_product(db, name="Toor Dal", price=150.0, category="Pulses")

    names = [p["name"] for p in client.get("/products", params={"sort": "price-low"}).json()]
    assert names == ["Sona Masoori Rice", "Basmati Rice", "Toor Dal"]

    rice = client.get("/products", params={"category": "Rice", "sort": "price-high"}).json()
    assert [p["name"] for p in rice] == ["Basmati Rice", "Sona Masoori Rice"]

    found = client.get("/products", params={"search": "dal", "category": "all"}).json()
    assert [p["name"] for p in found] == ["Toor Dal"]


def test_deleting_product_keeps_order_history(client, db, customer, admin):
    p1 = add_product(db, price=100.0)
    order = client.post("/orders", json=_order_body(p1), headers=auth_header(customer)).json()

    client.delete(f"/products/{p1}", headers=auth_header(admin))

    fetched = client.get(f"/orders/{order['id']}", headers=auth_header(customer)).json()
    assert fetched["products"][0]["name"] == "Basmati Rice"
    assert fetched["totalAmount"] == 200


# ------------------------------------------------------------------- auth

def test_register_login_and_me(client, db):
    resp = client.post("/auth/register", json={"name": "Meera", "email": "meera@shopease.in", "password": "pw12345"})
    assert resp.status_code == 200
    assert resp.json()["user"]["role"] == "customer"

    dup = client.post("/auth/register", json={"name": "Meera", "email": "meera@shopease.in", "password": "x"})
    assert dup.status_code == 400
    assert dup.json()["message"] == "Email already registered"

    bad = client.post("/auth/login", json={"email": "meera@shopease.in", "password": "wrong"})
    assert bad.status_code == 401

    token = client.post("/auth/login", json={"email": "meera@shopease.in", "password": "pw12345"}).json()
    me = client.get("/me", headers={"Authorization": f"Bearer {token['access_token']}"}).json()
    assert me["email"] == "meera@shopease.in"
    assert "passwordHash" not in me


def test_seed_bootstraps_admin_and_catalog(db, settings):
    main.seed_data(db, settings)
    main.seed_data(db, settings)

    admins = list(db["user"].find({"role": "admin"}))
    assert [a["email"] for a in admins] == [settings.admin_email]
    assert main.verify_password(settings.admin_password, admins[0]["passwordHash"])
    assert db["product"].count_documents({}) == len(main.SAMPLE_PRODUCTS)


def test_seed_promotes_existing_user(db, settings):
    add_user(db, name="Owner", email=settings.admin_email, role="customer")
    main.seed_data(db, settings)
    assert db["user"].find_one({"email": settings.admin_email})["role"] == "admin"


# ----------------------------------------------------------------- errors

def test_unhandled_errors_become_500(db, dispatcher, settings, customer, monkeypatch):
    def boom(self, user):
        raise RuntimeError("db exploded")

    monkeypatch.setattr("orders.OrderService.list_for_user", boom)
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_dispatcher] = lambda: dispatcher
    try:
        client = TestClient(main.app, raise_server_exceptions=False)
        resp = client.get("/orders", headers=auth_header(customer))
    finally:
        main.app.dependency_overrides.clear()

    assert resp.status_code == 500
    assert resp.json() == {"message": "Internal server error"}


def test_database_not_configured(monkeypatch):
    monkeypatch.setattr("database.db", None)
    client = TestClient(main.app)
    resp = client.get("/products")
    assert resp.status_code == 500
    assert resp.json()["message"] == "Database not configured"
    assert client.get("/test").json()["db"] == "not configured"
