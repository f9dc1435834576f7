"""
Order workflow: placement, payment settlement, status changes, cancellation
and the dashboard rollup.

Nothing here locks or reserves stock. Every request reads stock, checks it and
writes a ``$inc``; two checkouts racing on the same product can both pass the
check and drive stock below zero.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId

from database import create_document, utcnow
from errors import AccessDenied, InsufficientStock, InvalidStateError, NotFound, ValidationError
from notifications import notify_admins
from payments import PaymentGateway, PaymentReceipt
from schemas import (
    ORDER_STATUSES,
    PAYMENT_METHODS,
    TERMINAL_STATUSES,
    Order,
    OrderItem,
    ShippingAddress,
)

logger = logging.getLogger(__name__)

RESTOCK_STATUSES = ("pending", "confirmed")


def to_object_id(value: str, what: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} {value} not found")


def doc_to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    doc.pop("passwordHash", None)
    return doc


def _run_inline(func: Callable, *args, **kwargs):
    func(*args, **kwargs)


class OrderService:
    """
    One instance per request. ``defer`` schedules the customer notifications;
    the API passes ``BackgroundTasks.add_task`` so they run after the response.
    """

    def __init__(self, db, dispatcher, settings, defer: Optional[Callable] = None):
        self.db = db
        self.dispatcher = dispatcher
        self.settings = settings
        self.defer = defer or _run_inline

    # ---------------------------------------------------------------- pricing

    def _load_product(self, product_id: str) -> Dict[str, Any]:
        product = None
        try:
            product = self.db["product"].find_one({"_id": ObjectId(product_id)})
        except (InvalidId, TypeError):
            pass
        if not product:
            raise NotFound(f"Product {product_id} not found")
        return product

    def _line_for(self, product: Dict[str, Any], quantity: int, needed: Optional[int] = None) -> OrderItem:
        if product.get("stock", 0) < (quantity if needed is None else needed):
            raise InsufficientStock(product["name"])
        return OrderItem(
            product_id=str(product["_id"]),
            name=product["name"],
            price=product["price"],
            quantity=quantity,
            unit=product.get("unit") or "piece",
            image_url=product.get("imageUrl"),
        )

    @staticmethod
    def _check_items(items) -> None:
        if not items:
            raise ValidationError("At least one product is required")
        for item in items:
            if item.quantity < 1:
                raise ValidationError("Quantity must be at least 1")

    def quote(self, items) -> Tuple[List[OrderItem], float]:
        """Price the request from live catalog data and check stock. Writes nothing."""
        self._check_items(items)
        products, needed = {}, {}
        for item in items:
            if item.product_id not in products:
                products[item.product_id] = self._load_product(item.product_id)
            needed[item.product_id] = needed.get(item.product_id, 0) + item.quantity
        # Repeated lines for one product are checked against their combined quantity
        lines = [self._line_for(products[item.product_id], item.quantity, needed[item.product_id])
                 for item in items]
        return lines, sum(line.price * line.quantity for line in lines)

    def take_stock(self, lines: List[OrderItem]) -> None:
        for line in lines:
            self.db["product"].update_one({"_id": ObjectId(line.product_id)}, {"$inc": {"stock": -line.quantity}})

    def _take_sequentially(self, items) -> Tuple[List[OrderItem], float]:
        # Each line is written before the next is checked; a later failure
        # leaves the earlier decrements in place.
        self._check_items(items)
        lines, total = [], 0.0
        for item in items:
            line = self._line_for(self._load_product(item.product_id), item.quantity)
            total += line.price * line.quantity
            lines.append(line)
            self.take_stock([line])
        return lines, total

    def _reserve(self, items) -> Tuple[List[OrderItem], float]:
        if not self.settings.atomic_line_items:
            return self._take_sequentially(items)
        lines, total = self.quote(items)
        self.take_stock(lines)
        return lines, total

    # --------------------------------------------------------------- placing

    def place_order(self, user: Dict[str, Any], items, payment_method: str,
                    shipping_address: Optional[ShippingAddress] = None,
                    receipt: Optional[PaymentReceipt] = None) -> Dict[str, Any]:
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError("Invalid payment method")
        if payment_method == "cash_on_delivery" and shipping_address is None:
            raise ValidationError("Shipping address is required")
        if payment_method == "online_payment" and receipt is None:
            raise ValidationError("Online payment must be verified before the order is placed")

        lines, total = self._reserve(items)
        user_id = str(user["_id"])
        order = Order(
            user_id=user_id,
            products=lines,
            total_amount=total,
            payment_method=payment_method,
            payment_order_id=receipt.order_id if receipt else None,
            payment_id=receipt.payment_id if receipt else None,
            shipping_address=shipping_address,
            status="pending" if payment_method == "cash_on_delivery" else "confirmed",
        )
        order_id = create_document(self.db, "order", order)
        self.db["user"].update_one({"_id": user["_id"]}, {"$push": {"orders": order_id}})
        logger.info("Order %s placed by %s: %d lines, total %.2f, %s",
                    order_id, user_id, len(lines), total, payment_method)

        notify_admins(
            self.db, "order_placed", "New Order Placed",
            f"{user.get('name')} ({user.get('email')}) has placed a new order of "
            f"{self.settings.currency_symbol}{total:.2f}. Order ID: {order_id}",
            order_id=order_id, user_id=user_id,
        )
        placed = self._get(order_id)
        self.defer(self._dispatch, "order_placed", placed, doc_to_public(user))
        return placed

    def create_payment_intent(self, user: Dict[str, Any], items, gateway: PaymentGateway) -> Dict[str, Any]:
        lines, total = self.quote(items)
        logger.info("Creating %s payment intent for %s: %.2f", gateway.name, user["_id"], total)
        return gateway.create_intent(total, lines, str(user["_id"]))

    def settle_payment(self, user: Dict[str, Any], items, details: Dict[str, Any], gateway: PaymentGateway,
                       shipping_address: Optional[ShippingAddress] = None) -> Dict[str, Any]:
        """Confirm the payment with the gateway, then re-price and place the order."""
        self._check_items(items)
        receipt = gateway.confirm(details)
        logger.info("%s payment confirmed: %r", gateway.name, receipt)
        return self.place_order(user, items, "online_payment", shipping_address, receipt=receipt)

    # --------------------------------------------------------------- reading

    def _get(self, order_id: str) -> Dict[str, Any]:
        doc = self.db["order"].find_one({"_id": to_object_id(order_id, "Order")})
        if not doc:
            raise NotFound("Order not found")
        return doc_to_public(doc)

    def list_for_user(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self.db["order"].find({"userId": str(user["_id"])}).sort("createdAt", -1)
        return [doc_to_public(o) for o in cursor]

    def list_all(self) -> List[Dict[str, Any]]:
        orders = [doc_to_public(o) for o in self.db["order"].find({}).sort("createdAt", -1)]
        user_ids = {ObjectId(o["userId"]) for o in orders if ObjectId.is_valid(o.get("userId"))}
        customers = {
            str(u["_id"]): {"name": u.get("name"), "email": u.get("email")}
            for u in self.db["user"].find({"_id": {"$in": list(user_ids)}}, {"name": 1, "email": 1})
        }
        for order in orders:
            order["customer"] = customers.get(order.get("userId"))
        return orders

    def get_for(self, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        order = self._get(order_id)
        if order["userId"] != str(user["_id"]) and user.get("role") != "admin":
            raise AccessDenied()
        return order

    # --------------------------------------------------------------- changes

    def update_status(self, order_id: str, status: str) -> Dict[str, Any]:
        if status not in ORDER_STATUSES:
            raise ValidationError("Invalid status")
        order = self._get(order_id)
        old_status = order["status"]
        if self.settings.enforce_status_flow and old_status in TERMINAL_STATUSES and status != old_status:
            raise InvalidStateError(f"Order is already {old_status}")

        self.db["order"].update_one({"_id": ObjectId(order["id"])},
                                    {"$set": {"status": status, "updatedAt": utcnow()}})
        updated = self._get(order_id)
        if old_status == status:
            return updated

        logger.info("Order %s status %s -> %s", order["id"], old_status, status)
        customer = None
        if ObjectId.is_valid(order["userId"]):
            customer = doc_to_public(self.db["user"].find_one({"_id": ObjectId(order["userId"])}))
        self.defer(self._dispatch, "status_changed", updated, customer)

        if status == "delivered":
            name = (customer or {}).get("name") or "customer"
            notify_admins(self.db, "order_status_changed", "Order Delivered",
                          f"Order {order['id']} has been delivered to {name}",
                          order_id=order["id"], user_id=order["userId"])
        return updated

    def cancel(self, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        """Soft-cancel; restores stock when the order had not been packed yet."""
        order = self._get(order_id)
        if order["userId"] != str(user["_id"]) and user.get("role") != "admin":
            raise AccessDenied()
        if order["status"] in TERMINAL_STATUSES:
            raise InvalidStateError("This order cannot be cancelled")

        if order["status"] in RESTOCK_STATUSES:
            for line in order.get("products", []):
                if not ObjectId.is_valid(line.get("productId")):
                    continue
                # A deleted product simply matches nothing
                self.db["product"].update_one({"_id": ObjectId(line["productId"])},
                                              {"$inc": {"stock": line["quantity"]}})

        self.db["order"].update_one({"_id": ObjectId(order["id"])},
                                    {"$set": {"status": "cancelled", "updatedAt": utcnow()}})
        logger.info("Order %s cancelled by %s (was %s)", order["id"], user["_id"], order["status"])
        return self._get(order_id)

    # ------------------------------------------------------------- reporting

    def dashboard_stats(self) -> Dict[str, Any]:
        revenue = list(self.db["order"].aggregate([
            {"$match": {"status": {"$ne": "cancelled"}}},
            {"$group": {"_id": None, "total": {"$sum": "$totalAmount"}}},
        ]))
        return {
            "totalProducts": self.db["product"].count_documents({}),
            "totalOrders": self.db["order"].count_documents({}),
            "pendingOrders": self.db["order"].count_documents({"status": "pending"}),
            "totalRevenue": revenue[0]["total"] if revenue else 0,
        }

    # --------------------------------------------------------- notifications

    def _dispatch(self, event: str, order: Dict[str, Any], user: Optional[Dict[str, Any]]):
        try:
            getattr(self.dispatcher, event)(order, user)
        except Exception:
            logger.exception("Customer notification %s failed for order %s", event, order.get("id"))
