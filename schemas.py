"""
Database Schemas for ShopEase

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name by default.

Documents are stored with camelCase keys (``model_dump(by_alias=True)``), the
same keys the API returns.

We store:
- User (role plus the ids of the orders it placed)
- Product
- Order (line items are snapshots taken at purchase time)
- Notification (admin inbox, one record per admin)
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

ORDER_STATUSES = ("pending", "confirmed", "packed", "delivered", "cancelled")
TERMINAL_STATUSES = ("delivered", "cancelled")
PAYMENT_METHODS = ("cash_on_delivery", "online_payment")

Category = Literal["Rice", "Pulses", "Oils", "Snacks", "Beverages", "Spices", "Dairy", "Household"]
Unit = Literal["kg", "g", "L", "mL", "piece", "pack", "dozen", "box"]
OrderStatus = Literal["pending", "confirmed", "packed", "delivered", "cancelled"]
PaymentMethod = Literal["cash_on_delivery", "online_payment"]
NotificationType = Literal["order_placed", "order_status_changed", "payment_received"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(CamelModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")

    # Stored in DB, never returned in public responses
    password_hash: str = Field(..., description="Hashed password")

    role: Literal["customer", "admin"] = Field("customer", description="customer | admin")
    orders: List[str] = Field(default_factory=list, description="Ids of orders placed by this user")


class Product(CamelModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, description="Product name")
    price: float = Field(..., ge=0, description="Unit price")
    category: Category
    tags: List[str] = Field(default_factory=list, description="Search tags")
    image_url: str = Field(..., description="Image URL")
    stock: int = Field(0, ge=0, description="Available inventory")
    unit: Unit = "piece"
    created_at: datetime = Field(default_factory=_now)


class CartItem(CamelModel):
    """A requested line: product id and quantity, as sent by the client."""
    product_id: str = Field(..., min_length=1, description="Product id as string")
    quantity: int = Field(1, ge=1, description="Quantity for the product")


class OrderItem(CamelModel):
    """Line item snapshot; never updated after the order is placed."""
    product_id: str
    name: str
    price: float
    quantity: int
    unit: str = "piece"
    image_url: Optional[str] = None


class ShippingAddress(CamelModel):
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=1)
    country: str = "India"


class Order(CamelModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str
    products: List[OrderItem]
    total_amount: float
    payment_method: PaymentMethod
    payment_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    status: OrderStatus = "pending"
    created_at: datetime = Field(default_factory=_now)


class Notification(CamelModel):
    """
    Admin notifications collection schema
    Collection name: "notification"
    """
    type: NotificationType
    title: str
    message: str
    order_id: Optional[str] = None
    user_id: Optional[str] = None
    recipient_id: Optional[str] = Field(None, description="Admin the record was fanned out to")
    read: bool = False
    created_at: datetime = Field(default_factory=_now)
