import logging
import re
import traceback
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Query, BackgroundTasks, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException
import jwt
from passlib.context import CryptContext
from bson import ObjectId

import database
from config import Settings, configure_logging
from database import create_document, get_documents, utcnow
from errors import ShopError
from notifications import NotificationDispatcher
from orders import OrderService, doc_to_public, to_object_id
from payments import PaymentGateway, build_gateway
from schemas import (
    CamelModel,
    CartItem,
    Category,
    OrderStatus,
    PaymentMethod,
    Product as ProductSchema,
    ShippingAddress,
    Unit,
    User as UserSchema,
)

# ----------------------------------------------------------------------------
# App and Security Setup
# ----------------------------------------------------------------------------

settings = Settings.from_env()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

JWT_ALG = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

# Vendor clients are built once per process and injected per request
gateway = build_gateway(settings)
dispatcher = NotificationDispatcher.from_settings(settings)

app = FastAPI(title="ShopEase API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------------------------------------------------------
# Dependencies and Utilities
# ----------------------------------------------------------------------------

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Optional[Dict[str, Any]] = None


def get_settings() -> Settings:
    return settings


def get_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database.db


def get_gateway() -> PaymentGateway:
    return gateway


def get_dispatcher() -> NotificationDispatcher:
    return dispatcher


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(subject: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = subject.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=JWT_ALG)


async def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(uid)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def get_current_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Access denied. Admin only.")
    return user


def get_order_service(
    background_tasks: BackgroundTasks,
    db=Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
    current_settings: Settings = Depends(get_settings),
) -> OrderService:
    return OrderService(db, notifier, current_settings, defer=background_tasks.add_task)


# ----------------------------------------------------------------------------
# Error Handlers
# ----------------------------------------------------------------------------

@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    logger.info("%s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg")} for e in exc.errors()]
    message = errors[0]["msg"] if errors else "Validation error"
    return JSONResponse(status_code=400, content={"message": message, "errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"message": "Internal server error"}
    if settings.debug:
        content["error"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=500, content=content)


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProductCreateRequest(CamelModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category: Category
    tags: List[str] = []
    image_url: str = Field(..., min_length=1)
    stock: int = Field(0, ge=0)
    unit: Unit = "piece"


class ProductUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[Category] = None
    tags: Optional[List[str]] = None
    image_url: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    unit: Optional[Unit] = None


class OrderCreateRequest(CamelModel):
    products: List[CartItem] = Field(..., min_length=1)
    payment_method: PaymentMethod
    shipping_address: ShippingAddress


class StatusUpdateRequest(CamelModel):
    status: OrderStatus


class PaymentIntentRequest(CamelModel):
    products: List[CartItem] = Field(..., min_length=1)


class VerifyPaymentRequest(CamelModel):
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    products: List[CartItem] = Field(..., min_length=1)
    shipping_address: Optional[ShippingAddress] = None


class CaptureOrderRequest(CamelModel):
    order_id: str = Field(..., min_length=1)
    products: List[CartItem] = Field(..., min_length=1)
    shipping_address: Optional[ShippingAddress] = None


# ----------------------------------------------------------------------------
# Auth Endpoints
# ----------------------------------------------------------------------------

def _token_for(user: Dict[str, Any]) -> TokenResponse:
    token = create_access_token({"sub": str(user["_id"])})
    public = doc_to_public(user)
    return TokenResponse(access_token=token, user={k: public.get(k) for k in ("id", "name", "email", "role")})


@app.post("/auth/register", response_model=TokenResponse)
def register(body: RegisterRequest, db=Depends(get_db)):
    existing = db["user"].find_one({"email": body.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        role="customer",
        orders=[],
    )
    try:
        uid = create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("Registered user %s", uid)
    return _token_for(db["user"].find_one({"_id": ObjectId(uid)}))


@app.post("/auth/login", response_model=TokenResponse)
def login(body: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or not user.get("passwordHash") or not verify_password(body.password, user["passwordHash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _token_for(user)


@app.get("/me")
def me(current=Depends(get_current_user)):
    return doc_to_public(current)


# ----------------------------------------------------------------------------
# Product Endpoints
# ----------------------------------------------------------------------------

@app.get("/products")
def list_products(
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    sort: Optional[str] = Query(None, description="price-low|price-high|newest"),
    db=Depends(get_db),
):
    query: Dict[str, Any] = {}
    if category and category != "all":
        query["category"] = category
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]

    sort_map = {
        "price-low": ("price", 1),
        "price-high": ("price", -1),
    }
    items = get_documents(db, "product", query, sort=[sort_map.get(sort, ("createdAt", -1))])
    return [doc_to_public(x) for x in items]


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    doc = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc_to_public(doc)


@app.post("/products", status_code=201)
def create_product(body: ProductCreateRequest, db=Depends(get_db), user=Depends(get_current_admin)):
    product = ProductSchema(**body.model_dump())
    pid = create_document(db, "product", product)
    logger.info("Product %s created by %s", pid, user["_id"])
    return doc_to_public(db["product"].find_one({"_id": ObjectId(pid)}))


@app.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateRequest, db=Depends(get_db), user=Depends(get_current_admin)):
    update = {k: v for k, v in body.model_dump(by_alias=True).items() if v is not None}
    update["updatedAt"] = utcnow()
    oid = to_object_id(product_id, "Product")
    res = db["product"].update_one({"_id": oid}, {"$set": update})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc_to_public(db["product"].find_one({"_id": oid}))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, db=Depends(get_db), user=Depends(get_current_admin)):
    # Orders keep their own snapshot of the product, nothing else to clean up
    res = db["product"].delete_one({"_id": to_object_id(product_id, "Product")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"message": "Product deleted successfully"}


# ----------------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------------

@app.post("/orders", status_code=201)
def create_order(body: OrderCreateRequest, current=Depends(get_current_user),
                 service: OrderService = Depends(get_order_service)):
    return service.place_order(current, body.products, body.payment_method, body.shipping_address)


@app.get("/orders")
def list_orders(current=Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    return service.list_for_user(current)


@app.get("/orders/all")
def all_orders(user=Depends(get_current_admin), service: OrderService = Depends(get_order_service)):
    return service.list_all()


@app.get("/orders/{order_id}")
def get_order(order_id: str, current=Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    return service.get_for(order_id, current)


@app.put("/orders/{order_id}")
def update_order_status(order_id: str, body: StatusUpdateRequest, user=Depends(get_current_admin),
                        service: OrderService = Depends(get_order_service)):
    return service.update_status(order_id, body.status)


@app.delete("/orders/{order_id}")
def cancel_order(order_id: str, current=Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    order = service.cancel(order_id, current)
    return {"message": "Order cancelled successfully", "order": order}


# ----------------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------------

@app.post("/payment/create-order")
def create_payment_order(body: PaymentIntentRequest, current=Depends(get_current_user),
                         service: OrderService = Depends(get_order_service),
                         payment_gateway: PaymentGateway = Depends(get_gateway)):
    return service.create_payment_intent(current, body.products, payment_gateway)


@app.post("/payment/verify")
def verify_payment(body: VerifyPaymentRequest, current=Depends(get_current_user),
                   service: OrderService = Depends(get_order_service),
                   payment_gateway: PaymentGateway = Depends(get_gateway)):
    details = body.model_dump(include={"razorpay_order_id", "razorpay_payment_id", "razorpay_signature"})
    order = service.settle_payment(current, body.products, details, payment_gateway, body.shipping_address)
    return {"success": True, "order": order, "message": "Payment successful and order placed"}


@app.post("/payment/capture-order")
def capture_payment(body: CaptureOrderRequest, current=Depends(get_current_user),
                    service: OrderService = Depends(get_order_service),
                    payment_gateway: PaymentGateway = Depends(get_gateway)):
    details = {"orderId": body.order_id}
    order = service.settle_payment(current, body.products, details, payment_gateway, body.shipping_address)
    return {"success": True, "order": order, "message": "Payment captured and order placed"}


# ----------------------------------------------------------------------------
# Admin: Dashboard and Notifications
# ----------------------------------------------------------------------------

@app.get("/admin/dashboard")
def dashboard(user=Depends(get_current_admin), service: OrderService = Depends(get_order_service)):
    return service.dashboard_stats()


@app.get("/notifications")
def list_notifications(user=Depends(get_current_admin), db=Depends(get_db)):
    items = get_documents(db, "notification", {"recipientId": str(user["_id"])},
                          limit=50, sort=[("createdAt", -1)])
    return [doc_to_public(n) for n in items]


@app.get("/notifications/unread-count")
def unread_count(user=Depends(get_current_admin), db=Depends(get_db)):
    return {"count": db["notification"].count_documents({"recipientId": str(user["_id"]), "read": False})}


@app.put("/notifications/read-all")
def mark_all_read(user=Depends(get_current_admin), db=Depends(get_db)):
    db["notification"].update_many({"recipientId": str(user["_id"]), "read": False},
                                   {"$set": {"read": True, "updatedAt": utcnow()}})
    return {"message": "All notifications marked as read"}


@app.put("/notifications/{notification_id}/read")
def mark_read(notification_id: str, user=Depends(get_current_admin), db=Depends(get_db)):
    query = {"_id": to_object_id(notification_id, "Notification"), "recipientId": str(user["_id"])}
    res = db["notification"].update_one(query, {"$set": {"read": True, "updatedAt": utcnow()}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Notification not found")
    return doc_to_public(db["notification"].find_one(query))


@app.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, user=Depends(get_current_admin), db=Depends(get_db)):
    query = {"_id": to_object_id(notification_id, "Notification"), "recipientId": str(user["_id"])}
    res = db["notification"].delete_one(query)
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"message": "Notification deleted successfully"}


# ----------------------------------------------------------------------------
# Health and Test
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "ShopEase API running"}


@app.get("/test")
def test_database():
    if database.db is None:
        return {"backend": "ok", "db": "not configured"}
    try:
        collections = database.db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "db": f"error: {e}"}


# ----------------------------------------------------------------------------
# Seed Data (idempotent) and Startup Hook
# ----------------------------------------------------------------------------

SAMPLE_PRODUCTS = [
    {
        "name": "Basmati Rice",
        "price": 120.0,
        "category": "Rice",
        "tags": ["rice", "basmati", "long grain"],
        "imageUrl": "https://images.unsplash.com/photo-1586201375761-83865001e31c?q=80&w=1200&auto=format&fit=crop",
        "stock": 150,
        "unit": "kg",
    },
    {
        "name": "Toor Dal",
        "price": 160.0,
        "category": "Pulses",
        "tags": ["dal", "lentils"],
        "imageUrl": "https://images.unsplash.com/photo-1612257999756-9d9d6b2c4c2b?q=80&w=1200&auto=format&fit=crop",
        "stock": 90,
        "unit": "kg",
    },
    {
        "name": "Sunflower Oil",
        "price": 185.5,
        "category": "Oils",
        "tags": ["oil", "cooking"],
        "imageUrl": "https://images.unsplash.com/photo-1474979266404-7eaacbcd87c5?q=80&w=1200&auto=format&fit=crop",
        "stock": 60,
        "unit": "L",
    },
    {
        "name": "Masala Tea",
        "price": 95.0,
        "category": "Beverages",
        "tags": ["tea", "chai"],
        "imageUrl": "https://images.unsplash.com/photo-1544787219-7f47ccb76574?q=80&w=1200&auto=format&fit=crop",
        "stock": 120,
        "unit": "pack",
    },
    {
        "name": "Fresh Paneer",
        "price": 90.0,
        "category": "Dairy",
        "tags": ["paneer", "cottage cheese"],
        "imageUrl": "https://images.unsplash.com/photo-1631452180519-c014fe946bc7?q=80&w=1200&auto=format&fit=crop",
        "stock": 40,
        "unit": "pack",
    },
]


def seed_data(db, current_settings: Settings = settings):
    db["user"].create_index("email", unique=True)

    # Ensure the configured admin exists with the configured password
    existing_admin = db["user"].find_one({"email": current_settings.admin_email})
    if existing_admin:
        db["user"].update_one(
            {"_id": existing_admin["_id"]},
            {"$set": {"role": "admin", "passwordHash": hash_password(current_settings.admin_password),
                      "updatedAt": utcnow()}},
        )
    else:
        admin = UserSchema(
            name=current_settings.admin_name,
            email=current_settings.admin_email,
            password_hash=hash_password(current_settings.admin_password),
            role="admin",
            orders=[],
        )
        create_document(db, "user", admin)
        logger.info("Default admin user created: %s", current_settings.admin_email)

    # Seed products if collection is empty
    if db["product"].count_documents({}) == 0:
        for p in SAMPLE_PRODUCTS:
            create_document(db, "product", ProductSchema(**p))
        logger.info("Seeded %d sample products", len(SAMPLE_PRODUCTS))


@app.post("/admin/seed")
def trigger_seed(user=Depends(get_current_admin), db=Depends(get_db)):
    seed_data(db)
    return {"seeded": True}


@app.on_event("startup")
def on_startup():
    if database.db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; skipping seed")
        return
    try:
        seed_data(database.db)
    except Exception:
        logger.exception("Seeding failed on startup")


if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
