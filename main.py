import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from starlette.concurrency import run_in_threadpool

import accounts
import reviews
from auth import get_current_user, public_user, require_roles
from database import db, get_db, serialize_doc
from errors import ForbiddenError, InsufficientStockError, PaymentFailedError, PaymentGatewayError, \
    ProductNotFoundError, ShopError, UserNotFoundError, ValidationError
from orders import OrderService
from payments import PaymentGateway, get_payment_gateways
from schemas import Address, CartLine, Coordinates, OrderStatus, PaymentMethod, Product as ProductSchema, \
    ShippingAddress, UserRole, effective_price
from stores import AccountStore, CatalogStore, OrderLedger, ReviewStore

APP_ENV = os.getenv("APP_ENV", "production")
CLIENT_URL = os.getenv("CLIENT_URL", "*")

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
LOG = logging.getLogger("api")


def ensure_indexes(database) -> None:
    OrderLedger(database).ensure_indexes()
    ReviewStore(database).ensure_indexes()
    database["user"].create_index("email", unique=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    yield


app = FastAPI(title="Grocery Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[CLIENT_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Errors -----------------------
@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    LOG.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"detail": "Server Error"}
    if APP_ENV == "development":
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# ----------------------- Dependencies -----------------------
def get_order_service(database=Depends(get_db), gateways=Depends(get_payment_gateways)) -> OrderService:
    return OrderService(CatalogStore(database), AccountStore(database), OrderLedger(database), gateways)


def get_card_gateway(gateways: Dict[PaymentMethod, PaymentGateway] = Depends(get_payment_gateways)) -> PaymentGateway:
    gateway = gateways.get(PaymentMethod.STRIPE)
    if gateway is None:
        raise PaymentGatewayError()
    return gateway


def serialize_product(doc: dict) -> dict:
    out = serialize_doc(doc)
    out["effective_price"] = effective_price(doc)
    return out


# ----------------------- Models -----------------------
class SignupBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: UserRole = UserRole.CUSTOMER
    phone: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None


class AddressBody(BaseModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"
    coordinates: Optional[Coordinates] = None
    is_default: bool = False


class AddressUpdateBody(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    is_default: Optional[bool] = None


class ProductCreateBody(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    category: str
    images: List[str] = Field(..., min_length=1)
    stock: int = Field(0, ge=0)
    unit: str = "pieces"
    discount: float = Field(0, ge=0, le=100)
    tags: List[str] = []


class ProductUpdateBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    stock_adjustment: Optional[int] = Field(None, description="Units to add (positive) or remove (negative)")
    unit: Optional[str] = None
    discount: Optional[float] = Field(None, ge=0, le=100)
    is_active: Optional[bool] = None
    tags: Optional[List[str]] = None


class OrderCreateBody(BaseModel):
    items: List[CartLine]
    shipping_address: Optional[ShippingAddress] = None
    address_id: Optional[str] = None
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    notes: Optional[str] = None


class StatusUpdateBody(BaseModel):
    status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    delivery_date: Optional[datetime] = None


class PaymentUpdateBody(BaseModel):
    payment_reference: Optional[str] = None


class PaymentIntentBody(BaseModel):
    amount: Decimal = Field(..., gt=0)


class PaymentVerifyBody(BaseModel):
    payment_intent_id: str


class ReviewCreateBody(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., max_length=500)


class ReviewUpdateBody(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


class UserUpdateBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[UserRole] = None
    phone: Optional[str] = None


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Grocery Storefront API running"}


@app.get("/api/health")
def health():
    response = {
        "status": "ok",
        "database": "Not Available",
        "database_url": "Set" if os.getenv("DATABASE_URL") else "Not Set",
        "database_name": "Set" if os.getenv("DATABASE_NAME") else "Not Set",
    }
    if db is not None:
        try:
            db.command("ping")
            response["database"] = "Connected"
        except Exception as e:
            response["database"] = f"Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/api/auth/register", status_code=201)
def register(body: SignupBody, database=Depends(get_db)):
    return accounts.register(AccountStore(database), body.name, body.email, body.password, body.role, body.phone)


@app.post("/api/auth/login")
def login(body: LoginBody, database=Depends(get_db)):
    return accounts.login(AccountStore(database), body.email, body.password)


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return user


@app.put("/api/auth/profile")
def update_profile(body: ProfileUpdateBody, user=Depends(get_current_user), database=Depends(get_db)):
    changes = body.model_dump(exclude_none=True)
    updated = AccountStore(database).update_user(user["id"], changes) if changes else None
    return public_user(updated) if updated else user


@app.post("/api/auth/address", status_code=201)
def add_address(body: AddressBody, user=Depends(get_current_user), database=Depends(get_db)):
    return accounts.add_address(AccountStore(database), user["id"], Address(**body.model_dump()))


@app.put("/api/auth/address/{address_id}")
def update_address(address_id: str, body: AddressUpdateBody, user=Depends(get_current_user),
                   database=Depends(get_db)):
    changes = body.model_dump(exclude_none=True)
    return accounts.update_address(AccountStore(database), user["id"], address_id, changes)


@app.delete("/api/auth/address/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user), database=Depends(get_db)):
    return accounts.delete_address(AccountStore(database), user["id"], address_id)


# ----------------------- Products -----------------------
PRODUCT_SORTS = {
    "price-asc": [("price", 1)],
    "price-desc": [("price", -1)],
    "rating": [("ratings.average", -1)],
    "popular": [("ratings.count", -1)],
    "newest": [("created_at", -1)],
}


@app.get("/api/products")
def list_products(page: int = 1, limit: int = 12, category: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  min_rating: Optional[float] = None, search: Optional[str] = None,
                  sort: str = "newest", database=Depends(get_db)):
    page, limit = max(page, 1), max(limit, 1)
    filt = {"is_active": True}
    if category:
        filt["category"] = category
    if min_price is not None or max_price is not None:
        filt["price"] = {}
        if min_price is not None:
            filt["price"]["$gte"] = min_price
        if max_price is not None:
            filt["price"]["$lte"] = max_price
    if min_rating is not None:
        filt["ratings.average"] = {"$gte": min_rating}
    if search:
        pattern = {"$regex": search, "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]
    items, total = CatalogStore(database).list_products(
        filt, PRODUCT_SORTS.get(sort, PRODUCT_SORTS["newest"]), (page - 1) * limit, limit
    )
    return {"products": [serialize_product(p) for p in items], "page": page, "pages": -(-total // limit),
            "total": total}


@app.get("/api/products/categories")
def list_categories(database=Depends(get_db)):
    return CatalogStore(database).categories()


@app.get("/api/products/seller/{seller_id}")
def products_by_seller(seller_id: str, database=Depends(get_db)):
    return [serialize_product(p) for p in CatalogStore(database).products_for_seller(seller_id, active_only=True)]


@app.get("/api/products/my/products")
def my_products(user=Depends(require_roles(UserRole.SELLER)), database=Depends(get_db)):
    return [serialize_product(p) for p in CatalogStore(database).products_for_seller(user["id"])]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, database=Depends(get_db)):
    product = CatalogStore(database).find_product(product_id)
    if not product:
        raise ProductNotFoundError()
    return serialize_product(product)


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(require_roles(UserRole.SELLER, UserRole.ADMIN)),
                   database=Depends(get_db)):
    product = ProductSchema(**body.model_dump(), seller_id=user["id"])
    return serialize_product(CatalogStore(database).create_product(product))


def _owned_product(catalog: CatalogStore, product_id: str, user: dict, action: str) -> dict:
    product = catalog.find_product(product_id)
    if not product:
        raise ProductNotFoundError()
    if user["role"] == UserRole.SELLER and product.get("seller_id") != user["id"]:
        raise ForbiddenError(f"Not authorized to {action} this product")
    return product


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody,
                   user=Depends(require_roles(UserRole.SELLER, UserRole.ADMIN)), database=Depends(get_db)):
    catalog = CatalogStore(database)
    product = _owned_product(catalog, product_id, user, "update")
    changes = body.model_dump(exclude_none=True)
    adjustment = changes.pop("stock_adjustment", None)
    if adjustment:
        if not catalog.adjust_stock(product_id, adjustment):
            raise InsufficientStockError(product.get("name"))
        LOG.info("Stock of %s adjusted by %+d by %s", product_id, adjustment, user["id"])
    if changes:
        product = catalog.update_product(product_id, changes)
    elif adjustment:
        product = catalog.find_product(product_id)
    return serialize_product(product)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_roles(UserRole.SELLER, UserRole.ADMIN)),
                   database=Depends(get_db)):
    catalog = CatalogStore(database)
    _owned_product(catalog, product_id, user, "delete")
    catalog.delete_product(product_id)
    return {"message": "Product removed"}


# ----------------------- Orders -----------------------
@app.post("/api/orders", status_code=201)
def create_order(body: OrderCreateBody, user=Depends(get_current_user),
                 service: OrderService = Depends(get_order_service)):
    return service.place_order(
        user["id"],
        body.items,
        shipping_address=body.shipping_address,
        payment_method=body.payment_method,
        payment_reference=body.payment_reference,
        address_id=body.address_id,
        notes=body.notes,
    )


@app.get("/api/orders")
def list_orders(page: int = 1, limit: int = 10, status: Optional[OrderStatus] = None,
                user=Depends(require_roles(UserRole.ADMIN)), service: OrderService = Depends(get_order_service)):
    return service.list_orders(status=status, page=page, limit=limit)


@app.get("/api/orders/my-orders")
def my_orders(user=Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    return service.customer_orders(user["id"])


@app.get("/api/orders/seller/orders")
def seller_orders(user=Depends(require_roles(UserRole.SELLER, UserRole.ADMIN)),
                  service: OrderService = Depends(get_order_service)):
    return service.seller_orders(user["id"])


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    return service.get_order(order_id, user)


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdateBody,
                        user=Depends(require_roles(UserRole.SELLER, UserRole.ADMIN)),
                        service: OrderService = Depends(get_order_service)):
    return service.advance_status(order_id, body.status, user, body.tracking_number, body.delivery_date)


@app.put("/api/orders/{order_id}/payment")
def update_payment(order_id: str, body: PaymentUpdateBody, user=Depends(get_current_user),
                   service: OrderService = Depends(get_order_service)):
    return service.confirm_order_payment(order_id, user, body.payment_reference)


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(get_current_user), service: OrderService = Depends(get_order_service)):
    return service.cancel_order(order_id, user)


# ----------------------- Payment -----------------------
@app.post("/api/payment/create-intent")
def create_payment_intent(body: PaymentIntentBody, user=Depends(get_current_user),
                          gateway: PaymentGateway = Depends(get_card_gateway)):
    intent = gateway.create_payment_intent(body.amount, metadata={"user_id": user["id"]})
    return {"client_secret": intent.client_secret, "payment_intent_id": intent.intent_id}


@app.post("/api/payment/verify")
def verify_payment(body: PaymentVerifyBody, user=Depends(get_current_user),
                   gateway: PaymentGateway = Depends(get_card_gateway)):
    confirmation = gateway.confirm_payment(body.payment_intent_id)
    if not confirmation.succeeded:
        raise PaymentFailedError()
    return {"success": True, "amount": float(confirmation.captured_amount), "payment_id": body.payment_intent_id}


PAYMENT_EVENTS = {
    "payment_intent.succeeded": True,
    "payment_intent.payment_failed": False,
}


@app.post("/api/payment/webhook")
async def payment_webhook(request: Request, gateway: PaymentGateway = Depends(get_card_gateway),
                          service: OrderService = Depends(get_order_service)):
    payload = await request.body()
    event = gateway.construct_event(payload, request.headers.get("stripe-signature"))
    event_type = event.get("type")
    intent = (event.get("data") or {}).get("object") or {}
    if event_type in PAYMENT_EVENTS:
        if not intent.get("id"):
            raise ValidationError("Payment event has no payment intent id")
        await run_in_threadpool(service.apply_payment_event, intent["id"], PAYMENT_EVENTS[event_type])
    else:
        LOG.info("Unhandled payment event type %s", event_type)
    return {"received": True}


# ----------------------- Reviews -----------------------
@app.get("/api/reviews/product/{product_id}")
def product_reviews(product_id: str, database=Depends(get_db)):
    items = ReviewStore(database).reviews_for_product(product_id)
    authors = AccountStore(database).find_users(r["user_id"] for r in items)
    out = []
    for r in items:
        review = serialize_doc(r)
        author = authors.get(r["user_id"])
        review["user"] = {"id": r["user_id"], "name": author.get("name"), "avatar": author.get("avatar")} \
            if author else None
        out.append(review)
    return out


@app.post("/api/reviews", status_code=201)
def create_review(body: ReviewCreateBody, user=Depends(get_current_user), database=Depends(get_db)):
    review = reviews.create_review(ReviewStore(database), CatalogStore(database), user["id"], body.product_id,
                                   body.rating, body.comment)
    return serialize_doc(review)


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, body: ReviewUpdateBody, user=Depends(get_current_user), database=Depends(get_db)):
    review = reviews.update_review(ReviewStore(database), CatalogStore(database), review_id, user["id"],
                                   body.rating, body.comment)
    return serialize_doc(review)


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, user=Depends(get_current_user), database=Depends(get_db)):
    reviews.delete_review(ReviewStore(database), CatalogStore(database), review_id, user["id"])
    return {"message": "Review removed"}


# ----------------------- Users (admin) -----------------------
@app.get("/api/users/sellers")
def list_sellers(database=Depends(get_db)):
    sellers, _ = AccountStore(database).list_users({"role": UserRole.SELLER.value}, 0, 0)
    return [{"id": str(s["_id"]), "name": s.get("name"), "email": s.get("email"), "avatar": s.get("avatar")}
            for s in sellers]


@app.get("/api/users")
def list_users(page: int = 1, limit: int = 10, role: Optional[UserRole] = None,
               user=Depends(require_roles(UserRole.ADMIN)), database=Depends(get_db)):
    page, limit = max(page, 1), max(limit, 1)
    query = {"role": role.value} if role else {}
    users, total = AccountStore(database).list_users(query, (page - 1) * limit, limit)
    return {"users": [public_user(u) for u in users], "page": page, "pages": -(-total // limit), "total": total}


@app.get("/api/users/stats")
def user_stats(user=Depends(require_roles(UserRole.ADMIN)), database=Depends(get_db)):
    store = AccountStore(database)
    return {
        "total_users": store.count(),
        "customers": store.count({"role": UserRole.CUSTOMER.value}),
        "sellers": store.count({"role": UserRole.SELLER.value}),
        "admins": store.count({"role": UserRole.ADMIN.value}),
    }


@app.get("/api/users/{user_id}")
def get_user(user_id: str, user=Depends(require_roles(UserRole.ADMIN)), database=Depends(get_db)):
    found = AccountStore(database).find_user(user_id)
    if not found:
        raise UserNotFoundError()
    return public_user(found)


@app.put("/api/users/{user_id}")
def update_user(user_id: str, body: UserUpdateBody, user=Depends(require_roles(UserRole.ADMIN)),
                database=Depends(get_db)):
    store = AccountStore(database)
    changes = body.model_dump(exclude_none=True, mode="json")
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        existing = store.find_by_email(changes["email"])
        if existing and str(existing["_id"]) != user_id:
            raise ValidationError("Email already registered")
    updated = store.update_user(user_id, changes) if changes else store.find_user(user_id)
    if not updated:
        raise UserNotFoundError()
    return public_user(updated)


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, user=Depends(require_roles(UserRole.ADMIN)), database=Depends(get_db)):
    if not AccountStore(database).delete_user(user_id):
        raise UserNotFoundError()
    return {"message": "User removed"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
