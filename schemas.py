"""
Database Schemas for the Grocery Storefront

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
Embedded documents (addresses, line items, ratings) have their own models.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserRole(str, Enum):
    CUSTOMER = "customer"
    SELLER = "seller"
    ADMIN = "admin"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    COD = "cod"


class Coordinates(BaseModel):
    lat: float
    lng: float


class ShippingAddress(BaseModel):
    """Address snapshot copied onto an order."""
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"
    coordinates: Optional[Coordinates] = None


class Address(ShippingAddress):
    id: str = Field(default_factory=lambda: str(ObjectId()))
    is_default: bool = False


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: Optional[str] = Field(None, description="Absent for federated accounts")
    role: UserRole = UserRole.CUSTOMER
    avatar: Optional[str] = None
    phone: Optional[str] = None
    addresses: List[Address] = []


class Ratings(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    category: str
    images: List[str] = Field(..., min_length=1)
    stock: int = Field(0, ge=0)
    unit: str = Field("pieces", description="kg, liters, pieces, ...")
    seller_id: str
    ratings: Ratings = Ratings()
    discount: float = Field(0, ge=0, le=100)
    is_active: bool = True
    tags: List[str] = []


class CartLine(BaseModel):
    """A requested product and quantity. Prices are never taken from the client."""
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderItem(BaseModel):
    product_id: str
    name: str
    seller_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price captured at order time")


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    customer_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    shipping_address: ShippingAddress
    tracking_number: Optional[str] = None
    delivery_date: Optional[datetime] = None
    notes: Optional[str] = None


class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., max_length=500)


def effective_price(product: dict) -> float:
    price = float(product.get("price", 0))
    discount = float(product.get("discount", 0) or 0)
    return round(price * (1 - discount / 100), 2)
