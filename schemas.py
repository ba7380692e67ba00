"""
Database Schemas for the Gemstore API

Each Pydantic model maps to a MongoDB collection named after the lowercased
class name (e.g., Gem -> "gem", CartItem -> "cart_item"). Request bodies are
accepted in camelCase (gemId, shippingAddress, ...) and stored in snake_case.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        use_enum_values=True,
        validate_default=True,
    )


# ------------ Enums ------------
class DiscountType(str, Enum):
    percentage = "percentage"
    fixed = "fixed"


class PaymentMethod(str, Enum):
    cod = "cod"
    online = "online"
    card = "card"
    upi = "upi"


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


# ------------ Auth & User ------------
class UserCreate(ApiModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{1,14}$")
    password: str = Field(..., min_length=6)


class UserLogin(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class User(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    password_hash: str
    salt: str
    is_active: bool = True


# ------------ Gems ------------
class GemCreate(ApiModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    category: str = Field(..., min_length=1, max_length=100)
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    discount_type: DiscountType = DiscountType.percentage
    size_weight: float = Field(..., ge=0)
    size_unit: str = Field(..., min_length=1, max_length=20)
    images: List[str] = []
    uploaded_images: List[str] = []
    stock: int = Field(0, ge=0)
    availability: bool = True
    certification: Optional[str] = Field(None, max_length=255)
    origin: Optional[str] = Field(None, max_length=255)
    whom_to_use: List[str] = []
    benefits: List[str] = []


class GemUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0)
    discount_type: Optional[DiscountType] = None
    size_weight: Optional[float] = Field(None, ge=0)
    size_unit: Optional[str] = Field(None, min_length=1, max_length=20)
    images: Optional[List[str]] = None
    uploaded_images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    availability: Optional[bool] = None
    certification: Optional[str] = Field(None, max_length=255)
    origin: Optional[str] = Field(None, max_length=255)
    whom_to_use: Optional[List[str]] = None
    benefits: Optional[List[str]] = None


class Gem(GemCreate):
    all_images: List[str] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class GemSearch(ApiModel):
    query: Optional[str] = None
    category: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    zodiac: Optional[str] = None
    benefits: List[str] = []
    availability: Optional[bool] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)


# ------------ Cart ------------
class CartAdd(ApiModel):
    gem_id: str
    quantity: int = Field(1, ge=1)


class CartUpdate(ApiModel):
    quantity: int = Field(..., ge=1)


# ------------ Orders ------------
class OrderLineIn(ApiModel):
    gem_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)

    @field_validator("gem_id")
    @classmethod
    def canonical_gem_id(cls, v: str) -> str:
        try:
            return str(ObjectId(v))
        except (InvalidId, TypeError):
            raise ValueError("Valid gem ID is required")


class ShippingAddress(ApiModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=1)


class OrderCreate(ApiModel):
    items: List[OrderLineIn] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    order_notes: Optional[str] = None


class OrderStatusUpdate(ApiModel):
    status: OrderStatus
    tracking_number: Optional[str] = None


class OrderItem(BaseModel):
    order_ref: str
    gem_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    order_id: str
    user_id: str
    status: OrderStatus = OrderStatus.pending
    total: float = Field(..., ge=0)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    order_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
