"""
Ramro Storefront Schemas

Each Pydantic model below describes one document shape. Per-user documents live in the
"carts", "wishlists" and "addresses" collections keyed by the user id; orders and users
live in "orders" and "users".

These schemas are used for validation before writing documents and after reading them back.
Money is always Decimal; documents are stored in JSON mode so decimals travel as strings.
"""
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Literal

from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator

PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]{10,}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Product(BaseModel):
    id: str
    name: str
    price: Decimal = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    image: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    active: bool = True


class LineItem(BaseModel):
    product_id: str
    name: str
    unit_price: Decimal = Field(..., ge=0, description="captured price at add-to-cart time")
    quantity: int = Field(1, ge=1)
    available_stock: int = Field(0, ge=0, description="advisory, for UI warnings only")
    image_ref: Optional[str] = None
    category: Optional[str] = None


class CartDocument(BaseModel):
    items: List[LineItem] = []
    updated_at: Optional[datetime] = None


class WishlistDocument(BaseModel):
    product_ids: List[str] = []
    updated_at: Optional[datetime] = None

    @field_validator("product_ids")
    @classmethod
    def dedupe(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))


class Address(BaseModel):
    id: str
    label: Literal["Home", "Work", "Other"] = "Home"
    custom_label: Optional[str] = None
    recipient_name: str
    recipient_phone: str
    full_address: str
    is_default: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("recipient_name", "full_address")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("recipient_phone")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        v = v.strip()
        if not PHONE_PATTERN.match(v):
            raise ValueError("Please enter a valid phone number")
        return v

    @model_validator(mode="after")
    def custom_label_for_other(self):
        if self.label == "Other":
            if not self.custom_label or not self.custom_label.strip():
                raise ValueError('Custom label is required when "Other" is selected')
        else:
            self.custom_label = None
        return self

    @property
    def display_label(self) -> str:
        return self.custom_label if self.label == "Other" else self.label


class AddressBookDocument(BaseModel):
    addresses: List[Address] = []
    updated_at: Optional[datetime] = None


class Totals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    grand_total: Decimal


class User(BaseModel):
    id: str
    name: str
    email: EmailStr
    password_hash: str
    role: str = Field("customer", description="customer | staff | admin")
    is_active: bool = True
    created_at: Optional[datetime] = None


class CurrentUser(BaseModel):
    id: str
    email: EmailStr
    role: str = "customer"


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    image_ref: Optional[str] = None
    category: Optional[str] = None


class ShippingDetails(BaseModel):
    name: str
    phone: str
    address: str
    label: Optional[str] = None


class Order(BaseModel):
    id: str
    order_number: str
    user_id: str
    email: EmailStr
    items: List[OrderItem]
    subtotal: Decimal
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    total: Decimal
    currency: str = "INR"
    shipping_details: ShippingDetails
    status: str = Field("processing", description="processing|paid|shipped|delivered|cancelled|refunded")
    payment_status: str = Field("pending", description="pending|paid|refunded|failed")
    payment_provider: Optional[str] = None
    payment_ref: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
