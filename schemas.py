"""
Database Schemas for the Storefront

Each Pydantic model corresponds to a MongoDB collection.
Collection name is the lowercase of the class name, with
underscores between words.

- User -> "user"
- Category -> "category"
- Product -> "product"
- ProductImage -> "product_image"
- Cart -> "cart"
- CartItem -> "cart_item"
- Order -> "order" (order items are embedded snapshots)
- Payment -> "payment"
- Address -> "address"
- Review -> "review"
- PasswordResetToken -> "password_reset_token"

Prices and amounts are integers in the minor currency unit.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class User(BaseModel):
    """Users collection schema"""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    email: EmailStr = Field(..., description="Email address, unique")
    password_hash: str = Field(..., description="BCrypt password hash")
    name: Optional[str] = Field(None, description="Full name")
    phone: Optional[str] = Field(None, description="Contact phone")
    role: Role = Field(Role.CUSTOMER, description="CUSTOMER or ADMIN")


class Category(BaseModel):
    name: str
    slug: str = Field(..., description="Unique URL slug")
    description: Optional[str] = None
    parent_id: Optional[str] = Field(None, description="Parent category id")


class Product(BaseModel):
    """Products collection schema"""
    name: str = Field(..., description="Product name")
    slug: str = Field(..., description="Unique URL slug")
    description: Optional[str] = Field(None, description="Product description")
    price: int = Field(..., ge=0, description="Price in minor currency units")
    stock: int = Field(0, ge=0, description="Sellable units on hand")
    category_id: Optional[str] = Field(None, description="Category id")


class ProductImage(BaseModel):
    product_id: str
    url: str
    alt_text: Optional[str] = None
    is_primary: bool = False
    order: int = 0


class Cart(BaseModel):
    user_id: str = Field(..., description="Owner user id")


class CartItem(BaseModel):
    cart_id: str = Field(..., description="ID of the owning cart")
    product_id: str = Field(..., description="ID of the product")
    quantity: int = Field(1, ge=1, description="Quantity of the product")


class OrderItem(BaseModel):
    """Immutable snapshot of a product line at purchase time"""
    product_id: str
    name: str
    price: int
    quantity: int


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    items: List[OrderItem]
    total_amount: int
    status: OrderStatus = Field(OrderStatus.PENDING)
    shipping_address_id: Optional[str] = None
    shipping_address: Optional[dict] = Field(None, description="Address snapshot")
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class Payment(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    order_id: str
    amount: int
    transaction_id: str = Field(..., description="Reference from payment provider")
    status: PaymentStatus = Field(PaymentStatus.PENDING)
    provider: str


class Address(BaseModel):
    user_id: str
    full_name: str
    phone: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "Bangladesh"
    is_default: bool = False


class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class PasswordResetToken(BaseModel):
    user_id: str
    token_hash: str = Field(..., description="SHA-256 digest of the emailed token")
    expires_at: datetime
