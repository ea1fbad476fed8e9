"""
Database Schemas for the eTuckshop app

Each Pydantic model maps to a MongoDB collection (lowercased class name,
snake_case for multi-word names).

Collections:
- user
- category
- product
- cart
- order
- payment_qr
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
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentType(str, Enum):
    CASH = "CASH"
    PAYNOW = "PAYNOW"


class StockLevel(str, Enum):
    OUT_OF_STOCK = "OUT_OF_STOCK"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = Field(Role.CUSTOMER, description="CUSTOMER | ADMIN")
    refresh_token: Optional[str] = Field(None, description="Current refresh token")


class Category(BaseModel):
    """
    Categories collection schema
    Collection name: "category"
    """
    name: str = Field(..., min_length=1, description="Unique category name")
    description: Optional[str] = Field(None, description="Category description")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, description="Product name")
    description: str = Field("", description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(0, ge=0, description="Units in stock")
    category_id: str = Field(..., description="Owning category id")
    image: Optional[str] = Field(None, description="Image URL")


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    added_at: Optional[datetime] = None


class Cart(BaseModel):
    """
    Carts collection schema, one per user
    Collection name: "cart"
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class OrderItem(BaseModel):
    product_id: str
    name: str = Field(..., description="Product name at checkout")
    price: float = Field(..., ge=0, description="Unit price at checkout")
    quantity: int = Field(..., ge=1)
    subtotal: float = Field(..., ge=0)


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    order_number: str
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    payment_type: PaymentType = PaymentType.CASH
    total_amount: float = Field(..., ge=0)
    items: List[OrderItem]
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None


class PaymentQR(BaseModel):
    """
    Payment QR collection schema, one per order
    Collection name: "payment_qr"
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    order_id: str
    payment_type: PaymentType
    qr_data: Optional[str] = Field(None, description="Signed QR payload")
    payment_ref: Optional[str] = Field(None, description="PayNow payment reference")
    expires_at: Optional[datetime] = Field(None, description="Expiry for CASH QR codes")
    is_used: bool = False
