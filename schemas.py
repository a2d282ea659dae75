"""
Database Schemas for the Fashion Mart back office

Each Pydantic model represents a collection in MongoDB. The collection name is
the plural snake_case of the class name (Product -> "products", OrderItem ->
"order_items"). Request bodies for the API live at the bottom of the module.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled", "returned"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentRecordStatus = Literal["pending", "succeeded", "failed", "refunded"]
ReturnStatus = Literal["pending", "approved", "rejected", "completed"]
NotificationType = Literal["low_stock", "new_order", "order_status", "payment", "return", "system"]


class Role(str, Enum):
    ADMIN = "admin"
    DESIGNER = "designer"
    CUSTOMER = "customer"
    STAFF = "staff"
    INVENTORY_MANAGER = "inventory_manager"


# -----------------------------
# Users (synced from the identity provider)
# -----------------------------

class Users(BaseModel):
    id: str = Field(..., description="Identity provider user id, stored as _id")
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role = Role.CUSTOMER
    active: bool = True


# -----------------------------
# Catalog
# -----------------------------

class Products(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0, description="Unit price in USD")
    category_id: Optional[str] = None
    designer_id: Optional[str] = None
    images: List[str] = Field(default_factory=list, description="Ordered image URLs")
    featured: bool = False
    trending: bool = False
    active: bool = True


class Stocks(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=0)
    size: Optional[str] = None
    color: Optional[str] = None
    low_stock_threshold: int = Field(10, ge=0)


# -----------------------------
# Orders
# -----------------------------

class ShippingAddress(BaseModel):
    name: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class Orders(BaseModel):
    customer_id: str
    status: OrderStatus = "pending"
    total_amount: float = Field(..., ge=0)
    shipping_address: ShippingAddress
    payment_status: PaymentStatus = "pending"
    staff_id: Optional[str] = None
    return_deadline: Optional[datetime] = None
    notes: Optional[str] = None


class OrderItems(BaseModel):
    order_id: str
    product_id: str
    stock_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at time of order")
    subtotal: float = Field(..., ge=0)


# -----------------------------
# Payments
# -----------------------------

class Payments(BaseModel):
    order_id: str
    customer_id: str
    amount: float = Field(..., ge=0)
    payment_intent_id: str
    external_payment_id: Optional[str] = None
    status: PaymentRecordStatus = "pending"
    method: str = "card"
    amount_refunded: float = 0.0


class Refunds(BaseModel):
    payment_id: str
    order_id: str
    amount: float = Field(..., gt=0)
    reason: str = "Customer request"
    refund_id: str
    status: Literal["completed"] = "completed"
    processed_by: Optional[str] = None


# -----------------------------
# Returns
# -----------------------------

class Returns(BaseModel):
    order_id: str
    order_item_id: str
    customer_id: str
    reason: str = Field(..., min_length=1)
    status: ReturnStatus = "pending"
    staff_id: Optional[str] = None
    refund_amount: Optional[float] = None
    refund_id: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class Notifications(BaseModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    read: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)


# -----------------------------
# Request bodies
# -----------------------------

class StockVariant(BaseModel):
    quantity: int = Field(..., ge=0)
    size: Optional[str] = None
    color: Optional[str] = None
    low_stock_threshold: Optional[int] = Field(None, ge=0)


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category_id: Optional[str] = None
    designer_id: Optional[str] = None
    images: List[str] = []
    stocks: List[StockVariant] = Field(..., min_length=1)


class StockUpdate(BaseModel):
    quantity: Optional[int] = Field(None, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)


class OrderItemRequest(BaseModel):
    product_id: str
    stock_id: str
    quantity: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    shipping_address: ShippingAddress


class StatusUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class PaymentConfirm(BaseModel):
    payment_intent_id: str


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = None


class ReturnCreate(BaseModel):
    order_id: str
    order_item_id: str
    reason: str = Field(..., min_length=1)
    images: List[str] = []


class ReturnDecision(BaseModel):
    status: Literal["approved", "rejected"]
    notes: Optional[str] = None
