"""
Database Schemas for Crop Connect

Define MongoDB collection schemas using Pydantic models.
Each Pydantic model corresponds to a collection (lowercased class name).
Every stored document also carries `version`, `created_at` and `updated_at`,
added by database.create_document / Transaction.insert.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime
from bson import ObjectId

from order_states import OrderStatus, PaymentMethod, PaymentStatus

Role = Literal["buyer", "farmer", "admin"]

NotificationType = Literal[
    # farmer
    "new-order",
    "order-cancel",
    "payment-received",
    "inventory-alert",
    "farmer-system",
    # buyer
    "order-update",
    "payment-confirmation",
    "shipment-update",
    "buyer-system",
    # common
    "system-alert",
]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address")
    role: Role = Field("buyer", description="buyer|farmer|admin")
    token: Optional[str] = Field(None, description="Opaque bearer token issued at login")


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    price: float = Field(..., ge=0, description="Unit price in NGN")
    quantity: int = Field(0, ge=0, description="Units in stock")
    farmer_id: str = Field(..., description="Owning farmer")
    farm_name: str = Field(..., description="Farm shown to buyers")
    category: Optional[str] = None
    deleted: bool = Field(False, description="Soft-deleted products are unavailable")


class CartItem(BaseModel):
    item_id: str = Field(default_factory=lambda: str(ObjectId()), description="Line id used by update/remove")
    product_id: str = Field(...)
    quantity: int = Field(1, ge=1, le=100)
    added_at: Optional[datetime] = None


class Cart(BaseModel):
    user_id: str = Field(..., description="Owner; one cart per user")
    items: List[CartItem] = Field(default_factory=list)


class ShippingInfo(BaseModel):
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    postal_code: Optional[str] = None
    country: Optional[str] = "Nigeria"


class OrderItem(BaseModel):
    product_id: str = Field(...)
    quantity: int = Field(..., ge=1)
    price_at_purchase: float = Field(..., ge=0, description="Unit price captured when the order was placed")


class PaymentDetails(BaseModel):
    reference: str
    channel: Optional[str] = None
    paid_at: Optional[str] = None
    amount_minor: int = Field(..., ge=0, description="Amount confirmed by the gateway, in kobo")


class Order(BaseModel):
    buyer_id: str = Field(..., description="Ordering user")
    items: List[OrderItem] = Field(...)
    total_price: float = Field(..., ge=0, description="Sum of price_at_purchase * quantity")
    shipping_address: ShippingInfo
    payment_method: PaymentMethod
    status: OrderStatus = Field(OrderStatus.PENDING)
    payment_status: PaymentStatus = Field(PaymentStatus.PENDING)
    transaction_reference: Optional[str] = Field(None, description="Gateway reference, order_<id>")
    payment: Optional[PaymentDetails] = None
    stock_shortfall: Optional[List[Dict[str, Any]]] = Field(
        None, description="Lines that could not be fully settled from stock at payment time"
    )


class Notification(BaseModel):
    user_id: str = Field(...)
    title: str = Field(...)
    message: str = Field(...)
    type: NotificationType
    link: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    read: bool = False
