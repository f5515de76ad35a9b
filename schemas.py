"""
Database Schemas for the Marketplace

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (Product -> "product").

We will use these collections:
- user: customers, merchants and delivery partners (phone + OTP login)
- store: one store per merchant
- product: clothing items listed by a store
- order: one order per store per checkout
- delivery: a delivery partner's job for an order
- payment: online and cash-on-delivery payment records
- favorite: products saved by a user
- notification: in-app messages for order and payment events
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["User", "Merchant", "Delivery"]
Gender = Literal["Male", "Female", "Other"]
Category = Literal["Men", "Women", "Kids", "Unisex"]
Size = Literal["XS", "S", "M", "L", "XL", "XXL"]
Season = Literal["Summer", "Winter", "Monsoon", "All Season"]
PaymentMethod = Literal["COD", "Online"]

SUBCATEGORIES = [
    "Shirts", "T-Shirts", "Pants", "Jeans", "Shorts", "Jackets", "Suits",
    "Dresses", "Tops", "Sarees", "Kurtas", "Skirts", "Leggings", "Hoodies",
    "Sweatshirts", "Sweaters", "Cardigans", "Blazers", "Coats", "Underwear",
    "Sleepwear", "Activewear", "Swimwear", "Ethnic Wear",
]

WEEK_DAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

OrderStatus = Literal[
    "Pending", "Accepted", "Rejected", "Processing", "ReadyForPickup", "Assigned",
    "PickedUp", "OnTheWay", "Shipped", "Delivered", "Cancelled",
]
DeliveryStatus = Literal["Pending", "Accepted", "PickedUp", "OnTheWay", "Delivered", "Cancelled"]
PaymentStatus = Literal["Pending", "Completed", "Failed", "Refunded", "PartialRefund"]
PayoutStatus = Literal["Pending", "Processing", "Completed", "Failed"]

NotificationType = Literal[
    "ORDER_PLACED", "ORDER_ACCEPTED", "ORDER_REJECTED", "ORDER_READY",
    "DELIVERY_ASSIGNED", "ORDER_PICKED_UP", "ORDER_DELIVERED",
    "PAYMENT_SUCCESS", "PAYMENT_FAILED",
]


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Location(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None


class Address(BaseModel):
    label: Optional[str] = Field(None, max_length=40)
    line: str = Field(..., min_length=5, max_length=300)
    city: Optional[str] = None
    pincode: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class User(BaseModel):
    phone: str = Field(..., min_length=10, max_length=16)
    name: Optional[str] = Field(None, max_length=50)
    email: Optional[EmailStr] = None
    gender: Optional[Gender] = None
    avatar: Optional[str] = None
    addresses: List[Address] = Field(default_factory=list)
    role: Role = "User"
    is_phone_verified: bool = False
    is_profile_complete: bool = False
    otp_hash: Optional[str] = Field(None, description="bcrypt hash of the last OTP sent")
    otp_expiry: Optional[datetime] = None
    is_active: bool = True
    current_location: Optional[GeoPoint] = None
    is_online: bool = True
    is_busy: bool = False
    current_order: Optional[Any] = None


class StoreContact(BaseModel):
    phone: str = Field(..., min_length=10, max_length=12)
    email: Optional[str] = Field(None, pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
    website: Optional[str] = Field(None, pattern=r"(?i)^https?://")


class StoreRating(BaseModel):
    average: float = 0
    total_reviews: int = 0


class Store(BaseModel):
    merchant_id: Any = Field(..., description="Reference to user _id (Merchant)")
    store_name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    store_images: List[str] = Field(default_factory=list)
    address: str = Field(..., min_length=5, max_length=300)
    map_link: str = Field(..., min_length=1)
    contact: StoreContact
    working_days: Dict[str, bool]
    rating: StoreRating = Field(default_factory=StoreRating)
    is_active: bool = True


class Product(BaseModel):
    merchant_id: Any
    store_id: Any
    name: str = Field(..., min_length=2, max_length=200)
    description: str = Field(..., min_length=5, max_length=2000)
    category: Category
    subcategory: str
    images: List[str] = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    original_price: float = Field(..., gt=0)
    discount_percentage: float = Field(0, ge=0, le=100)
    is_on_sale: bool = False
    sizes: List[Size] = Field(default_factory=list)
    available_quantity: int = Field(0, ge=0)
    specifications: Dict[str, Any] = Field(default_factory=dict)
    season: Season = "All Season"
    is_new_arrival: bool = False
    is_best_seller: bool = False
    is_active: bool = True


class OrderItem(BaseModel):
    product: Any
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class StatusChange(BaseModel):
    status: str
    timestamp: datetime
    updated_by: Optional[Any] = None
    note: Optional[str] = None


class Order(BaseModel):
    order_number: str
    user: Any
    store: Any
    order_items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: str = Field(..., min_length=10, max_length=500)
    items_total: float = Field(..., ge=0)
    delivery_fee: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "Pending"
    payment_method: PaymentMethod = "COD"
    payment_status: PaymentStatus = "Pending"
    payment_id: Optional[Any] = None
    delivery_person: Optional[Any] = None
    pickup_location: Location = Field(default_factory=Location)
    delivery_location: Location = Field(default_factory=Location)
    status_history: List[StatusChange] = Field(default_factory=list)
    store_rated: bool = False


class Delivery(BaseModel):
    delivery_person: Any
    order: Any
    status: DeliveryStatus = "Pending"
    pickup_address: str
    delivery_address: str
    estimated_delivery_time: datetime
    actual_delivery_time: Optional[datetime] = None
    delivery_fee: float = Field(0, ge=0)
    rating: Optional[int] = Field(None, ge=1, le=5)
    review: Optional[str] = Field(None, max_length=500)
    delivery_notes: Optional[str] = Field(None, max_length=500)
    cancellation_reason: Optional[str] = None


class Payment(BaseModel):
    order: Any
    user: Any
    store: Any
    amount: float = Field(..., ge=0)
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "Pending"
    payment_gateway: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_date: Optional[datetime] = None
    refund_amount: float = 0
    cod_collected_by: Optional[Any] = None
    cod_collected_at: Optional[datetime] = None
    cod_submitted_to_store: bool = False
    cod_submitted_at: Optional[datetime] = None
    payout_status: PayoutStatus = "Pending"
    payout_amount: Optional[float] = None
    payout_date: Optional[datetime] = None
    payout_transaction_id: Optional[str] = None
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Favorite(BaseModel):
    user: Any
    product: Any


class Notification(BaseModel):
    recipient: Any
    recipient_role: Role
    type: NotificationType
    title: str
    message: str
    order: Optional[Any] = None
    store: Optional[Any] = None
    delivery: Optional[Any] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)
