"""
Mousepad Studio Database Schemas

Each document model below maps to one MongoDB collection named after the lowercase
class name: CartItem -> "cartitem", Order -> "order". Request payload models sit
next to the documents they produce.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Currency(str, Enum):
    usd = "USD"
    sgd = "SGD"


class MousepadType(str, Enum):
    normal = "normal"
    rgb = "rgb"


class CartItemStatus(str, Enum):
    pending = "pending"
    payment_failed = "paymentFailed"
    payment_success = "paymentSuccess"
    cancelled = "cancelled"


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"
    payment_failed = "paymentFailed"


class PaymentStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


# Cart

class MousepadSpecs(BaseModel):
    """Product specification; anything beyond type/size/thickness is kept as given."""
    model_config = ConfigDict(extra="allow")

    type: MousepadType
    size: str = Field(..., min_length=1)
    thickness: str = Field(..., min_length=1)


class CartItemPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str = Field(..., min_length=1, description="Caller-supplied id, unique per owner")
    name: str = "Custom Mousepad"
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)
    currency: Currency = Currency.usd
    image: Optional[str] = None
    finalImage: str
    originalImageUrl: str
    specs: MousepadSpecs
    configuration: Optional[Dict[str, Any]] = None
    status: CartItemStatus = CartItemStatus.pending


class CartItemUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    name: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=1)
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[Currency] = None
    image: Optional[str] = None
    finalImage: Optional[str] = None
    originalImageUrl: Optional[str] = None
    specs: Optional[MousepadSpecs] = None
    configuration: Optional[Dict[str, Any]] = None
    status: Optional[CartItemStatus] = None


class CartItem(BaseModel):
    """
    A pending purchase line
    Collection: "cartitem"
    """
    owner: str
    id: str
    name: str = "Custom Mousepad"
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)
    currency: Currency = Currency.usd
    image: Optional[str] = None
    finalImage: str
    originalImageUrl: str
    specs: Dict[str, Any] = {}
    configuration: Optional[Dict[str, Any]] = None
    mousepadType: MousepadType = MousepadType.normal
    mousepadSize: str
    thickness: str
    status: CartItemStatus = CartItemStatus.pending


# Orders

class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zipCode: str = Field(..., min_length=1)
    country: str = "United States"


class CustomerInfo(BaseModel):
    firstName: str = Field(..., min_length=1)
    lastName: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    address: Address
    additionalNotes: str = ""


class OrderItemRequest(BaseModel):
    cartItemId: str = Field(..., min_length=1)
    quantity: Optional[int] = Field(None, ge=1)


class OrderPricing(BaseModel):
    subtotal: Optional[float] = Field(None, ge=0)
    shipping: float = Field(0.0, ge=0)
    tax: float = Field(0.0, ge=0)
    total: Optional[float] = Field(None, ge=0)
    currency: Optional[Currency] = None


class OrderItem(BaseModel):
    cartItemId: str
    name: str
    quantity: int
    price: float
    currency: Currency
    finalImage: str
    originalImageUrl: str
    mousepadType: MousepadType
    mousepadSize: str
    thickness: str


class Order(BaseModel):
    """
    A finalized purchase, snapshotted from the owner's cart
    Collection: "order"
    """
    model_config = ConfigDict(use_enum_values=True)

    owner: str
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(0.0, ge=0)
    tax: float = Field(0.0, ge=0)
    total: float = Field(..., ge=0)
    currency: Currency = Currency.usd
    customerInfo: CustomerInfo
    status: OrderStatus = OrderStatus.pending
    paymentStatus: PaymentStatus = PaymentStatus.pending
    paymentMethod: Optional[str] = None
    paymentTransactionId: Optional[str] = None


class CreateOrderDTO(OrderPricing):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    customerInfo: CustomerInfo
