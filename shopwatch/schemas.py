"""
Database Schemas and request bodies for the shopwatch services

Document models map to the MongoDB collections "users", "products" and
"orders". Field names are snake_case in Python and camelCase on the wire and
in the database (e.g. password_hash -> passwordHash).
"""

from enum import Enum
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictInt
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


VALID_STATUSES = [s.value for s in OrderStatus]


class User(CamelModel):
    """
    Users collection schema
    Collection name: "users"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    password_hash: str = Field(..., description="bcrypt hash, never returned by the API")
    status: str = Field("active", description="Account status")


class Product(CamelModel):
    """
    Products collection schema
    Collection name: "products"
    """
    name: str = Field(..., description="Product name")
    price: float = Field(..., ge=0, description="Unit price")
    category: str = Field(..., description="Product category")
    stock: int = Field(0, ge=0, description="Units available, never negative")
    description: str = Field("", description="Product description")


class OrderItem(CamelModel):
    product_id: str
    name: str
    price: float
    quantity: int
    subtotal: float


class Order(CamelModel):
    """
    Orders collection schema
    Collection name: "orders"
    """
    user_id: str
    items: List[OrderItem]
    total_amount: float
    currency: str = "USD"
    shipping_address: Union[dict, str] = Field(default_factory=dict)
    payment_method: str = "credit_card"
    status: OrderStatus = OrderStatus.PENDING


# Requests

class RegisterRequest(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class CreateProductRequest(CamelModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category: str = Field(..., min_length=1)
    stock: int = Field(0, ge=0)
    description: str = ""


class StockUpdateRequest(CamelModel):
    quantity: StrictInt = Field(..., description="Signed stock delta")


class PurchaseRequest(CamelModel):
    quantity: StrictInt = Field(1, ge=1)


class OrderItemRequest(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: StrictInt = Field(..., ge=1)


class CreateOrderRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    items: List[OrderItemRequest] = Field(..., min_length=1)
    shipping_address: Optional[Union[dict, str]] = None
    payment_method: Optional[str] = None


class StatusUpdateRequest(CamelModel):
    status: Any = None
