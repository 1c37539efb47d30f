"""
Database Schemas for the Storefront API

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name:

- User -> "user"
- Category -> "category"
- Product -> "product"
- Review -> "review"
- Cart -> "cart"
- Order -> "order"
- ContactMessage -> "contactmessage"

References between collections are stored as id strings.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field

ROLES = ("user", "admin")


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique, stored lower-case")

    # Auth fields (stored in DB, but not returned in public responses)
    password_hash: str = Field(..., description="Hashed password")
    role: str = Field("user", pattern="^(user|admin)$", description="user | admin")

    phone: Optional[str] = Field(None, description="Contact phone")
    address: Optional[Address] = Field(None, description="Default shipping address")


class Category(BaseModel):
    """
    Categories collection schema
    Collection name: "category"
    """
    name: str = Field(..., min_length=1, description="Unique category name")
    description: Optional[str] = None


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., description="Product name")
    price: float = Field(..., ge=0, description="Unit price")
    description: str = Field(..., description="Product description")
    image: str = Field(..., description="Image URL")
    category: Optional[str] = Field(None, description="Category id")
    brand: Optional[str] = None
    count_in_stock: int = Field(0, ge=0, description="Available inventory")
    colors: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)

    # Aggregates derived from the review collection
    rating: float = Field(0, ge=0, description="Average review rating, 0 without reviews")
    num_reviews: int = Field(0, ge=0)
    reviews: List[str] = Field(default_factory=list, description="Review ids")

    is_flash_sale: bool = False
    discount: float = Field(0, ge=0, description="Discount percentage")
    sale_end: Optional[datetime] = None


class Review(BaseModel):
    """
    Reviews collection schema
    Collection name: "review"
    One review per (user_id, product_id).
    """
    user_id: str
    product_id: str
    rating: float = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class CartItem(BaseModel):
    product_id: str = Field(..., description="Product id as string")
    quantity: int = Field(1, ge=1, description="Quantity for the product")


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart"
    One cart per user; `version` is bumped on every write.
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    version: int = 0


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price captured when the order was placed")


class PaymentResult(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    update_time: Optional[str] = None
    email_address: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str
    order_items: List[OrderItem]
    shipping_address: Optional[Address] = None
    payment_method: str
    payment_result: Optional[PaymentResult] = None
    tax_price: float = 0.0
    shipping_price: float = 0.0
    total_price: float
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None


class ContactMessage(BaseModel):
    """
    Contact messages collection schema
    Collection name: "contactmessage"
    """
    name: str
    email: EmailStr
    subject: Optional[str] = None
    message: str
