"""
Database Schemas

MongoDB collection schemas for the storefront, as Pydantic models.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Product -> "product" collection
- ProductVariant -> "productvariant" collection
- Order -> "order" collection (order items are embedded)
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["ADMIN", "CUSTOMER"]
PaymentMethod = Literal["COD", "ONLINE"]
PaymentStatus = Literal["PENDING", "PAID"]
OrderStatus = Literal["PENDING", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED"]

ORDER_STATUSES = ("PENDING", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED")


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Password hash (server-side)")
    role: Role = Field("CUSTOMER", description="Role: ADMIN | CUSTOMER")
    is_active: bool = Field(True, description="Whether user is active")


class Address(BaseModel):
    """
    Shipping addresses, several per user
    Collection name: "address"
    """
    user_id: str
    full_name: str
    phone: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., description="Product name")
    category: str = Field(..., description="Supplement | Apparel | Accessory | Snack ...")
    sub_category: Optional[str] = Field(None, description="Whey | PreWorkout | TShirt ...")
    brand: Optional[str] = None
    price: float = Field(..., ge=0, description="Base price in whole currency units")
    size: Optional[str] = Field(None, description="2lbs, 5lbs, XL ...")
    stock: int = Field(0, ge=0, description="Units in stock")
    description: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    directions: str = ""
    images: List[str] = Field(default_factory=list, description="Image URLs")
    rating: float = Field(0, ge=0, le=5, description="Average rating 0-5")
    review_count: int = Field(0, ge=0)
    is_active: bool = True


class ProductVariant(BaseModel):
    """
    Purchasable configuration of a product with its own price and stock
    Collection name: "productvariant"
    """
    product_id: str
    label: Optional[str] = Field(None, description="Size or flavor")
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)


class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price captured at order time")


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str
    address_id: str
    items: List[OrderItem]
    total: int = Field(..., ge=0, description="Integer currency units")
    payment_method: PaymentMethod = "COD"
    payment_status: PaymentStatus = "PENDING"
    receipt: Optional[str] = Field(None, description="Proof-of-payment image URL")
    status: OrderStatus = "PENDING"


class Notification(BaseModel):
    """
    Admin-facing notifications, deleted once acknowledged
    Collection name: "notification"
    """
    type: Literal["NEW_ORDER"] = "NEW_ORDER"
    message: str
    order_id: str
    is_read: bool = False


class CartItem(BaseModel):
    """
    Collection name: "cartitem"
    """
    user_id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class WishlistItem(BaseModel):
    """
    Collection name: "wishlistitem"
    """
    user_id: str
    product_id: str


class Review(BaseModel):
    """
    Collection name: "review"
    """
    user_id: str
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class Banner(BaseModel):
    """
    Collection name: "banner"
    """
    image: str
    title: Optional[str] = None
    link: Optional[str] = None
    is_active: bool = True


class Bundle(BaseModel):
    """
    Collection name: "bundle"
    """
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    original_price: Optional[float] = None
    image: Optional[str] = None
    product_ids: List[str] = Field(default_factory=list)
    is_active: bool = True

