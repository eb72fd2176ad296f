"""
Request payloads

Pydantic models for everything the API accepts. Update payloads forbid
unknown keys so only the listed columns can ever be written.
"""
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


# Auth
class RegisterInput(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6, description="At least 6 characters")


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


# Products
Availability = Literal["in_stock", "out_of_stock", "preorder"]


class ProductIn(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    original_price: Optional[Decimal] = Field(None, ge=0)
    category: str
    brand: Optional[str] = None
    stock_quantity: int = Field(0, ge=0)
    availability: Availability = "in_stock"
    images: List[str] = Field(default_factory=list)
    featured: bool = False
    published: bool = True


class ProductUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    original_price: Optional[Decimal] = Field(None, ge=0)
    category: Optional[str] = None
    brand: Optional[str] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    availability: Optional[Availability] = None
    images: Optional[List[str]] = None
    featured: Optional[bool] = None
    published: Optional[bool] = None

    @field_validator(
        "title", "price", "category", "stock_quantity", "availability", "featured", "published", mode="before"
    )
    @classmethod
    def not_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class FeatureIn(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    icon: Optional[str] = None


# Categories
class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    slug: Optional[str] = Field(None, description="Derived from the name when omitted")
    description: Optional[str] = None
    image_url: Optional[str] = None
    featured: bool = False


# Traders
class TraderRegisterInput(BaseModel):
    name: str = Field(..., min_length=1)
    shop_name: str = Field(..., alias="shopName", min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6)
    shop_address: str = Field(..., alias="shopAddress", min_length=1)
    shop_description: Optional[str] = Field(None, alias="shopDescription")
    shop_logo: Optional[str] = Field(None, alias="shopLogo", description="URL of an already uploaded logo")

    model_config = ConfigDict(populate_by_name=True)


# Cart
class CartItemIn(BaseModel):
    product_id: int = Field(..., alias="productId")
    quantity: int = Field(1, ge=1)

    model_config = ConfigDict(populate_by_name=True)


class CartItemUpdate(BaseModel):
    product_id: int = Field(..., alias="productId")
    quantity: int = Field(..., description="0 or less removes the line")

    model_config = ConfigDict(populate_by_name=True)


# Checkout
class CheckoutItem(BaseModel):
    product_id: int = Field(..., alias="productId")
    quantity: int = Field(..., ge=1)
    price: Optional[Decimal] = Field(None, description="Advisory only; the stored price is charged")

    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(BaseModel):
    items: Optional[List[CheckoutItem]] = Field(None, description="Omit to check out the stored cart")
    shipping_address: Optional[Dict[str, Any]] = Field(None, alias="shippingAddress")
    payment_method: Optional[str] = Field(None, alias="paymentMethod")
    total_amount: Optional[Decimal] = Field(None, alias="totalAmount", ge=0)
    email: Optional[EmailStr] = None
    bank_receipt_url: Optional[str] = Field(None, alias="bankReceiptUrl")

    model_config = ConfigDict(populate_by_name=True)


# Orders
class OrderStatusUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # validated against the workflow by the order service
    status: Optional[str] = None
    admin_notes: Optional[str] = None


class PaymentVerification(BaseModel):
    verified: bool
    notes: Optional[str] = None


# Reviews
class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: str
    comment: str

    @field_validator("title")
    @classmethod
    def title_length(cls, v: str) -> str:
        if len(v.strip()) < 3:
            raise ValueError("Title is required and must be at least 3 characters")
        return v

    @field_validator("comment")
    @classmethod
    def comment_length(cls, v: str) -> str:
        if len(v.strip()) < 10:
            raise ValueError("Comment is required and must be at least 10 characters")
        return v


class VoteIn(BaseModel):
    type: Literal["helpful", "not_helpful"]
