"""
Database Schemas for Eko Seller

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name
(OrderItem -> "orderitem", UserOTPVerification -> "userotpverification").
"""
from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, model_validator

SELLER_FIELDS = ("marketLocation", "description", "localGovernmentArea")


class User(BaseModel):
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    passwordHash: str = Field(..., description="Salted bcrypt hash")
    phone: str = Field(...)
    role: Literal["user", "admin", "seller"] = "user"
    marketLocation: Optional[str] = None
    description: Optional[str] = None
    localGovernmentArea: Optional[str] = Field(None, max_length=500)
    state: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    isVerified: bool = False
    otp: Optional[str] = None
    otpExpiry: Optional[datetime] = None

    @model_validator(mode="after")
    def seller_fields(self):
        if self.role == "seller":
            missing = [f for f in SELLER_FIELDS if not getattr(self, f)]
            if missing:
                raise ValueError(f"{', '.join(missing)} required for sellers")
        else:
            for f in SELLER_FIELDS:
                setattr(self, f, None)
        return self


class UserOTPVerification(BaseModel):
    email: EmailStr
    otp: str
    expiryTime: datetime


class Category(BaseModel):
    name: str = Field(..., min_length=1)
    icon: Optional[str] = None
    color: Optional[str] = None
    parentCategory: Optional[str] = Field(None, description="Parent category id")


class ProductSize(BaseModel):
    """Sizes come in as either a number (42) or a label ("XL")."""
    kind: Literal["numeric", "text"]
    value: Union[float, str]

    @classmethod
    def parse(cls, raw) -> "ProductSize":
        if isinstance(raw, ProductSize):
            return raw
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return cls(kind="numeric", value=float(raw))
        text = str(raw).strip()
        try:
            return cls(kind="numeric", value=float(text))
        except ValueError:
            return cls(kind="text", value=text)


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    image: str = ""
    images: List[str] = []
    brand: str = ""
    price: float = Field(..., ge=0)
    colour: str = Field(..., min_length=1)
    size: ProductSize
    category: str = Field(..., description="Category id")
    countInStock: int = Field(..., ge=0, le=1000)
    rating: float = Field(0, ge=0, le=5)


class OrderItem(BaseModel):
    product: str
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0, description="Product price captured at order time")


class Order(BaseModel):
    orderItems: List[str]
    shippingAddress1: str = Field(..., min_length=1)
    shippingAddress2: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    status: str = "Pending"
    totalPrice: float = Field(..., ge=0)
    user: str
