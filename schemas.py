"""
Database Schemas for EduStore

Collections:
- user: customers (OTP login) and admins (password login)
- otp_code: issued one-time passcodes
- otp_cooldown: one row per contact, guards re-issue within the cooldown window
- product: PDF study materials
- order: purchases, embedding their line items and download entitlements
- admin_permission: capability flags, one row per admin
- category: catalog categories, unique by name
- exam: timed exams with their questions embedded
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["USER", "ADMIN", "SUPERADMIN"]
OrderStatus = Literal["PENDING", "PROCESSING", "COMPLETED", "CANCELLED"]
DownloadStatus = Literal["ACTIVE", "REVOKED"]
ExamStatus = Literal["DRAFT", "PUBLISHED"]
QuestionType = Literal["MULTIPLE_CHOICE", "TRUE_FALSE"]

ADMIN_ROLES = ("ADMIN", "SUPERADMIN")


class User(BaseModel):
    email: Optional[EmailStr] = Field(None, description="Email address")
    phone: Optional[str] = Field(None, description="Phone number, digits only")
    first_name: str = ""
    last_name: str = ""
    role: Role = Field("USER", description="USER, ADMIN or SUPERADMIN")
    is_email_verified: bool = False
    is_phone_verified: bool = False
    password_hash: Optional[str] = Field(None, description="Only set for admin accounts")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OtpCode(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    code: str
    expires_at: datetime
    used: bool = False
    created_at: Optional[datetime] = None


class Product(BaseModel):
    title: str = Field(..., min_length=1, description="Product title")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Price")
    category: str = Field(..., description="Category name")
    file_url: Optional[str] = Field(None, description="Location of the PDF served on download")
    in_stock: bool = Field(True, description="Available for purchase")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Category(BaseModel):
    name: str = Field(..., min_length=1, description="Category name, unique")
    description: Optional[str] = None


class CartItem(BaseModel):
    id: str = Field(..., min_length=1, description="Product id")
    quantity: int = Field(..., ge=1)
    title: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = None


class OrderItem(BaseModel):
    product_id: str
    title: str
    category: str
    price: float
    quantity: int = Field(ge=1)


class Download(BaseModel):
    download_id: str
    product_id: str
    user_id: str
    status: DownloadStatus = "ACTIVE"
    expires_at: datetime
    created_at: datetime


class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    downloads: List[Download] = Field(default_factory=list)
    download_ids: List[str] = Field(default_factory=list)
    subtotal: float
    tax: float
    total: float
    status: OrderStatus = "PENDING"
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Question(BaseModel):
    question: str = Field(..., min_length=1)
    type: QuestionType = "MULTIPLE_CHOICE"
    options: Optional[List[str]] = None
    correct_answer: str = Field(..., min_length=1)
    marks: int = Field(1, ge=1)


class ExamInput(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    duration: int = Field(..., ge=1, description="Minutes")
    passing_marks: int = Field(..., ge=0)
    product_id: Optional[str] = Field(None, description="Product the exam is bundled with")
    questions: List[Question] = Field(..., min_length=1)


class PermissionFlags(BaseModel):
    model_config = ConfigDict(extra="forbid")

    can_manage_products: bool = False
    can_manage_categories: bool = False
    can_manage_orders: bool = False
    can_manage_exams: bool = False
    can_view_analytics: bool = False


class PermissionsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    can_manage_products: Optional[bool] = None
    can_manage_categories: Optional[bool] = None
    can_manage_orders: Optional[bool] = None
    can_manage_exams: Optional[bool] = None
    can_view_analytics: Optional[bool] = None


# ---------- Request / response bodies ----------

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class OtpRequest(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None


class OtpVerify(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    code: str = ""


class RefreshRequest(BaseModel):
    token: str = ""


class CreateOrderRequest(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(..., ge=0)
    total: float = Field(..., ge=0)


class StatusUpdate(BaseModel):
    status: str


class CreateAdminRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = ""
    last_name: str = ""
    permissions: Optional[PermissionFlags] = None


class ExamStatusUpdate(BaseModel):
    status: ExamStatus
