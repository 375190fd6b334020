from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, PositiveInt, field_validator
from pydantic.config import ConfigDict

Role = Literal["admin", "employee", "customer"]
CreatableStatus = Literal["draft", "pending"]
TargetStatus = Literal["pending", "completed", "cancelled"]


class UserCreate(BaseModel):
    name: str = Field(default="", max_length=100)
    email: str = Field(..., min_length=3, max_length=254)
    role: Role = "customer"
    password: Optional[str] = Field(default=None)

    @field_validator("email")
    def email_has_at(cls, v: str):
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.strip().lower()


class CustomerCreate(BaseModel):
    name: str = Field(default="", max_length=100)
    email: str = Field(..., min_length=3, max_length=254)

    @field_validator("email")
    def email_has_at(cls, v: str):
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.strip().lower()


class UserRead(BaseModel):
    id: int
    name: str
    email: str
    role: str
    created_by_id: Optional[int] = None
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class LoginRequest(BaseModel):
    email: str
    password: str


class AssignmentCreate(BaseModel):
    customer_id: PositiveInt
    employee_id: PositiveInt


class AssignmentRead(BaseModel):
    id: int
    customer_id: int
    employee_id: int

    model_config = ConfigDict(from_attributes=True)


class ProductCreate(BaseModel):
    sku: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    price: Decimal
    stock: int = Field(default=0, ge=0)

    @field_validator("price")
    def non_negative(cls, v: Decimal):
        if v < 0:
            raise ValueError("price must be non-negative")
        return v


class ProductRead(BaseModel):
    id: int
    sku: str
    name: str
    price: Decimal
    stock: int
    created_by_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class StockAdjust(BaseModel):
    product_id: PositiveInt
    delta: int
    reason: Optional[str] = Field(default=None, max_length=200)


class MovementRead(BaseModel):
    id: int
    product_id: int
    kind: str
    quantity: int
    order_id: Optional[int] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OrderItemCreate(BaseModel):
    product_id: PositiveInt
    # positivity is checked by the order state machine so the error kind is uniform
    quantity: int


class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = Field(default_factory=list)
    status: CreatableStatus = "pending"
    assigned_to_id: Optional[PositiveInt] = None
    customer_id: Optional[PositiveInt] = None


class OrderItemRead(BaseModel):
    id: int
    product_id: int
    quantity: int
    unit_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class OrderRead(BaseModel):
    id: int
    customer_id: int
    created_by_id: int
    assigned_to_id: Optional[int] = None
    status: str
    total: Decimal
    deleted_at: Optional[datetime] = None
    deleted_by_id: Optional[int] = None
    items: List[OrderItemRead] = []

    model_config = ConfigDict(from_attributes=True)


class StatusChange(BaseModel):
    status: TargetStatus


class Reassign(BaseModel):
    assigned_to_id: Optional[PositiveInt] = None


class OrderUpdate(BaseModel):
    # omitted items keep the current lines; "pending" publishes a draft
    items: Optional[List[OrderItemCreate]] = None
    status: Optional[CreatableStatus] = None


class OrderRemoval(BaseModel):
    deleted: int
    permanent: bool


class AccessRequestCreate(BaseModel):
    name: str = Field(default="", max_length=100)
    email: str = Field(..., min_length=3, max_length=254)
    company: Optional[str] = Field(default=None, max_length=200)
    message: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("email")
    def email_has_at(cls, v: str):
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.strip().lower()


class AccessRequestRead(BaseModel):
    id: int
    name: str
    email: str
    company: Optional[str] = None
    message: Optional[str] = None
    status: str
    handled_by_id: Optional[int] = None
    handled_at: Optional[datetime] = None
    user_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AccessRequestDecision(BaseModel):
    action: Literal["accept", "reject"]


class AccessRequestOutcome(BaseModel):
    request: AccessRequestRead
    # shown once to the handling admin when an account was created
    temporary_password: Optional[str] = None
