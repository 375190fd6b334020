from typing import NamedTuple

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship
from .db import Base

ROLE_ADMIN = "admin"
ROLE_EMPLOYEE = "employee"
ROLE_CUSTOMER = "customer"
ROLES = (ROLE_ADMIN, ROLE_EMPLOYEE, ROLE_CUSTOMER)
STAFF_ROLES = (ROLE_ADMIN, ROLE_EMPLOYEE)

STATUS_DRAFT = "draft"
STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
ORDER_STATUSES = (STATUS_DRAFT, STATUS_PENDING, STATUS_COMPLETED, STATUS_CANCELLED)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED)
# Statuses in which the order's items are reflected as stock decrements
STOCK_HOLDING_STATUSES = (STATUS_PENDING, STATUS_COMPLETED)
# Statuses whose items and status may still be edited through update_order
EDITABLE_STATUSES = (STATUS_DRAFT, STATUS_PENDING)

MOVEMENT_RESERVE = "reserve"
MOVEMENT_RELEASE = "release"
MOVEMENT_ADJUST = "adjust"

REQUEST_PENDING = "pending"
REQUEST_ACCEPTED = "accepted"
REQUEST_REJECTED = "rejected"


class Actor(NamedTuple):
    """Authenticated identity issuing a request, resolved by ``orderdesk.auth``."""

    id: int
    role: str
    email: str = ""

    @classmethod
    def from_user(cls, user: "User") -> "Actor":
        return cls(id=user.id, role=user.role, email=user.email or "")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, default="")
    # stored lower-cased; see crud.normalize_email
    email = Column(String, nullable=False, unique=True, index=True)
    role = Column(String, nullable=False, default=ROLE_CUSTOMER, index=True)
    # which admin/employee account created this user; NULL for root accounts
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    password_hash = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    created_by = relationship("User", remote_side=[id])


class CustomerAssignment(Base):
    __tablename__ = "customer_assignments"
    __table_args__ = (UniqueConstraint("customer_id", "employee_id", name="uq_assignment_pair"),)

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    customer = relationship("User", foreign_keys=[customer_id])
    employee = relationship("User", foreign_keys=[employee_id])


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_product_stock_non_negative"),
        CheckConstraint("price >= 0", name="ck_product_price_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    # seeded at creation; afterwards only orderdesk.inventory writes this column
    stock = Column(Integer, nullable=False, default=0)
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    assigned_to_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    # soft delete: hidden from everyone but admins until restored or removed for good
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    deleted_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    customer = relationship("User", foreign_keys=[customer_id])
    created_by = relationship("User", foreign_keys=[created_by_id])
    assigned_to = relationship("User", foreign_keys=[assigned_to_id])

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),)

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    # captured from Product.price when the order is created, never recalculated
    unit_price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    # signed for adjustments, positive for reserve/release
    quantity = Column(Integer, nullable=False)
    order_id = Column(Integer, nullable=True, index=True)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AccessRequest(Base):
    """Someone outside the system asking for an account; handled by an admin."""

    __tablename__ = "access_requests"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, index=True)
    company = Column(String, nullable=True)
    message = Column(String, nullable=True)
    status = Column(String, nullable=False, default=REQUEST_PENDING, index=True)
    handled_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    handled_at = Column(DateTime(timezone=True), nullable=True)
    # account created when the request was accepted
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
