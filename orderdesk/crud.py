import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import audit, models, schemas
from .auth import hash_password, verify_password
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .models import Actor
from .utils import sanitize_input
from .visibility import SqlRelations, VisibilityContext, can_view_customer, visible_customers_clause

logger = logging.getLogger(__name__)

# Business rule: amounts stored rounded to 2 decimals, non-negative


def round_amount(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _commit(db: Session, conflict_message: str):
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise Conflict(conflict_message) from e


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == normalize_email(email)).first()


def create_user(db: Session, actor: Optional[Actor], user: schemas.UserCreate) -> models.User:
    """Create an account owned by ``actor``.

    Admins may create any role, employees only customers. With no actor the
    call is a bootstrap: allowed only while the users table is empty, and
    the account becomes a root admin (``created_by_id`` NULL).
    """
    role = user.role
    if actor is None:
        if db.query(models.User.id).first() is not None:
            raise Forbidden("authentication required")
        role = models.ROLE_ADMIN
    elif actor.role == models.ROLE_EMPLOYEE:
        if role != models.ROLE_CUSTOMER:
            raise Forbidden("employees may only create customers")
    elif actor.role != models.ROLE_ADMIN:
        raise Forbidden("customers may not create users")

    email = normalize_email(user.email)
    if get_user_by_email(db, email) is not None:
        raise Conflict(f"email {email} already registered")

    db_user = models.User(
        name=sanitize_input(user.name),
        email=email,
        role=role,
        created_by_id=actor.id if actor else None,
        password_hash=hash_password(user.password) if user.password else None,
    )
    db.add(db_user)
    _commit(db, f"email {email} already registered")
    db.refresh(db_user)
    audit.record("create", "user", db_user.id, actor, role=role)
    return db_user


def create_customer(db: Session, actor: Optional[Actor], customer: schemas.CustomerCreate) -> models.User:
    if actor is None or actor.role not in models.STAFF_ROLES:
        raise Forbidden("staff required to create customers")
    return create_user(
        db, actor, schemas.UserCreate(name=customer.name, email=customer.email, role=models.ROLE_CUSTOMER)
    )


def authenticate(db: Session, email: str, password: str) -> Optional[models.User]:
    user = get_user_by_email(db, email)
    if user is None or not user.is_active or not user.password_hash:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def get_customer(db: Session, ctx: VisibilityContext, actor: Optional[Actor], customer_id: int) -> models.User:
    customer = db.get(models.User, customer_id)
    if customer is None or customer.role != models.ROLE_CUSTOMER:
        raise NotFound("customer not found")
    if not can_view_customer(ctx, SqlRelations(db), actor, customer_id):
        raise Forbidden("customer not visible to this user")
    return customer


def list_customers_visible_to(db: Session, ctx: VisibilityContext, actor: Optional[Actor]) -> List[models.User]:
    return (
        db.query(models.User)
        .filter(visible_customers_clause(ctx, actor))
        .order_by(models.User.id)
        .all()
    )


def _require_admin(actor: Optional[Actor], what: str):
    if actor is None or actor.role != models.ROLE_ADMIN:
        raise Forbidden(f"admin required to {what}")


def create_assignment(db: Session, actor: Optional[Actor], customer_id: int, employee_id: int) -> models.CustomerAssignment:
    _require_admin(actor, "assign customers")
    customer = db.get(models.User, customer_id)
    employee = db.get(models.User, employee_id)
    if customer is None or employee is None:
        raise ValidationError("user not found")
    if customer.role != models.ROLE_CUSTOMER:
        raise ValidationError("customer_id must reference a customer")
    if employee.role not in models.STAFF_ROLES:
        raise ValidationError("employee_id must reference an employee or admin")

    assignment = models.CustomerAssignment(customer_id=customer_id, employee_id=employee_id)
    db.add(assignment)
    _commit(db, "assignment already exists")
    db.refresh(assignment)
    audit.record("assign", "customer", customer_id, actor, employee_id=employee_id)
    return assignment


def delete_assignment(db: Session, actor: Optional[Actor], customer_id: int, employee_id: int) -> bool:
    _require_admin(actor, "remove assignments")
    assignment = (
        db.query(models.CustomerAssignment)
        .filter(
            models.CustomerAssignment.customer_id == customer_id,
            models.CustomerAssignment.employee_id == employee_id,
        )
        .first()
    )
    if not assignment:
        return False
    db.delete(assignment)
    db.commit()
    audit.record("unassign", "customer", customer_id, actor, employee_id=employee_id)
    return True


def list_assignments(db: Session, actor: Optional[Actor]) -> List[models.CustomerAssignment]:
    _require_admin(actor, "list assignments")
    return db.query(models.CustomerAssignment).order_by(models.CustomerAssignment.id).all()


def create_product(db: Session, actor: Optional[Actor], product: schemas.ProductCreate) -> models.Product:
    _require_admin(actor, "create products")
    if db.query(models.Product.id).filter(models.Product.sku == product.sku).first() is not None:
        raise Conflict(f"sku {product.sku} already exists")
    price = round_amount(product.price)
    if price < 0:
        raise ValidationError("price must be non-negative")
    db_product = models.Product(
        sku=product.sku.strip(),
        name=sanitize_input(product.name),
        price=price,
        stock=product.stock,
        created_by_id=actor.id,
    )
    db.add(db_product)
    _commit(db, f"sku {product.sku} already exists")
    db.refresh(db_product)
    audit.record("create", "product", db_product.id, actor, sku=db_product.sku, stock=db_product.stock)
    return db_product


def list_products(db: Session) -> List[models.Product]:
    return db.query(models.Product).order_by(models.Product.id).all()
