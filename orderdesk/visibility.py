"""Who may see which customer or order.

Authority follows a two-level delegation: an admin sees what they created,
what their direct subordinates (users whose ``created_by_id`` is the admin)
created, and the customers assigned to those subordinates; an employee sees
the orders assigned to them and the customers assigned to them. Only one
level of subordinates is searched. The configured super-admin sees
everything.

The decision functions take the relation data through a small lookup object
(``SqlRelations`` in production) so they can be exercised without a
database. ``visible_orders_clause``/``visible_customers_clause`` express the
same rules as SQL predicates for list endpoints.
"""
from typing import Iterable, List, NamedTuple, Optional

from sqlalchemy import and_, false, or_, select, true
from sqlalchemy.orm import Session, aliased

from . import models
from .models import Actor

TARGET_CUSTOMER = "customer"
TARGET_ORDER = "order"


class VisibilityContext(NamedTuple):
    superadmin_email: str = ""

    @classmethod
    def from_settings(cls, settings) -> "VisibilityContext":
        return cls(superadmin_email=(settings.superadmin_email or "").lower())


class SqlRelations:
    """Read-only relation lookups backed by a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: int) -> Optional[models.User]:
        return self.db.get(models.User, user_id)

    def get_order(self, order_id: int) -> Optional[models.Order]:
        return self.db.get(models.Order, order_id)

    def subordinate_ids(self, user_id: int) -> List[int]:
        rows = self.db.execute(select(models.User.id).where(models.User.created_by_id == user_id))
        return [r[0] for r in rows]

    def is_assigned(self, customer_id: int, employee_ids: Iterable[int]) -> bool:
        employee_ids = list(employee_ids)
        if not employee_ids:
            return False
        row = self.db.execute(
            select(models.CustomerAssignment.id)
            .where(
                models.CustomerAssignment.customer_id == customer_id,
                models.CustomerAssignment.employee_id.in_(employee_ids),
            )
            .limit(1)
        ).first()
        return row is not None


def is_superadmin(ctx: VisibilityContext, actor: Optional[Actor]) -> bool:
    if actor is None or actor.role != models.ROLE_ADMIN:
        return False
    if not actor.email or not ctx.superadmin_email:
        return False
    return actor.email.lower() == ctx.superadmin_email.lower()


def can_view_customer(ctx: VisibilityContext, relations, actor: Optional[Actor], customer_id: int) -> bool:
    if actor is None:
        return False
    # looking at yourself is always allowed; anyone else must be a customer
    if actor.id == customer_id:
        return True
    if actor.role == models.ROLE_CUSTOMER:
        return False
    target = relations.get_user(customer_id)
    if target is None or target.role != models.ROLE_CUSTOMER:
        return False
    if is_superadmin(ctx, actor):
        return True
    if actor.role == models.ROLE_ADMIN:
        if target.created_by_id == actor.id:
            return True
        subordinates = relations.subordinate_ids(actor.id)
        if target.created_by_id is not None and target.created_by_id in subordinates:
            return True
        return relations.is_assigned(customer_id, subordinates)
    if actor.role == models.ROLE_EMPLOYEE:
        return relations.is_assigned(customer_id, [actor.id])
    return False


def can_view_order(ctx: VisibilityContext, relations, actor: Optional[Actor], order_id: int) -> bool:
    if actor is None:
        return False
    order = relations.get_order(order_id)
    if order is None:
        return False
    if is_superadmin(ctx, actor):
        return True
    if actor.role == models.ROLE_ADMIN:
        if order.created_by_id == actor.id:
            return True
        subordinates = relations.subordinate_ids(actor.id)
        if order.created_by_id in subordinates:
            return True
        return relations.is_assigned(order.customer_id, subordinates)
    if actor.role == models.ROLE_EMPLOYEE:
        if order.assigned_to_id == actor.id:
            return True
        return relations.is_assigned(order.customer_id, [actor.id])
    return order.customer_id == actor.id


def can_view(ctx: VisibilityContext, relations, actor: Optional[Actor], target_kind: str, target_id: int) -> bool:
    if target_kind == TARGET_CUSTOMER:
        return can_view_customer(ctx, relations, actor, target_id)
    if target_kind == TARGET_ORDER:
        return can_view_order(ctx, relations, actor, target_id)
    raise ValueError(f"unknown target kind: {target_kind}")


def _subordinates_of(actor: Actor):
    # aliased so the subquery does not correlate with an outer query on users
    subordinate = aliased(models.User)
    return select(subordinate.id).where(subordinate.created_by_id == actor.id)


def _customers_assigned_to(employee_ids):
    return select(models.CustomerAssignment.customer_id).where(
        models.CustomerAssignment.employee_id.in_(employee_ids)
    )


def visible_orders_clause(ctx: VisibilityContext, actor: Optional[Actor]):
    """SQL predicate over ``orders`` equivalent to ``can_view_order``."""
    if actor is None:
        return false()
    if is_superadmin(ctx, actor):
        return true()
    if actor.role == models.ROLE_ADMIN:
        subordinates = _subordinates_of(actor)
        return or_(
            models.Order.created_by_id == actor.id,
            models.Order.created_by_id.in_(subordinates),
            models.Order.customer_id.in_(_customers_assigned_to(subordinates)),
        )
    if actor.role == models.ROLE_EMPLOYEE:
        return or_(
            models.Order.assigned_to_id == actor.id,
            models.Order.customer_id.in_(_customers_assigned_to([actor.id])),
        )
    return models.Order.customer_id == actor.id


def visible_customers_clause(ctx: VisibilityContext, actor: Optional[Actor]):
    """SQL predicate over ``users`` selecting the customers ``actor`` can view."""
    is_customer = models.User.role == models.ROLE_CUSTOMER
    if actor is None:
        return false()
    if is_superadmin(ctx, actor):
        return is_customer
    if actor.role == models.ROLE_ADMIN:
        subordinates = _subordinates_of(actor)
        return and_(is_customer, or_(
            models.User.created_by_id == actor.id,
            models.User.created_by_id.in_(subordinates),
            models.User.id.in_(_customers_assigned_to(subordinates)),
        ))
    if actor.role == models.ROLE_EMPLOYEE:
        return and_(is_customer, models.User.id.in_(_customers_assigned_to([actor.id])))
    return and_(is_customer, models.User.id == actor.id)
