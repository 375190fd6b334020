"""Order lifecycle: creation, edits, status transitions, reassignment, soft
deletion, restore and permanent removal.

Every stock effect goes through ``orderdesk.inventory`` inside the same
transaction as the status change. Status changes are claimed with a
conditional UPDATE/DELETE on the order's current status, so a transition
(and its reserve or release) happens at most once even when two requests
race on the same order.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from . import audit, inventory, models
from .crud import round_amount
from .errors import Forbidden, InvalidTransition, NotFound, ValidationError
from .fsm import TransitionValidator
from .models import Actor
from .visibility import SqlRelations, VisibilityContext, can_view_customer, can_view_order, visible_orders_clause

logger = logging.getLogger(__name__)

ORDER_FSM = TransitionValidator({
    models.STATUS_DRAFT: {models.STATUS_PENDING, models.STATUS_CANCELLED},
    models.STATUS_PENDING: {models.STATUS_COMPLETED, models.STATUS_CANCELLED},
    models.STATUS_COMPLETED: set(),
    models.STATUS_CANCELLED: set(),
})

# transitions a customer may request on their own orders
CUSTOMER_TARGETS = (models.STATUS_PENDING, models.STATUS_CANCELLED)


def order_total(items: Iterable[models.OrderItem]) -> Decimal:
    return round_amount(sum((Decimal(i.unit_price) * i.quantity for i in items), Decimal("0")))


def _require_actor(actor: Optional[Actor]) -> Actor:
    if actor is None:
        raise Forbidden("authentication required")
    return actor


def _load_order(db: Session, order_id: int, include_deleted: bool = False) -> models.Order:
    order = db.get(models.Order, order_id)
    if order is None or (order.is_deleted and not include_deleted):
        raise NotFound("order not found")
    return order


def _load_visible_order(
    db: Session, ctx: VisibilityContext, actor: Optional[Actor], order_id: int, include_deleted: bool = False
) -> models.Order:
    order = _load_order(db, order_id, include_deleted=include_deleted)
    if not can_view_order(ctx, SqlRelations(db), actor, order_id):
        raise Forbidden("order not visible to this user")
    return order


def _validate_items(db: Session, items) -> list:
    items = list(items or [])
    if not items:
        raise ValidationError("order must contain at least one item")
    product_ids = {item.product_id for item in items}
    products = {
        p.id: p for p in db.query(models.Product).filter(models.Product.id.in_(product_ids)).all()
    }
    lines = []
    for item in items:
        quantity = item.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"invalid quantity for product {item.product_id}")
        product = products.get(item.product_id)
        if product is None:
            raise ValidationError(f"product {item.product_id} not found")
        lines.append((product, quantity))
    return lines


def _resolve_customer(db: Session, ctx: VisibilityContext, actor: Actor, customer_id: Optional[int]) -> int:
    if actor.role == models.ROLE_CUSTOMER:
        if customer_id is not None and customer_id != actor.id:
            raise Forbidden("customers may only order for themselves")
        return actor.id
    if customer_id is None:
        return actor.id
    customer = db.get(models.User, customer_id)
    if customer is None or customer.role != models.ROLE_CUSTOMER:
        raise ValidationError(f"customer {customer_id} not found")
    if not can_view_customer(ctx, SqlRelations(db), actor, customer_id):
        raise Forbidden("customer not visible to this user")
    return customer_id


def _resolve_assignee(db: Session, actor: Actor, assigned_to_id: Optional[int]) -> Optional[int]:
    if assigned_to_id is None:
        return None
    if actor.role != models.ROLE_ADMIN:
        raise Forbidden("only admins may assign orders")
    assignee = db.get(models.User, assigned_to_id)
    if assignee is None:
        raise ValidationError(f"assignee {assigned_to_id} not found")
    if assignee.role not in models.STAFF_ROLES:
        raise ValidationError("assignee must be an employee or admin")
    return assignee.id


def create_order(
    db: Session,
    ctx: VisibilityContext,
    actor: Optional[Actor],
    items,
    status: str = models.STATUS_PENDING,
    assigned_to_id: Optional[int] = None,
    customer_id: Optional[int] = None,
) -> models.Order:
    """Create an order with its items.

    A draft touches no stock. A pending order reserves every item in the
    same transaction; if any product is short the whole order fails with
    ``InsufficientStock`` and no stock changes persist.
    """
    actor = _require_actor(actor)
    if status not in (models.STATUS_DRAFT, models.STATUS_PENDING):
        raise ValidationError("orders are created as draft or pending")
    lines = _validate_items(db, items)
    beneficiary = _resolve_customer(db, ctx, actor, customer_id)
    assignee = _resolve_assignee(db, actor, assigned_to_id)

    order = models.Order(
        customer_id=beneficiary,
        created_by_id=actor.id,
        assigned_to_id=assignee,
        status=status,
    )
    for product, quantity in lines:
        order.items.append(models.OrderItem(product_id=product.id, quantity=quantity, unit_price=product.price))
    order.total = order_total(order.items)

    db.add(order)
    try:
        db.flush()
        if status == models.STATUS_PENDING:
            inventory.reserve_items(db, order.items, order_id=order.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    logger.info("order %s created status=%s by user %s", order.id, order.status, actor.id)
    audit.record("create", "order", order.id, actor, status=order.status, total=order.total, items=len(order.items))
    return order


def _check_role_may_transition(actor: Actor, order: models.Order, target: str):
    if actor.role == models.ROLE_CUSTOMER:
        if order.customer_id != actor.id or target not in CUSTOMER_TARGETS:
            raise Forbidden("customers may only submit or cancel their own orders")


def _claim_status(db: Session, order: models.Order, current: str, target: str):
    result = db.execute(
        update(models.Order)
        .where(models.Order.id == order.id, models.Order.status == current, models.Order.deleted_at.is_(None))
        .values(status=target)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidTransition(f"order {order.id} is no longer {current}")


def transition_order(db: Session, ctx: VisibilityContext, actor: Optional[Actor], order_id: int, target: str) -> models.Order:
    actor = _require_actor(actor)
    if target not in models.ORDER_STATUSES:
        raise ValidationError(f"unknown status {target!r}")
    order = _load_visible_order(db, ctx, actor, order_id)
    current = order.status
    ORDER_FSM.assert_can_transition(current, target)
    _check_role_may_transition(actor, order, target)

    try:
        _claim_status(db, order, current, target)
        if current == models.STATUS_DRAFT and target == models.STATUS_PENDING:
            inventory.reserve_items(db, order.items, order_id=order.id)
        elif target == models.STATUS_CANCELLED and current in models.STOCK_HOLDING_STATUSES:
            inventory.release_items(db, order.items, order_id=order.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    logger.info("order %s %s -> %s by user %s", order.id, current, target, actor.id)
    audit.record("status_change", "order", order.id, actor, **{"from": current, "to": target})
    return order


def cancel_order(db: Session, ctx: VisibilityContext, actor: Optional[Actor], order_id: int) -> models.Order:
    return transition_order(db, ctx, actor, order_id, models.STATUS_CANCELLED)


def reassign_order(
    db: Session, ctx: VisibilityContext, actor: Optional[Actor], order_id: int, assigned_to_id: Optional[int]
) -> models.Order:
    """Change the responsible employee; ``None`` unassigns. Never touches stock."""
    actor = _require_actor(actor)
    order = _load_visible_order(db, ctx, actor, order_id)
    if actor.role != models.ROLE_ADMIN:
        raise Forbidden("only admins may reassign orders")
    if order.is_terminal:
        raise InvalidTransition(f"order {order.id} is {order.status} and can no longer be reassigned")
    assignee = _resolve_assignee(db, actor, assigned_to_id)
    previous = order.assigned_to_id

    try:
        result = db.execute(
            update(models.Order)
            .where(
                models.Order.id == order.id,
                models.Order.status.notin_(models.TERMINAL_STATUSES),
                models.Order.deleted_at.is_(None),
            )
            .values(assigned_to_id=assignee)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidTransition(f"order {order.id} reached a terminal state")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    audit.record("assign", "order", order.id, actor, previous=previous, assigned_to_id=assignee)
    return order


def update_order(
    db: Session,
    ctx: VisibilityContext,
    actor: Optional[Actor],
    order_id: int,
    items=None,
    status: Optional[str] = None,
) -> models.Order:
    """Replace the items of a draft or pending order, optionally publishing a draft.

    New items snapshot the current product prices and the total is
    recomputed. A pending order gives back what it held and reserves the new
    item set in the same transaction, so a shortfall leaves the order and the
    stock exactly as they were. Customers may edit their own orders, admins
    any order they can see; employees may not edit orders.
    """
    actor = _require_actor(actor)
    order = _load_visible_order(db, ctx, actor, order_id)
    if actor.role == models.ROLE_EMPLOYEE:
        raise Forbidden("employees may not edit orders")
    if actor.role == models.ROLE_CUSTOMER and order.customer_id != actor.id:
        raise Forbidden("customers may only edit their own orders")

    current = order.status
    if current not in models.EDITABLE_STATUSES:
        raise InvalidTransition(f"order {order.id} is {current} and can no longer be edited")
    target = status or current
    if target not in models.EDITABLE_STATUSES:
        raise ValidationError("an edit may only keep the order a draft or publish it as pending")
    if target != current:
        ORDER_FSM.assert_can_transition(current, target)
    lines = _validate_items(db, items) if items is not None else None
    held = inventory.item_totals(order.items) if current == models.STATUS_PENDING and lines is not None else []

    try:
        _claim_status(db, order, current, target)
        for product_id, quantity in held:
            inventory.release(db, product_id, quantity, order_id=order.id)
        if lines is not None:
            order.items.clear()
            for product, quantity in lines:
                order.items.append(models.OrderItem(product_id=product.id, quantity=quantity, unit_price=product.price))
            order.total = order_total(order.items)
            db.flush()
        if target == models.STATUS_PENDING and (lines is not None or current == models.STATUS_DRAFT):
            inventory.reserve_items(db, order.items, order_id=order.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    logger.info("order %s edited (%s -> %s) by user %s", order.id, current, target, actor.id)
    audit.record("update", "order", order.id, actor, **{"from": current, "to": target, "total": order.total})
    return order


def _owns_draft(actor: Actor, order: models.Order) -> bool:
    if order.status != models.STATUS_DRAFT:
        return False
    return actor.id in (order.customer_id, order.created_by_id)


def soft_delete_order(db: Session, ctx: VisibilityContext, actor: Optional[Actor], order_id: int) -> models.Order:
    """Hide an order without touching it or the stock it holds.

    Employees and customers may only hide their own drafts (orders they are
    the customer of or created). Admins may hide any order they can see;
    ``restore_order`` brings it back.
    """
    actor = _require_actor(actor)
    if actor.role == models.ROLE_ADMIN:
        order = _load_visible_order(db, ctx, actor, order_id)
    else:
        order = _load_order(db, order_id)
        if not _owns_draft(actor, order):
            raise Forbidden("only your own draft orders may be deleted")

    try:
        result = db.execute(
            update(models.Order)
            .where(models.Order.id == order.id, models.Order.deleted_at.is_(None))
            .values(deleted_at=datetime.now(timezone.utc), deleted_by_id=actor.id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidTransition(f"order {order.id} is already deleted")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    logger.info("order %s (%s) soft-deleted by user %s", order.id, order.status, actor.id)
    audit.record("delete", "order", order.id, actor, status=order.status, permanent=False)
    return order


def restore_order(db: Session, ctx: VisibilityContext, actor: Optional[Actor], order_id: int) -> models.Order:
    actor = _require_actor(actor)
    if actor.role != models.ROLE_ADMIN:
        raise Forbidden("only admins may restore orders")
    order = _load_visible_order(db, ctx, actor, order_id, include_deleted=True)

    try:
        result = db.execute(
            update(models.Order)
            .where(models.Order.id == order.id, models.Order.deleted_at.is_not(None))
            .values(deleted_at=None, deleted_by_id=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidTransition(f"order {order.id} is not deleted")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    audit.record("restore", "order", order.id, actor)
    return order


def delete_order(db: Session, ctx: VisibilityContext, actor: Optional[Actor], order_id: int) -> None:
    """Remove an order and its items for good, releasing stock it still holds.

    Admins only. Cancelled orders were already released and drafts never
    reserved, so only pending and completed orders give stock back.
    Soft-deleted orders can be removed too.
    """
    actor = _require_actor(actor)
    if actor.role != models.ROLE_ADMIN:
        raise Forbidden("only admins may permanently delete orders")
    order = _load_visible_order(db, ctx, actor, order_id, include_deleted=True)

    status = order.status
    held = inventory.item_totals(order.items) if status in models.STOCK_HOLDING_STATUSES else []
    try:
        db.execute(
            delete(models.OrderItem)
            .where(models.OrderItem.order_id == order.id)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(
            delete(models.Order)
            .where(models.Order.id == order.id, models.Order.status == status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidTransition(f"order {order.id} changed while being deleted")
        for product_id, quantity in held:
            inventory.release(db, product_id, quantity, order_id=order.id)
        db.expunge(order)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("order %s (%s) deleted by user %s", order_id, status, actor.id)
    audit.record("delete", "order", order_id, actor, status=status, released=held, permanent=True)


def get_order(db: Session, ctx: VisibilityContext, actor: Optional[Actor], order_id: int) -> models.Order:
    """Soft-deleted orders are readable by admins only."""
    _require_actor(actor)
    include_deleted = actor.role == models.ROLE_ADMIN
    return _load_visible_order(db, ctx, actor, order_id, include_deleted=include_deleted)


def list_orders_visible_to(
    db: Session,
    ctx: VisibilityContext,
    actor: Optional[Actor],
    status: Optional[str] = None,
    include_deleted: bool = False,
) -> List[models.Order]:
    query = db.query(models.Order).filter(visible_orders_clause(ctx, actor))
    if include_deleted:
        if actor is None or actor.role != models.ROLE_ADMIN:
            raise Forbidden("only admins may list deleted orders")
    else:
        query = query.filter(models.Order.deleted_at.is_(None))
    if status is not None:
        if status not in models.ORDER_STATUSES:
            raise ValidationError(f"unknown status {status!r}")
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.id).all()
