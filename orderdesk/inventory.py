"""Inventory ledger: the only code that writes ``Product.stock``.

Reservations are a single guarded UPDATE evaluated by the database
(``stock = stock - q WHERE stock >= q``) and the affected row count decides
success, so concurrent reservations against one product can never drive the
counter below zero. ``reserve``/``release`` and their batch variants do not
commit: they run inside the caller's transaction, and a caller that catches
``InsufficientStock`` rolls the whole batch back.
"""
import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import audit, models
from .errors import Forbidden, InsufficientStock, NotFound, ValidationError

logger = logging.getLogger(__name__)


def _require_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"quantity must be a positive integer, got {quantity!r}")
    return quantity


def _journal(db: Session, product_id: int, kind: str, quantity: int, order_id=None, reason=None):
    db.add(models.InventoryMovement(
        product_id=product_id, kind=kind, quantity=quantity, order_id=order_id, reason=reason,
    ))


def _decrement(db: Session, product_id: int, quantity: int) -> int:
    result = db.execute(
        update(models.Product)
        .where(models.Product.id == product_id, models.Product.stock >= quantity)
        .values(stock=models.Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _increment(db: Session, product_id: int, quantity: int) -> int:
    result = db.execute(
        update(models.Product)
        .where(models.Product.id == product_id)
        .values(stock=models.Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def reserve(db: Session, product_id: int, quantity: int, order_id: Optional[int] = None) -> None:
    _require_quantity(quantity)
    if _decrement(db, product_id, quantity) == 0:
        if db.get(models.Product, product_id) is None:
            raise NotFound(f"product {product_id} not found")
        logger.info("reservation refused product=%s quantity=%s order=%s", product_id, quantity, order_id)
        raise InsufficientStock(product_id, quantity)
    _journal(db, product_id, models.MOVEMENT_RESERVE, quantity, order_id=order_id)


def release(db: Session, product_id: int, quantity: int, order_id: Optional[int] = None) -> None:
    _require_quantity(quantity)
    if _increment(db, product_id, quantity) == 0:
        raise NotFound(f"product {product_id} not found")
    _journal(db, product_id, models.MOVEMENT_RELEASE, quantity, order_id=order_id)


def item_totals(items: Iterable) -> List[Tuple[int, int]]:
    """Sum quantities per product, sorted by product id.

    ``items`` are objects with ``product_id`` and ``quantity`` attributes
    (order items or request payload items). A fixed product order keeps
    concurrent batches from locking rows in opposite orders.
    """
    totals = {}
    for item in items:
        qty = _require_quantity(item.quantity)
        totals[item.product_id] = totals.get(item.product_id, 0) + qty
    return sorted(totals.items())


def reserve_items(db: Session, items: Iterable, order_id: Optional[int] = None) -> None:
    for product_id, quantity in item_totals(items):
        reserve(db, product_id, quantity, order_id=order_id)


def release_items(db: Session, items: Iterable, order_id: Optional[int] = None) -> None:
    for product_id, quantity in item_totals(items):
        release(db, product_id, quantity, order_id=order_id)


def adjust(db: Session, actor, product_id: int, delta: int, reason: Optional[str] = None) -> models.Product:
    """Manual restock (positive delta) or write-off (negative delta), admins only."""
    if actor is None or actor.role != models.ROLE_ADMIN:
        raise Forbidden("admin required to adjust stock")
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("delta must be a non-zero integer")
    product = db.get(models.Product, product_id)
    if product is None:
        raise NotFound(f"product {product_id} not found")
    try:
        if delta > 0:
            _increment(db, product_id, delta)
        elif _decrement(db, product_id, -delta) == 0:
            raise InsufficientStock(product_id, -delta)
        _journal(db, product_id, models.MOVEMENT_ADJUST, delta, reason=reason)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(product)
    audit.record("adjust", "product", product_id, actor, delta=delta, reason=reason, stock=product.stock)
    return product


def list_movements(db: Session, actor, product_id: Optional[int] = None) -> List[models.InventoryMovement]:
    if actor is None or actor.role != models.ROLE_ADMIN:
        raise Forbidden("admin required to read inventory movements")
    query = db.query(models.InventoryMovement)
    if product_id is not None:
        query = query.filter(models.InventoryMovement.product_id == product_id)
    return query.order_by(models.InventoryMovement.id.desc()).all()
