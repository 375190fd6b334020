import logging
from typing import List, Optional

import jwt
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import access_requests, crud, inventory, models, orders, schemas
from .auth import create_access_token, decode_access_token
from .config import Settings, get_settings, settings as startup_settings
from .db import Base, SessionLocal, engine
from .errors import Forbidden, NotFound, OrderDeskError
from .logging_setup import configure_logging
from .models import Actor
from .visibility import VisibilityContext

configure_logging(startup_settings.log_level)
logger = logging.getLogger(__name__)

# Create tables if not existing
Base.metadata.create_all(bind=engine)

app = FastAPI(title="OrderDesk")


# Dependency to get DB session per request

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_visibility(settings: Settings = Depends(get_settings)) -> VisibilityContext:
    return VisibilityContext.from_settings(settings)


def optional_actor(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Optional[Actor]:
    """Resolve the caller from an ``Authorization: Bearer`` token.

    Returns None when the request carries no token at all. The user is
    always re-read from the database so role changes and deactivation take
    effect immediately.
    """
    auth = request.headers.get("authorization")
    if not auth:
        return None
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="invalid token")
    try:
        payload = decode_access_token(token.strip(), settings.jwt_secret)
        acting_id = int(payload.get("sub"))
    except (jwt.PyJWTError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="invalid token")

    user = db.get(models.User, acting_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="acting user not found")
    return Actor.from_user(user)


def current_actor(actor: Optional[Actor] = Depends(optional_actor)) -> Actor:
    if actor is None:
        raise HTTPException(status_code=401, detail="missing bearer token")
    return actor


def _hide_forbidden(settings: Settings, exc: Forbidden, what: str):
    # Optionally report invisible records as missing so existence is not leaked
    if settings.hide_forbidden:
        return NotFound(f"{what} not found")
    return exc


@app.exception_handler(OrderDeskError)
async def orderdesk_error_handler(request: Request, exc: OrderDeskError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/auth/login")
async def auth_login(payload: schemas.LoginRequest, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    user = crud.authenticate(db, payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="invalid credentials")
    token = create_access_token(user.id, user.role, settings.jwt_secret, email=user.email)
    return {"access_token": token, "token_type": "bearer"}


@app.post("/users", response_model=schemas.UserRead, status_code=201)
async def create_user(user: schemas.UserCreate, db: Session = Depends(get_db), actor: Optional[Actor] = Depends(optional_actor)):
    return crud.create_user(db, actor, user)


@app.get("/customers", response_model=List[schemas.UserRead])
async def list_customers(
    db: Session = Depends(get_db),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    return crud.list_customers_visible_to(db, ctx, actor)


@app.post("/customers", response_model=schemas.UserRead, status_code=201)
async def create_customer(customer: schemas.CustomerCreate, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return crud.create_customer(db, actor, customer)


@app.get("/customers/{customer_id}", response_model=schemas.UserRead)
async def get_customer(
    customer_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    try:
        return crud.get_customer(db, ctx, actor, customer_id)
    except Forbidden as e:
        raise _hide_forbidden(settings, e, "customer")


@app.get("/assignments", response_model=List[schemas.AssignmentRead])
async def list_assignments(db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return crud.list_assignments(db, actor)


@app.post("/assignments", response_model=schemas.AssignmentRead, status_code=201)
async def create_assignment(payload: schemas.AssignmentCreate, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return crud.create_assignment(db, actor, payload.customer_id, payload.employee_id)


@app.delete("/assignments/{customer_id}/{employee_id}")
async def delete_assignment(customer_id: int, employee_id: int, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    ok = crud.delete_assignment(db, actor, customer_id, employee_id)
    if not ok:
        raise HTTPException(status_code=404, detail="assignment not found")
    return {"deleted": True}


@app.get("/products", response_model=List[schemas.ProductRead])
async def list_products(db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return crud.list_products(db)


@app.post("/products", response_model=schemas.ProductRead, status_code=201)
async def create_product(product: schemas.ProductCreate, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return crud.create_product(db, actor, product)


@app.post("/inventory/adjust", response_model=schemas.ProductRead)
async def adjust_stock(payload: schemas.StockAdjust, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return inventory.adjust(db, actor, payload.product_id, payload.delta, reason=payload.reason)


@app.get("/inventory/movements", response_model=List[schemas.MovementRead])
async def list_movements(product_id: int | None = Query(default=None), db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    return inventory.list_movements(db, actor, product_id=product_id)


@app.post("/orders", response_model=schemas.OrderRead, status_code=201)
async def create_order(
    payload: schemas.OrderCreate,
    db: Session = Depends(get_db),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    return orders.create_order(
        db,
        ctx,
        actor,
        payload.items,
        status=payload.status,
        assigned_to_id=payload.assigned_to_id,
        customer_id=payload.customer_id,
    )


@app.get("/orders", response_model=List[schemas.OrderRead])
async def list_orders(
    status: str | None = Query(default=None),
    deleted: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    return orders.list_orders_visible_to(db, ctx, actor, status=status, include_deleted=deleted)


@app.get("/orders/{order_id}", response_model=schemas.OrderRead)
async def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    try:
        return orders.get_order(db, ctx, actor, order_id)
    except Forbidden as e:
        raise _hide_forbidden(settings, e, "order")


@app.put("/orders/{order_id}/status", response_model=schemas.OrderRead)
async def change_order_status(
    order_id: int,
    payload: schemas.StatusChange,
    db: Session = Depends(get_db),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    return orders.transition_order(db, ctx, actor, order_id, payload.status)


@app.post("/orders/{order_id}/cancel", response_model=schemas.OrderRead)
async def cancel_order(
    order_id: int,
    db: Session = Depends(get_db),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    return orders.cancel_order(db, ctx, actor, order_id)


@app.put("/orders/{order_id}/assign", response_model=schemas.OrderRead)
async def reassign_order(
    order_id: int,
    payload: schemas.Reassign,
    db: Session = Depends(get_db),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    return orders.reassign_order(db, ctx, actor, order_id, payload.assigned_to_id)


@app.put("/orders/{order_id}", response_model=schemas.OrderRead)
async def update_order(
    order_id: int,
    payload: schemas.OrderUpdate,
    db: Session = Depends(get_db),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    return orders.update_order(db, ctx, actor, order_id, items=payload.items, status=payload.status)


@app.delete("/orders/{order_id}", response_model=schemas.OrderRemoval)
async def api_delete_order(
    order_id: int,
    permanent: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    if permanent:
        orders.delete_order(db, ctx, actor, order_id)
    else:
        orders.soft_delete_order(db, ctx, actor, order_id)
    return {"deleted": order_id, "permanent": permanent}


@app.post("/orders/{order_id}/restore", response_model=schemas.OrderRead)
async def restore_order(
    order_id: int,
    db: Session = Depends(get_db),
    ctx: VisibilityContext = Depends(get_visibility),
    actor: Actor = Depends(current_actor),
):
    return orders.restore_order(db, ctx, actor, order_id)


@app.post("/access-requests", response_model=schemas.AccessRequestRead, status_code=201)
async def create_access_request(payload: schemas.AccessRequestCreate, db: Session = Depends(get_db)):
    return access_requests.create_access_request(db, payload)


@app.get("/access-requests", response_model=List[schemas.AccessRequestRead])
async def list_access_requests(
    status: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    return access_requests.list_access_requests(db, actor, status=status)


@app.post("/access-requests/{request_id}/handle", response_model=schemas.AccessRequestOutcome)
async def handle_access_request(
    request_id: int,
    payload: schemas.AccessRequestDecision,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    request, temporary_password = access_requests.handle_access_request(db, actor, request_id, payload.action)
    return {"request": request, "temporary_password": temporary_password}
