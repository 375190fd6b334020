"""Account requests from people outside the system.

Anyone may file a request; an admin accepts or rejects it exactly once.
Accepting creates an admin account owned by the handling admin (so it lands
one level below them in the visibility hierarchy) with a temporary password
that is returned to the handler once.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import audit, models, schemas
from .auth import hash_password
from .crud import _commit, get_user_by_email, normalize_email
from .errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from .models import Actor
from .utils import sanitize_input

logger = logging.getLogger(__name__)

ACTIONS = {
    "accept": models.REQUEST_ACCEPTED,
    "reject": models.REQUEST_REJECTED,
}


def _require_admin(actor: Optional[Actor]):
    if actor is None or actor.role != models.ROLE_ADMIN:
        raise Forbidden("admin required to handle access requests")


def create_access_request(db: Session, payload: schemas.AccessRequestCreate) -> models.AccessRequest:
    email = normalize_email(payload.email)
    if get_user_by_email(db, email) is not None:
        raise Conflict(f"email {email} already registered")
    open_request = (
        db.query(models.AccessRequest.id)
        .filter(models.AccessRequest.email == email, models.AccessRequest.status == models.REQUEST_PENDING)
        .first()
    )
    if open_request is not None:
        raise Conflict(f"an access request for {email} is already pending")

    request = models.AccessRequest(
        name=sanitize_input(payload.name),
        email=email,
        company=sanitize_input(payload.company) or None,
        message=sanitize_input(payload.message) or None,
    )
    db.add(request)
    db.commit()
    db.refresh(request)
    logger.info("access request %s filed for %s", request.id, email)
    audit.record("create", "access_request", request.id, None, email=email)
    return request


def list_access_requests(db: Session, actor: Optional[Actor], status: Optional[str] = None) -> List[models.AccessRequest]:
    _require_admin(actor)
    query = db.query(models.AccessRequest)
    if status is not None:
        query = query.filter(models.AccessRequest.status == status)
    return query.order_by(models.AccessRequest.id.desc()).all()


def handle_access_request(
    db: Session, actor: Optional[Actor], request_id: int, action: str
) -> Tuple[models.AccessRequest, Optional[str]]:
    """Accept or reject a pending request.

    Returns the request and, on acceptance, the temporary password of the
    new account. A request that was already handled raises
    ``InvalidTransition``.
    """
    _require_admin(actor)
    if action not in ACTIONS:
        raise ValidationError(f"unknown action {action!r}")
    request = db.get(models.AccessRequest, request_id)
    if request is None:
        raise NotFound("access request not found")
    if request.status != models.REQUEST_PENDING:
        raise InvalidTransition(f"access request {request.id} was already {request.status}")

    temporary_password = None
    try:
        result = db.execute(
            update(models.AccessRequest)
            .where(models.AccessRequest.id == request.id, models.AccessRequest.status == models.REQUEST_PENDING)
            .values(status=ACTIONS[action], handled_by_id=actor.id, handled_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidTransition(f"access request {request.id} was handled concurrently")
        if action == "accept":
            if get_user_by_email(db, request.email) is not None:
                raise Conflict(f"email {request.email} already registered")
            temporary_password = secrets.token_urlsafe(9)
            user = models.User(
                name=request.name or request.email.split("@")[0],
                email=request.email,
                role=models.ROLE_ADMIN,
                created_by_id=actor.id,
                password_hash=hash_password(temporary_password),
            )
            db.add(user)
            db.flush()
            db.execute(
                update(models.AccessRequest)
                .where(models.AccessRequest.id == request.id)
                .values(user_id=user.id)
                .execution_options(synchronize_session=False)
            )
        _commit(db, f"email {request.email} already registered")
    except Exception:
        db.rollback()
        raise
    db.refresh(request)
    logger.info("access request %s %s by user %s", request.id, request.status, actor.id)
    audit.record("handle", "access_request", request.id, actor, status=request.status, user_id=request.user_id)
    return request, temporary_password
