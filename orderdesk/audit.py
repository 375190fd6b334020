"""Audit sink for order, inventory and assignment mutations.

Records are emitted on the ``orderdesk.audit`` logger after the owning
transaction has committed. Emitting is fire-and-forget: a failure here is
logged and never propagates into the caller's operation.
"""
import json
import logging
from typing import Any, Optional

logger = logging.getLogger("orderdesk.audit")
_log = logging.getLogger(__name__ + ".sink")


def record(action: str, subject_type: str, subject_id: Optional[int], actor=None, **details: Any) -> None:
    try:
        payload = {
            "action": action,
            "subject": subject_type,
            "subject_id": subject_id,
            "actor_id": getattr(actor, "id", None),
            "actor_role": getattr(actor, "role", None),
            "details": details,
        }
        logger.info(json.dumps(payload, default=str, sort_keys=True), extra={"audit": payload})
    except Exception:
        _log.exception("failed to emit audit record %s %s %s", action, subject_type, subject_id)
