from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from flask import g, has_app_context, has_request_context, request
from sqlalchemy.orm import Session

from app.crm.models import AuditEvent, User

if TYPE_CHECKING:
    from app.crm.rbac import Principal


def _json_default(value: Any) -> str:
    # Decimal amounts and datetimes end up in metadata; keep them readable.
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def record_event(
    s: Session,
    *,
    actor: User | Principal | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.
    """
    rid = request_id or (getattr(g, "request_id", None) if has_app_context() else None)
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_username=actor.username if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=_json_default) if metadata else None,
        client_ip=request.remote_addr if has_request_context() else None,
    )
    s.add(ev)
    return ev
