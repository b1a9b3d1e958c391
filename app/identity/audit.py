import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.identity.models import AuditEvent


def record_event(
    s: Session,
    *,
    business_id: int | None,
    actor_account_id: int | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper. Usable from request handlers, scripts and tests.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    ev = AuditEvent(
        request_id=rid,
        business_id=business_id,
        actor_account_id=actor_account_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if in_request else None,
    )
    s.add(ev)
    return ev
