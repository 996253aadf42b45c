"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from flask import has_request_context, request

from extensions import db
from models import AuditLog


def _current_actor() -> Optional[str]:
    """Actor as reported by the upstream auth layer, if any."""
    if not has_request_context():
        return None
    return request.headers.get("X-Actor") or None


def log_action(
    account_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id,
    details: str = "",
    *,
    actor: Optional[str] = None,
) -> None:
    """Record an audit log entry.

    NOTE: This does NOT commit. The caller is responsible for committing
    the session, so the entry lands in the same transaction as the change.
    """
    db.session.add(
        AuditLog(
            account_id=account_id,
            actor=actor or _current_actor(),
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            details=details,
        )
    )
