from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from fatoora.app.models.audit import AuditLog


def log_action(
    db: Session,
    *,
    organization_id: int,
    action: str,
    entity: str,
    entity_id: str,
    details: str,
    changes: dict[str, Any] | None = None,
    user_id: str | None = None,
) -> None:
    """Write a single row to the audit_logs table.

    Does NOT call db.commit(); the row lands with the caller's transaction, so
    a failed step leaves no audit trail claiming it succeeded. Never pass key
    material, secrets or OTPs in ``details`` or ``changes``.
    """
    db.add(
        AuditLog(
            organization_id=organization_id,
            user_id=user_id,
            action=action,
            entity=entity,
            entity_id=entity_id,
            details=details,
            changes=changes,
        )
    )
