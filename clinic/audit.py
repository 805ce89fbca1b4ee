from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from .models import AuditAction, AuditLog

logger = logging.getLogger("clinic.audit")


def audit_write(
    s: Session,
    resource: str,
    resource_id: str,
    user_id: str,
    tenant_id: str,
    action: AuditAction,
    changes: dict[str, Any] | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Scrive una riga di audit nella stessa transazione dell'operazione."""
    s.add(
        AuditLog(
            tenant_id=tenant_id,
            user_id=user_id,
            resource=resource,
            resource_id=resource_id,
            action=action,
            changes=changes,
            meta=meta,
        )
    )
    logger.info(
        "[AUDIT] %s",
        json.dumps(
            {
                "resource": resource,
                "resourceId": resource_id,
                "action": action.value,
                "userId": user_id,
                "tenantId": tenant_id,
                "meta": meta,
            },
            default=str,
        ),
    )


def audit_read(
    s: Session, resource: str, resource_id: str, user_id: str, tenant_id: str, meta: dict[str, Any] | None = None
) -> None:
    audit_write(s, resource, resource_id, user_id, tenant_id, AuditAction.READ, meta=meta)
