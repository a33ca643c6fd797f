"""Best-effort writer for the audit trail."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.db import transaction

from .models import AuditRecord

logger = logging.getLogger(__name__)


def record_audit(
    *,
    action: str,
    resource_type: str,
    resource_id: Any,
    changes: Optional[Dict[str, Any]] = None,
    actor=None,
    actor_label: str = "",
) -> Optional[AuditRecord]:
    """Append an audit record; failures are logged and never propagate.

    The write runs in its own savepoint so a failed insert does not poison an
    enclosing transaction.
    """

    if actor is not None and not getattr(actor, "is_authenticated", False):
        actor = None
    try:
        with transaction.atomic():
            return AuditRecord.objects.create(
                actor=actor,
                actor_label=actor_label[:128],
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id),
                changes=changes or {},
            )
    except Exception:
        logger.exception("Failed to write audit record action=%s resource=%s:%s", action, resource_type, resource_id)
        return None
