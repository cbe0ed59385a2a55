from __future__ import annotations

import logging
import uuid
from typing import Any

from leadengine.context import get_correlation_id
from leadengine.core.timeutils import utcnow

logger = logging.getLogger("leadengine.audit")

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str,
    company_id: uuid.UUID | str,
    entity_type: str,
    entity_id: uuid.UUID | str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "company_id": str(company_id),
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": utcnow().isoformat(),
    }
    audit_entries.append(entry)
    logger.debug(
        "audit_recorded",
        extra={"company_id": entry["company_id"], "entity_type": entity_type, "audit_action": action},
    )
    return entry


def trail_for(entity_type: str, entity_id: uuid.UUID | str) -> list[dict[str, Any]]:
    """Entries for one entity, oldest first."""
    key = str(entity_id)
    return [entry for entry in audit_entries if entry["entity_type"] == entity_type and entry["entity_id"] == key]
