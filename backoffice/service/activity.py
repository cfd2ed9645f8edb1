from __future__ import annotations

import uuid
from typing import Any, Optional

from backoffice.logging import get_logger, log_audit_event
from backoffice.storage.models import ActivityLog

logger = get_logger(__name__)

LOGIN = "LOGIN"
LOGOUT = "LOGOUT"
PASSWORD_CHANGE = "PASSWORD_CHANGE"
SETUP = "SETUP"
CREATE = "CREATE"
UPDATE = "UPDATE"
STATUS_CHANGE = "STATUS_CHANGE"
DELETE = "DELETE"
ROLE_CREATE = "ROLE_CREATE"
ROLE_UPDATE = "ROLE_UPDATE"
ROLE_DELETE = "ROLE_DELETE"


def record_activity(
    store: Any,
    principal_id: Optional[str],
    activity_type: str,
    description: str,
    ip_address: Optional[str] = None,
) -> Optional[ActivityLog]:
    """Append an activity-log row; audit failures never undo the mutation."""
    entry = ActivityLog(
        id=str(uuid.uuid4()),
        principal_id=principal_id,
        type=activity_type,
        description=description,
        ip_address=ip_address,
    )
    log_audit_event(
        "activity_recorded",
        principal_id=principal_id,
        activity_type=activity_type,
        ip_address=ip_address,
    )
    try:
        return store.record_activity(entry)
    except Exception as exc:
        logger.warning(
            "activity_log_failed",
            activity_type=activity_type,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return None
