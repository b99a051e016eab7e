from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.models import AdminLog, AuthEvent

logger = logging.getLogger(__name__)


def log_auth_event(
    db: Session,
    *,
    attempted_email: str,
    success: bool,
    ip: str | None,
    user_agent: str | None,
    user_id: int | None = None,
    failure_reason: str | None = None,
) -> None:
    db.add(
        AuthEvent(
            attempted_email=attempted_email,
            success=success,
            failure_reason=failure_reason,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
        )
    )


def log_admin_action(
    db: Session,
    *,
    admin_id: int | None,
    action: str,
    entity_type: str,
    entity_id: int | None,
    details: dict | None = None,
) -> bool:
    """Append an admin log row. A failing insert never aborts the admin action."""
    try:
        with db.begin_nested():
            db.add(
                AdminLog(
                    admin_id=admin_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    details=details or {},
                )
            )
    except SQLAlchemyError:
        logger.exception('Could not record admin action %s on %s %s', action, entity_type, entity_id)
        return False
    return True
