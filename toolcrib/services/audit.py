from typing import Any

from sqlmodel import Session

from toolcrib.models import ActivityLog
from toolcrib.schemas import ActivityAction


def record(
    session: Session,
    *,
    company_id: int,
    actor_id: int | None,
    action: ActivityAction,
    subject: str,
    details: dict[str, Any] | None = None,
    item_id: int | None = None,
    truck_id: int | None = None,
) -> ActivityLog:
    # append-only: written inside the caller's transaction, never updated
    entry = ActivityLog(
        company_id=company_id,
        user_id=actor_id,
        action=action,
        subject=subject,
        details=details or {},
        item_id=item_id,
        truck_id=truck_id,
    )
    session.add(entry)
    return entry
