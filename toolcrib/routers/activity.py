from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlmodel import Session, select

from toolcrib.db import get_session
from toolcrib.deps import require_admin
from toolcrib.error import ValidationError
from toolcrib.models import ActivityLog, User
from toolcrib.schemas import ActivityAction, ActivityListResponse, ActivitySort


def _get_zone(tz_str: Optional[str]) -> Optional[ZoneInfo]:
    if not tz_str:
        return None
    tz_str = tz_str.strip()
    if not tz_str:
        return None
    try:
        return ZoneInfo(tz_str)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Invalid tz: {tz_str} (e.g. America/Chicago / Europe/London / UTC)")


def _parse_dt_or_date(s: str, *, is_end: bool, assume_tz: Optional[ZoneInfo]) -> datetime:
    """
    Accepts:
      - "YYYY-MM-DD"
      - ISO datetime: "YYYY-MM-DDTHH:MM:SS", "...Z", "...+02:00"
    Rules:
      - date: start = local 00:00:00, end = next day 00:00:00 (half-open)
      - datetime: taken as given
      - no offset in the input: use assume_tz, falling back to UTC
      - returns naive UTC to match the utcnow() timestamps in the DB
    """
    s = (s or "").strip()
    if not s:
        raise ValidationError("start/end cannot be empty")

    # 1) plain date
    if len(s) == 10 and s[4] == "-" and s[7] == "-":
        try:
            d = date.fromisoformat(s)
        except ValueError:
            raise ValidationError(f"Bad date: {s}, expected YYYY-MM-DD")

        local_dt = datetime(d.year, d.month, d.day)
        if is_end:
            local_dt = local_dt + timedelta(days=1)

        tz = assume_tz or timezone.utc
        local_dt = local_dt.replace(tzinfo=tz)
        return local_dt.astimezone(timezone.utc).replace(tzinfo=None)

    # 2) datetime (Z accepted)
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Bad datetime: {s}, e.g. 2026-01-12T08:30:00 or 2026-01-12T08:30:00Z")

    # the input's own offset wins over tz
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=assume_tz or timezone.utc)

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


router = APIRouter(prefix="/activity", tags=["activity"])


@router.get("", response_model=ActivityListResponse)
def list_activity(
    action: Optional[ActivityAction] = Query(None, description="Filter by action"),
    user_id: Optional[int] = Query(None, ge=1, description="Filter by acting user"),
    item_id: Optional[int] = Query(None, ge=1, description="Filter by item"),
    tz: Optional[str] = Query(None, description="Time zone used for start/end without an offset, e.g. America/Chicago"),
    start: Optional[str] = Query(None, description="Start date/datetime, e.g. 2026-01-12 or 2026-01-12T08:30:00"),
    end: Optional[str] = Query(None, description="End date/datetime (exclusive), e.g. 2026-01-13"),
    sort: ActivitySort = Query(ActivitySort.id_desc),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    conds = [ActivityLog.company_id == admin.company_id]
    if action is not None:
        conds.append(ActivityLog.action == action)
    if user_id is not None:
        conds.append(ActivityLog.user_id == user_id)
    if item_id is not None:
        conds.append(ActivityLog.item_id == item_id)

    zone = _get_zone(tz)
    start_dt = end_dt = None
    if start:
        start_dt = _parse_dt_or_date(start, is_end=False, assume_tz=zone)
        conds.append(ActivityLog.timestamp >= start_dt)
    if end:
        end_dt = _parse_dt_or_date(end, is_end=True, assume_tz=zone)
        conds.append(ActivityLog.timestamp < end_dt)
    if start_dt is not None and end_dt is not None and start_dt >= end_dt:
        raise ValidationError("start must be earlier than end")

    # ✅ sort: one switch for order_by
    if sort == ActivitySort.id_desc:
        order_by = (ActivityLog.id.desc(),)
    elif sort == ActivitySort.id_asc:
        order_by = (ActivityLog.id.asc(),)
    elif sort == ActivitySort.created_desc:
        order_by = (ActivityLog.timestamp.desc(), ActivityLog.id.desc())
    else:
        order_by = (ActivityLog.timestamp.asc(), ActivityLog.id.asc())

    total = session.exec(select(func.count()).select_from(ActivityLog).where(*conds)).one()
    items = session.exec(
        select(ActivityLog).where(*conds).order_by(*order_by).offset(offset).limit(limit)
    ).all()

    return {"items": items, "total": total, "limit": limit, "offset": offset}
