from fastapi import APIRouter, BackgroundTasks, Depends
from sqlmodel import Session

from toolcrib.db import get_session
from toolcrib.deps import get_notifier, require_user
from toolcrib.error import PermissionDeniedError
from toolcrib.models import User
from toolcrib.schemas import TechnicianInventoryRead, TechnicianSummaryRead, UseBody, UserRole
from toolcrib.services import tech_accounts
from toolcrib.services.notifier import Notifier, dispatch

router = APIRouter(prefix="/tech-inventory", tags=["tech-inventory"])


def _technician_id(user: User, technician_id: int | None) -> int:
    # technicians only ever see their own van stock
    if technician_id is None or technician_id == user.id:
        return user.id
    if user.role != UserRole.admin:
        raise PermissionDeniedError("Technicians can only view their own inventory")
    return technician_id


@router.get("", response_model=list[TechnicianInventoryRead])
def list_records(
        technician_id: int | None = None,
        include_all: bool = False,
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    return tech_accounts.list_records(
        session, user.company_id, _technician_id(user, technician_id), include_all=include_all
    )


@router.get("/summary", response_model=list[TechnicianSummaryRead])
def summary(
        technician_id: int | None = None,
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    return tech_accounts.summary(session, user.company_id, _technician_id(user, technician_id))


@router.post("/{record_id}/use", response_model=TechnicianInventoryRead)
def use_stock(
        record_id: int,
        data: UseBody,
        background_tasks: BackgroundTasks,
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
        notifier: Notifier = Depends(get_notifier),
):
    result = tech_accounts.use(session, user, record_id, data.amount, data.job_reference, data.notes)
    if result.notifications:
        background_tasks.add_task(dispatch, notifier, result.notifications)
    return result.record
