from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlmodel import Session

from toolcrib.db import get_session
from toolcrib.deps import get_notifier, require_admin, require_user
from toolcrib.error import NotFoundError
from toolcrib.models import User
from toolcrib.schemas import (
    FulfillBody,
    FulfillResultRead,
    ReceiptBody,
    RequestStatus,
    StockRequestCreate,
    StockRequestRead,
    UserRole,
)
from toolcrib.services import stock_requests
from toolcrib.services.notifier import Notifier, dispatch

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=StockRequestRead)
def create_request(
        data: StockRequestCreate,
        background_tasks: BackgroundTasks,
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
        notifier: Notifier = Depends(get_notifier),
):
    result = stock_requests.create_request(session, user, data.job_number, data.notes, data.lines)
    if result.notifications:
        # ✅ after commit; delivery problems never reach the caller
        background_tasks.add_task(dispatch, notifier, result.notifications)
    return StockRequestRead.model_validate(result.request)


@router.get("", response_model=list[StockRequestRead])
def list_requests(
        status: RequestStatus | None = None,
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    reqs = stock_requests.list_requests(session, user, status=status, limit=limit, offset=offset)
    return [StockRequestRead.model_validate(r) for r in reqs]


@router.get("/{request_id}", response_model=StockRequestRead)
def get_request(
        request_id: int,
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    req = stock_requests.get_request(session, user.company_id, request_id)
    if user.role != UserRole.admin and req.requester_id != user.id:
        raise NotFoundError(f"Stock request {request_id} not found")
    return StockRequestRead.model_validate(req)


@router.post("/{request_id}/fulfill", response_model=FulfillResultRead)
def fulfill_request(
        request_id: int,
        data: FulfillBody,
        background_tasks: BackgroundTasks,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
        notifier: Notifier = Depends(get_notifier),
):
    result = stock_requests.fulfill(session, admin, request_id, data.lines)
    if result.notifications:
        background_tasks.add_task(dispatch, notifier, result.notifications)
    return {
        "request": StockRequestRead.model_validate(result.request),
        "lines": [vars(o) for o in result.lines],
        "warnings": result.warnings,
    }


@router.post("/{request_id}/receive", response_model=StockRequestRead)
def confirm_receipt(
        request_id: int,
        data: ReceiptBody,
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    req = stock_requests.confirm_receipt(session, user, request_id, data.line_ids)
    return StockRequestRead.model_validate(req)
