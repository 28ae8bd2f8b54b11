import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlmodel import Session, select

from toolcrib.config import settings
from toolcrib.db import retry_transient, run_in_transaction
from toolcrib.error import (
    ConcurrencyConflictError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from toolcrib.models import Company, InventoryItem, StockRequest, StockRequestLine, User
from toolcrib.schemas import (
    REQUEST_TRANSITIONS,
    ActivityAction,
    LineFulfillment,
    NotificationKind,
    RequestLineCreate,
    RequestStatus,
    UserRole,
)
from toolcrib.services import audit, ledger, low_stock, tech_accounts
from toolcrib.services.notifier import Notification

logger = logging.getLogger(__name__)


@dataclass
class LineOutcome:
    line_id: int
    item_id: int
    item_name: str
    quantity_requested: int
    quantity_fulfilled: int
    outcome: str  # fulfilled / skipped / unchanged
    reason: str | None = None
    code: str | None = None


@dataclass
class FulfillResult:
    request: StockRequest
    lines: list[LineOutcome]
    warnings: list[str] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)


@dataclass
class CreateResult:
    request: StockRequest
    notifications: list[Notification] = field(default_factory=list)


def get_request(session: Session, company_id: int, request_id: int, *, lock: bool = False) -> StockRequest:
    stmt = select(StockRequest).where(StockRequest.id == request_id)
    if lock:
        stmt = stmt.with_for_update()
    req = session.exec(stmt).first()
    if not req or req.company_id != company_id:
        raise NotFoundError(f"Stock request {request_id} not found")
    return req


def _transition(session: Session, req: StockRequest, target: RequestStatus, **values: Any) -> None:
    current = req.status
    if target not in REQUEST_TRANSITIONS[current]:
        raise InvalidStateError(f"Request {req.id} is {current.value}; cannot move to {target.value}")
    # compare-and-set so two admins cannot both advance the same request
    result = session.exec(
        update(StockRequest)
        .where(StockRequest.id == req.id, StockRequest.status == current)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflictError(f"Request {req.id} changed concurrently")
    session.refresh(req)


# ---------- create ----------

def create_request(
    session: Session,
    actor: User,
    job_number: str,
    notes: str | None,
    lines: list[RequestLineCreate],
) -> CreateResult:
    job = (job_number or "").strip()
    if not job:
        raise ValidationError("Job number is required")
    wanted = [line for line in lines if line.quantity_requested > 0]
    if not wanted:
        raise ValidationError("Add at least one item with a quantity greater than zero")

    def _op() -> StockRequest:
        req = StockRequest(
            requester_id=actor.id,
            company_id=actor.company_id,
            job_number=job,
            notes=(notes or "").strip() or None,
        )
        for position, line in enumerate(wanted):
            item = ledger.get_item(session, actor.company_id, line.item_id)
            req.lines.append(
                StockRequestLine(
                    position=position,
                    item_id=item.id,
                    item_name=item.name,
                    quantity_requested=line.quantity_requested,
                )
            )
        session.add(req)
        session.flush()
        return req

    req = run_in_transaction(session, _op)
    session.refresh(req)
    logger.info("stock request %s created (job #%s, %s lines)", req.id, req.job_number, len(req.lines))

    notifications = []
    company = session.get(Company, actor.company_id)
    if company and company.admin_email:
        notifications.append(
            Notification(
                kind=NotificationKind.stock_request_created,
                payload={
                    "to": company.admin_email,
                    "subject": f"New Stock Request - Job #{req.job_number}",
                    "company_name": company.name,
                    "company_id": company.id,
                    "request_id": req.id,
                    "job_number": req.job_number,
                    "requester": actor.username,
                    "notes": req.notes,
                    "items": [
                        {"item_name": line.item_name, "quantity": line.quantity_requested}
                        for line in req.lines
                    ],
                },
            )
        )
    else:
        logger.info("no admin email configured; skipping request notification")
    return CreateResult(request=req, notifications=notifications)


# ---------- fulfill ----------

def _validate_fulfillments(req: StockRequest, fulfillments: list[LineFulfillment]) -> dict[int, int]:
    lines = {line.id: line for line in req.lines}
    amounts: dict[int, int] = {}
    for f in fulfillments:
        if f.line_id in amounts:
            raise ValidationError(f"Line {f.line_id} listed twice")
        line = lines.get(f.line_id)
        if line is None:
            raise ValidationError(f"Line {f.line_id} does not belong to request {req.id}")
        if f.quantity_fulfilled < 0 or f.quantity_fulfilled > line.quantity_requested:
            raise ValidationError(
                f"{line.item_name}: cannot fulfill {f.quantity_fulfilled} of {line.quantity_requested} requested"
            )
        amounts[f.line_id] = f.quantity_fulfilled
    if not any(amounts.values()):
        raise ValidationError("Nothing to fulfill: every quantity is zero")
    return amounts


def _fulfill_line(
    session: Session,
    actor: User,
    req: StockRequest,
    line: StockRequestLine,
    amount: int,
) -> tuple[LineOutcome, InventoryItem | None]:
    def _attempt() -> InventoryItem:
        with session.begin_nested():
            item = ledger.decrement_warehouse_stock(session, req.company_id, line.item_id, amount)
            tech_accounts.credit(
                session,
                technician_id=req.requester_id,
                company_id=req.company_id,
                item_id=line.item_id,
                item_name=line.item_name,
                amount=amount,
                job_number=req.job_number,
                request_id=req.id,
                actor_id=actor.id,
            )
            line.quantity_fulfilled = amount
            session.add(line)
        return item

    outcome = LineOutcome(
        line_id=line.id,
        item_id=line.item_id,
        item_name=line.item_name,
        quantity_requested=line.quantity_requested,
        quantity_fulfilled=0,
        outcome="skipped",
    )
    try:
        # lines are independent: a transient failure retries this line only
        item = retry_transient(_attempt)
    except (InsufficientStockError, NotFoundError, ConcurrencyConflictError, StoreUnavailableError) as exc:
        logger.warning("request %s line %s skipped: %s", req.id, line.id, exc.message)
        outcome.reason = exc.message
        outcome.code = exc.code
        return outcome, None

    outcome.quantity_fulfilled = amount
    outcome.outcome = "fulfilled"
    return outcome, item


def fulfill(session: Session, actor: User, request_id: int, fulfillments: list[LineFulfillment]) -> FulfillResult:
    req = get_request(session, actor.company_id, request_id)
    if req.status != RequestStatus.pending:
        raise InvalidStateError(f"Request {req.id} is already {req.status.value}")
    amounts = _validate_fulfillments(req, fulfillments)

    outcomes: list[LineOutcome] = []
    events: list[low_stock.LowStockEvent] = []

    def _op() -> StockRequest:
        outcomes.clear()
        events.clear()
        current = get_request(session, actor.company_id, request_id, lock=True)
        if current.status != RequestStatus.pending:
            raise InvalidStateError(f"Request {current.id} is already {current.status.value}")

        for line in current.lines:
            amount = amounts.get(line.id, 0)
            if not amount:
                outcomes.append(
                    LineOutcome(
                        line_id=line.id,
                        item_id=line.item_id,
                        item_name=line.item_name,
                        quantity_requested=line.quantity_requested,
                        quantity_fulfilled=0,
                        outcome="unchanged",
                    )
                )
                continue
            outcome, item = _fulfill_line(session, actor, current, line, amount)
            outcomes.append(outcome)
            if item is not None:
                event = low_stock.check(session, item)
                if event:
                    events.append(event)

        skipped = [o for o in outcomes if o.outcome == "skipped"]
        if not any(o.outcome == "fulfilled" for o in outcomes):
            errors = [asdict(o) for o in skipped]
            codes = {o.code for o in skipped}
            message = "No line could be fulfilled; request left pending"
            if InsufficientStockError.code in codes:
                raise InsufficientStockError(message, errors)
            if NotFoundError.code in codes:
                raise NotFoundError(message, errors)
            raise ConcurrencyConflictError(message, errors)

        _transition(session, current, RequestStatus.fulfilled, fulfilled_at=datetime.utcnow())
        return current

    req = run_in_transaction(session, _op)
    session.refresh(req)

    warnings = [
        f"{o.item_name}: not fulfilled ({o.reason})" for o in outcomes if o.outcome == "skipped"
    ]
    logger.info(
        "stock request %s fulfilled: %s lines fulfilled, %s skipped",
        req.id,
        sum(1 for o in outcomes if o.outcome == "fulfilled"),
        len(warnings),
    )

    notifications = []
    company = session.get(Company, actor.company_id)
    if company:
        note = low_stock.low_stock_notification(company, events)
        if note:
            notifications.append(note)
    return FulfillResult(request=req, lines=list(outcomes), warnings=warnings, notifications=notifications)


# ---------- receipt ----------

def confirm_receipt(session: Session, actor: User, request_id: int, line_ids: list[int]) -> StockRequest:
    if not line_ids:
        raise ValidationError("Please check off at least one item as received")

    def _op() -> StockRequest:
        req = get_request(session, actor.company_id, request_id, lock=True)
        if req.requester_id != actor.id:
            raise PermissionDeniedError("Only the requesting technician can confirm receipt")
        if RequestStatus.received not in REQUEST_TRANSITIONS[req.status]:
            raise InvalidStateError(f"Request {req.id} is {req.status.value}; nothing to receive")

        lines = {line.id: line for line in req.lines}
        for line_id in line_ids:
            line = lines.get(line_id)
            if line is None:
                raise ValidationError(f"Line {line_id} does not belong to request {req.id}")
            if line.quantity_fulfilled == 0:
                raise ValidationError(f"{line.item_name} was not fulfilled and cannot be received")

        for line_id in line_ids:
            lines[line_id].received = True
            session.add(lines[line_id])
        session.flush()

        deliverable = [line for line in req.lines if line.quantity_fulfilled > 0]
        complete = all(line.received for line in deliverable)
        if complete or not settings.receipt_requires_all_lines:
            if not complete:
                logger.warning(
                    "request %s marked received with %s of %s lines confirmed",
                    req.id,
                    sum(1 for line in deliverable if line.received),
                    len(deliverable),
                )
            _transition(session, req, RequestStatus.received, received_at=datetime.utcnow())

        audit.record(
            session,
            company_id=actor.company_id,
            actor_id=actor.id,
            action=ActivityAction.received,
            subject=f"Job #{req.job_number}",
            details={
                "request_id": req.id,
                "job_number": req.job_number,
                "items": [
                    {"item_name": lines[i].item_name, "quantity": lines[i].quantity_fulfilled}
                    for i in line_ids
                ],
                "complete": complete,
                "status": req.status.value,
            },
        )
        return req

    req = run_in_transaction(session, _op)
    session.refresh(req)
    return req


# ---------- reads ----------

def list_requests(
    session: Session, actor: User, status: RequestStatus | None = None, limit: int = 50, offset: int = 0
) -> list[StockRequest]:
    stmt = select(StockRequest).where(StockRequest.company_id == actor.company_id)
    if actor.role != UserRole.admin:
        stmt = stmt.where(StockRequest.requester_id == actor.id)
    if status is not None:
        stmt = stmt.where(StockRequest.status == status)
    stmt = stmt.order_by(StockRequest.created_at.desc(), StockRequest.id.desc()).offset(offset).limit(limit)
    return list(session.exec(stmt).all())
