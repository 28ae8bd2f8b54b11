import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from toolcrib.db import run_in_transaction
from toolcrib.error import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from toolcrib.models import Company, InventoryItem, TechnicianInventory, User
from toolcrib.schemas import RECORD_TRANSITIONS, ActivityAction, RecordStatus, UserRole
from toolcrib.services import audit, low_stock
from toolcrib.services.notifier import Notification

logger = logging.getLogger(__name__)

TI = TechnicianInventory


@dataclass
class UsageResult:
    record: TechnicianInventory
    notifications: list[Notification] = field(default_factory=list)


def _stamp(now: datetime) -> str:
    return now.strftime("%Y-%m-%d %H:%M:%S")


def _append_note(note: str):
    return func.coalesce(TI.notes, "") + "\n" + note


def advance_status(record: TechnicianInventory, target: RecordStatus) -> None:
    if target not in RECORD_TRANSITIONS[record.status]:
        raise InvalidStateError(f"Record {record.id} cannot move from {record.status.value} to {target.value}")
    record.status = target


def credit(
    session: Session,
    *,
    technician_id: int,
    company_id: int,
    item_id: int,
    item_name: str,
    amount: int,
    job_number: str,
    request_id: int | None = None,
    actor_id: int | None = None,
) -> TechnicianInventory:
    """Add ``amount`` to the technician's active balance for the item, creating it if needed.

    Upsert keyed on the active record; a ``used`` record is never reactivated.
    Runs inside the caller's transaction.
    """
    if amount <= 0:
        raise ValidationError("Credit amount must be > 0")

    now = datetime.utcnow()
    active = (
        TI.technician_id == technician_id,
        TI.item_id == item_id,
        TI.company_id == company_id,
        TI.status == RecordStatus.active,
    )
    merge = (
        update(TI)
        .where(*active)
        .values(
            quantity=TI.quantity + amount,
            remaining_quantity=TI.remaining_quantity + amount,
            notes=_append_note(f"Added {amount} from job #{job_number} on {_stamp(now)}"),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    merged = session.exec(merge).rowcount == 1
    if not merged:
        record = TI(
            technician_id=technician_id,
            item_id=item_id,
            item_name=item_name,
            quantity=amount,
            remaining_quantity=amount,
            job_number=job_number,
            request_id=request_id,
            company_id=company_id,
            status=RecordStatus.active,
            notes=f"Fulfilled from stock request #{job_number}",
        )
        try:
            with session.begin_nested():
                session.add(record)
        except IntegrityError:
            # someone created the active record between our UPDATE and INSERT
            if session.exec(merge).rowcount != 1:
                raise ConcurrencyConflictError(f"Active balance for item {item_id} changed concurrently")
            merged = True

    record = session.exec(select(TI).where(*active).execution_options(populate_existing=True)).one()
    audit.record(
        session,
        company_id=company_id,
        actor_id=actor_id,
        action=ActivityAction.added,
        subject=item_name,
        item_id=item_id,
        details={
            "technician_id": technician_id,
            "record_id": record.id,
            "item_name": item_name,
            "quantity_added": amount,
            "job_number": job_number,
            "request_id": request_id,
            "merged": merged,
            "remaining_quantity": record.remaining_quantity,
        },
    )
    return record


def get_record(session: Session, company_id: int, record_id: int) -> TechnicianInventory:
    record = session.get(TI, record_id)
    if not record or record.company_id != company_id:
        raise NotFoundError(f"Technician inventory record {record_id} not found")
    return record


def use(
    session: Session,
    actor: User,
    record_id: int,
    amount: int,
    job_reference: str | None = None,
    notes: str | None = None,
) -> UsageResult:
    def _op() -> TechnicianInventory:
        record = get_record(session, actor.company_id, record_id)
        if record.technician_id != actor.id and actor.role != UserRole.admin:
            raise PermissionDeniedError("Only the owning technician can use this stock")
        if amount <= 0 or amount > record.remaining_quantity:
            raise InsufficientBalanceError(
                f"Cannot use {amount} {record.item_name}: {record.remaining_quantity} remaining"
            )

        now = datetime.utcnow()
        note = f"Used {amount} on {_stamp(now)}"
        if job_reference:
            note += f" (Job: {job_reference})"
        if notes:
            note += f" - {notes}"

        result = session.exec(
            update(TI)
            .where(
                TI.id == record.id,
                TI.status == RecordStatus.active,
                TI.remaining_quantity >= amount,
            )
            .values(
                used_quantity=TI.used_quantity + amount,
                remaining_quantity=TI.remaining_quantity - amount,
                notes=_append_note(note),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError(f"Record {record.id} changed concurrently")
        session.refresh(record)
        if record.remaining_quantity == 0:
            advance_status(record, RecordStatus.used)
            session.add(record)
            session.flush()

        audit.record(
            session,
            company_id=actor.company_id,
            actor_id=actor.id,
            action=ActivityAction.used,
            subject=record.item_name,
            item_id=record.item_id,
            details={
                "record_id": record.id,
                "item_name": record.item_name,
                "quantity_used": amount,
                "job_reference": job_reference,
                "remaining_quantity": record.remaining_quantity,
            },
        )
        return record

    record = run_in_transaction(session, _op)
    session.refresh(record)
    logger.info("technician %s used %s x%s (record %s)", record.technician_id, record.item_name, amount, record.id)

    notifications = []
    item = session.get(InventoryItem, record.item_id)
    company = session.get(Company, record.company_id)
    technician = session.get(User, record.technician_id)
    if item and company and technician:
        note = low_stock.tech_low_stock_notification(company, technician.username, record, item.min_quantity)
        if note:
            notifications.append(note)
    return UsageResult(record=record, notifications=notifications)


# ---------- reads ----------

def list_records(
    session: Session, company_id: int, technician_id: int, include_all: bool = False
) -> list[TechnicianInventory]:
    stmt = select(TI).where(TI.company_id == company_id, TI.technician_id == technician_id)
    if not include_all:
        stmt = stmt.where(TI.status == RecordStatus.active, TI.remaining_quantity > 0)
    return list(session.exec(stmt.order_by(TI.updated_at.desc(), TI.id.desc())).all())


def summary(session: Session, company_id: int, technician_id: int) -> list[dict]:
    active_records = func.sum(
        case(((TI.status == RecordStatus.active) & (TI.remaining_quantity > 0), 1), else_=0)
    )
    stmt = (
        select(
            TI.item_id,
            func.min(TI.item_name),
            func.sum(TI.quantity),
            func.sum(TI.used_quantity),
            func.sum(TI.remaining_quantity),
            active_records,
        )
        .where(TI.company_id == company_id, TI.technician_id == technician_id)
        .group_by(TI.item_id)
        .order_by(func.min(TI.item_name))
    )
    return [
        {
            "item_id": item_id,
            "item_name": name,
            "total_received": int(received or 0),
            "total_used": int(used or 0),
            "total_remaining": int(remaining or 0),
            "active_records": int(active or 0),
        }
        for item_id, name, received, used, remaining, active in session.exec(stmt).all()
    ]
