import logging
from datetime import datetime

from sqlalchemy import func
from sqlmodel import Session, select

from toolcrib.db import run_in_transaction
from toolcrib.error import DuplicateError, NotFoundError, ValidationError
from toolcrib.models import Category, Company, InventoryItem, Truck, User
from toolcrib.schemas import (
    CategoryCreate,
    CategoryUpdate,
    CompanySettingsUpdate,
    NotificationKind,
    TruckCreate,
    TruckUpdate,
)
from toolcrib.services import ledger
from toolcrib.services.notifier import Notification

logger = logging.getLogger(__name__)


def _required(value: str | None, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{label} is required")
    return value


# ---------- trucks ----------

def _check_truck_identifier(session: Session, company_id: int, identifier: str, exclude_id: int | None = None) -> None:
    stmt = select(Truck).where(Truck.company_id == company_id, Truck.identifier == identifier)
    if exclude_id is not None:
        stmt = stmt.where(Truck.id != exclude_id)
    if session.exec(stmt).first():
        raise DuplicateError(f'A truck with identifier "{identifier}" already exists')


def create_truck(session: Session, actor: User, data: TruckCreate) -> Truck:
    name = _required(data.name, "Truck name")
    identifier = _required(data.identifier, "Truck identifier")

    def _op() -> Truck:
        _check_truck_identifier(session, actor.company_id, identifier)
        truck = Truck(name=name, identifier=identifier, company_id=actor.company_id)
        session.add(truck)
        session.flush()
        return truck

    truck = run_in_transaction(session, _op)
    session.refresh(truck)
    logger.info("truck %s created (%s)", truck.id, truck.identifier)
    return truck


def list_trucks(session: Session, company_id: int) -> list[Truck]:
    return list(session.exec(select(Truck).where(Truck.company_id == company_id).order_by(Truck.name)).all())


def update_truck(session: Session, actor: User, truck_id: int, data: TruckUpdate) -> Truck:
    changes = data.model_dump(exclude_unset=True)

    def _op() -> Truck:
        truck = ledger.get_truck(session, actor.company_id, truck_id)
        if "name" in changes:
            truck.name = _required(changes["name"], "Truck name")
        if "identifier" in changes:
            identifier = _required(changes["identifier"], "Truck identifier")
            _check_truck_identifier(session, actor.company_id, identifier, exclude_id=truck.id)
            truck.identifier = identifier
        truck.updated_at = datetime.utcnow()
        session.add(truck)
        return truck

    truck = run_in_transaction(session, _op)
    session.refresh(truck)
    return truck


def delete_truck(session: Session, actor: User, truck_id: int) -> int:
    """Delete a truck, moving everything on it back to the warehouse. Returns how many items moved."""

    def _op() -> int:
        truck = ledger.get_truck(session, actor.company_id, truck_id)
        items = session.exec(
            select(InventoryItem)
            .where(InventoryItem.company_id == actor.company_id, InventoryItem.assigned_truck_id == truck.id)
            .order_by(InventoryItem.id)
        ).all()
        for item in items:
            ledger.apply_transfer(session, actor, item, None)
        session.delete(truck)
        return len(items)

    moved = run_in_transaction(session, _op)
    logger.info("truck %s deleted, %s items returned to warehouse", truck_id, moved)
    return moved


# ---------- categories ----------

def _check_category_name(session: Session, company_id: int, name: str, exclude_id: int | None = None) -> None:
    stmt = select(Category).where(Category.company_id == company_id, func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Category.id != exclude_id)
    if session.exec(stmt).first():
        raise DuplicateError(f'Category "{name}" already exists')


def create_category(session: Session, actor: User, data: CategoryCreate) -> Category:
    name = _required(data.name, "Category name")

    def _op() -> Category:
        _check_category_name(session, actor.company_id, name)
        category = Category(
            name=name,
            description=(data.description or "").strip() or None,
            color=data.color or "#6B7280",
            company_id=actor.company_id,
        )
        session.add(category)
        session.flush()
        return category

    category = run_in_transaction(session, _op)
    session.refresh(category)
    return category


def list_categories(session: Session, company_id: int) -> list[Category]:
    stmt = select(Category).where(Category.company_id == company_id).order_by(Category.name)
    return list(session.exec(stmt).all())


def update_category(session: Session, actor: User, category_id: int, data: CategoryUpdate) -> Category:
    changes = data.model_dump(exclude_unset=True)

    def _op() -> Category:
        category = ledger.get_category(session, actor.company_id, category_id)
        if "name" in changes:
            name = _required(changes["name"], "Category name")
            _check_category_name(session, actor.company_id, name, exclude_id=category.id)
            category.name = name
        if "description" in changes:
            category.description = (changes["description"] or "").strip() or None
        if changes.get("color"):
            category.color = changes["color"]
        session.add(category)
        return category

    category = run_in_transaction(session, _op)
    session.refresh(category)
    return category


def delete_category(session: Session, actor: User, category_id: int) -> None:
    def _op() -> None:
        category = ledger.get_category(session, actor.company_id, category_id)
        in_use = session.exec(
            select(func.count()).select_from(InventoryItem).where(InventoryItem.category_id == category.id)
        ).one()
        if in_use:
            raise ValidationError(f'Category "{category.name}" is still used by {in_use} item(s)')
        session.delete(category)

    run_in_transaction(session, _op)
    logger.info("category %s deleted", category_id)


# ---------- company settings ----------

def get_company(session: Session, company_id: int) -> Company:
    company = session.get(Company, company_id)
    if not company:
        raise NotFoundError(f"Company {company_id} not found")
    return company


def update_company_settings(session: Session, actor: User, data: CompanySettingsUpdate) -> Company:
    changes = data.model_dump(exclude_unset=True)

    def _op() -> Company:
        company = get_company(session, actor.company_id)
        if "admin_email" in changes:
            email = (changes["admin_email"] or "").strip() or None
            if email and "@" not in email:
                raise ValidationError("Please enter a valid email address")
            company.admin_email = email
        if changes.get("low_stock_alerts_enabled") is not None:
            company.low_stock_alerts_enabled = changes["low_stock_alerts_enabled"]
        session.add(company)
        return company

    company = run_in_transaction(session, _op)
    session.refresh(company)
    return company


def build_test_notification(session: Session, actor: User) -> Notification:
    company = get_company(session, actor.company_id)
    if not company.admin_email:
        raise ValidationError("Set an admin email before sending a test notification")
    return Notification(
        kind=NotificationKind.test,
        payload={
            "to": company.admin_email,
            "subject": "Test Email Notification",
            "company_name": company.name,
            "company_id": company.id,
        },
    )
