from dataclasses import asdict, dataclass

from sqlalchemy import func
from sqlmodel import Session, select

from toolcrib.models import Company, InventoryItem, TechnicianInventory
from toolcrib.schemas import LocationType, NotificationKind
from toolcrib.services.notifier import Notification


@dataclass(frozen=True)
class LowStockEvent:
    item_id: int
    item_name: str
    company_id: int
    remaining: int
    minimum: int
    group_id: str | None = None


def remaining_units(session: Session, item: InventoryItem) -> int:
    # grouped units are counted across the group's warehouse members
    if not item.group_id:
        return item.quantity
    stmt = select(func.coalesce(func.sum(InventoryItem.quantity), 0)).where(
        InventoryItem.company_id == item.company_id,
        InventoryItem.group_id == item.group_id,
        InventoryItem.location_type == LocationType.warehouse,
    )
    return int(session.exec(stmt).one())


def check(session: Session, item: InventoryItem) -> LowStockEvent | None:
    """Fires when remaining stock is strictly below the item's minimum.

    No deduplication: every call that finds the item below threshold fires again.
    """
    if not item.min_quantity:
        return None
    remaining = remaining_units(session, item)
    if remaining >= item.min_quantity:
        return None
    return LowStockEvent(
        item_id=item.id,
        item_name=item.name,
        company_id=item.company_id,
        remaining=remaining,
        minimum=item.min_quantity,
        group_id=item.group_id,
    )


def alerts_enabled(company: Company) -> bool:
    return bool(company.admin_email) and company.low_stock_alerts_enabled


def low_stock_notification(company: Company, events: list[LowStockEvent]) -> Notification | None:
    if not events or not alerts_enabled(company):
        return None
    return Notification(
        kind=NotificationKind.low_stock,
        payload={
            "to": company.admin_email,
            "subject": f"Low Stock Alert - {len(events)} Item(s)",
            "company_name": company.name,
            "company_id": company.id,
            "items": [asdict(e) for e in events],
        },
    )


def tech_low_stock_notification(
    company: Company,
    technician_name: str,
    record: TechnicianInventory,
    minimum: int,
) -> Notification | None:
    # technician balances alert at or below the minimum, including zero
    if not minimum or record.remaining_quantity > minimum or not alerts_enabled(company):
        return None
    return Notification(
        kind=NotificationKind.tech_low_stock,
        payload={
            "to": company.admin_email,
            "subject": f"Technician Low Stock Alert - {record.item_name}",
            "company_name": company.name,
            "company_id": company.id,
            "item_name": record.item_name,
            "technician": technician_name,
            "remaining_quantity": record.remaining_quantity,
            "min_quantity": minimum,
        },
    )
