from dataclasses import dataclass

from sqlmodel import Session, select

from toolcrib.models import InventoryItem


@dataclass(frozen=True)
class Conflict:
    field: str
    value: str
    item_id: int
    item_name: str

    @property
    def message(self) -> str:
        label = "serial number" if self.field == "serial_number" else "barcode"
        return f"An item with {label} {self.value!r} already exists in your company ({self.item_name})"


def normalize_code(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def find_conflict(
    session: Session,
    company_id: int,
    serial_number: str | None = None,
    barcode: str | None = None,
    exclude_item_id: int | None = None,
) -> Conflict | None:
    for field, value in (("serial_number", normalize_code(serial_number)), ("barcode", normalize_code(barcode))):
        if value is None:
            continue
        column = getattr(InventoryItem, field)
        stmt = select(InventoryItem).where(InventoryItem.company_id == company_id, column == value)
        if exclude_item_id is not None:
            stmt = stmt.where(InventoryItem.id != exclude_item_id)
        hit = session.exec(stmt).first()
        if hit:
            return Conflict(field=field, value=value, item_id=hit.id, item_name=hit.name)
    return None
