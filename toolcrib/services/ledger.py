import logging
from datetime import datetime
from typing import Any

from sqlalchemy import case, func, or_, update
from sqlmodel import Session, select

from toolcrib.db import run_in_transaction
from toolcrib.error import (
    ConcurrencyConflictError,
    DuplicateError,
    InsufficientStockError,
    InvalidTransferError,
    NotFoundError,
    ValidationError,
)
from toolcrib.models import Category, InventoryItem, Truck, User
from toolcrib.schemas import ActivityAction, ItemCreate, ItemUpdate, LocationType
from toolcrib.services import audit
from toolcrib.services.duplicate_guard import find_conflict, normalize_code
from toolcrib.services.images import ImageStore, put_image, release_image, validate_image

logger = logging.getLogger(__name__)

WAREHOUSE_LABEL = "Warehouse"


# ---------- lookups ----------

def get_item(session: Session, company_id: int, item_id: int) -> InventoryItem:
    item = session.get(InventoryItem, item_id)
    if not item or item.company_id != company_id:
        raise NotFoundError(f"Item {item_id} not found")
    return item


def get_category(session: Session, company_id: int, category_id: int | None) -> Category:
    category = session.get(Category, category_id) if category_id is not None else None
    if not category or category.company_id != company_id:
        raise NotFoundError(f"Category {category_id} not found")
    return category


def get_truck(session: Session, company_id: int, truck_id: int | None) -> Truck:
    truck = session.get(Truck, truck_id) if truck_id is not None else None
    if not truck or truck.company_id != company_id:
        raise NotFoundError(f"Truck {truck_id} not found")
    return truck


def location_label(session: Session, location_type: LocationType, truck_id: int | None) -> str:
    if location_type == LocationType.warehouse or truck_id is None:
        return WAREHOUSE_LABEL
    truck = session.get(Truck, truck_id)
    return truck.name if truck else "Unknown Truck"


def image_url_for(session: Session, item: InventoryItem) -> str | None:
    # group members share the representative's image
    if item.image_url or not item.group_id:
        return item.image_url
    stmt = (
        select(InventoryItem.image_url)
        .where(
            InventoryItem.company_id == item.company_id,
            InventoryItem.group_id == item.group_id,
            InventoryItem.image_url.is_not(None),
        )
        .order_by(InventoryItem.id)
    )
    return session.exec(stmt).first()


# ---------- validation ----------

def _validate_location(
    session: Session, company_id: int, location_type: LocationType, truck_id: int | None
) -> None:
    if location_type == LocationType.truck:
        if truck_id is None:
            raise ValidationError("A truck must be selected for items stored on a truck")
        get_truck(session, company_id, truck_id)
    elif truck_id is not None:
        raise ValidationError("Warehouse items cannot be assigned to a truck")


def _check_duplicates(
    session: Session,
    company_id: int,
    serial_number: str | None,
    barcode: str | None,
    exclude_item_id: int | None = None,
) -> None:
    conflict = find_conflict(session, company_id, serial_number, barcode, exclude_item_id)
    if conflict:
        raise DuplicateError(conflict.message)


def _guarded_update(session: Session, item: InventoryItem, **values: Any) -> None:
    """Optimistic write: applies ``values`` only if nobody bumped the version meanwhile."""
    stmt = (
        update(InventoryItem)
        .where(InventoryItem.id == item.id, InventoryItem.version == item.version)
        .values(version=item.version + 1, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = session.exec(stmt)
    if result.rowcount != 1:
        raise ConcurrencyConflictError(f"Item {item.id} was modified concurrently")
    session.refresh(item)


# ---------- operations ----------

def add_item(
    session: Session,
    actor: User,
    data: ItemCreate,
    image: bytes | None = None,
    image_content_type: str = "image/png",
    image_store: ImageStore | None = None,
) -> InventoryItem:
    name = (data.name or "").strip()
    if not name or data.category_id is None:
        raise ValidationError("Please fill in item name and category")
    if image is not None:
        validate_image(image, image_content_type)

    uploaded: list[str] = []

    def _op() -> InventoryItem:
        get_category(session, actor.company_id, data.category_id)
        _validate_location(session, actor.company_id, data.location_type, data.assigned_truck_id)

        serial = normalize_code(data.serial_number)
        barcode = normalize_code(data.barcode)
        _check_duplicates(session, actor.company_id, serial, barcode)

        now = datetime.utcnow()
        item = InventoryItem(
            name=name,
            description=data.description,
            category_id=data.category_id,
            barcode=barcode,
            serial_number=serial,
            condition=data.condition,
            location_type=data.location_type,
            assigned_truck_id=data.assigned_truck_id,
            assigned_at=now if data.assigned_truck_id else None,
            assigned_by=actor.id if data.assigned_truck_id else None,
            company_id=actor.company_id,
            unit_price=data.unit_price,
            quantity=data.quantity,
            min_quantity=data.min_quantity,
        )
        session.add(item)
        session.flush()  # item.id

        if image is not None and not uploaded:
            url = put_image(image_store, image, image_content_type)
            if url:
                uploaded.append(url)
        if uploaded:
            item.image_url = uploaded[0]

        audit.record(
            session,
            company_id=actor.company_id,
            actor_id=actor.id,
            action=ActivityAction.added,
            subject=item.name,
            item_id=item.id,
            truck_id=item.assigned_truck_id,
            details={
                "item_name": item.name,
                "serial_number": item.serial_number,
                "barcode": item.barcode,
                "location": location_label(session, item.location_type, item.assigned_truck_id),
                "quantity": item.quantity,
            },
        )
        return item

    try:
        item = run_in_transaction(session, _op)
    except Exception:
        for url in uploaded:
            release_image(image_store, url)
        raise
    session.refresh(item)
    logger.info("item %s added (%s)", item.id, item.name)
    return item


def edit_item(session: Session, actor: User, item_id: int, updates: ItemUpdate) -> InventoryItem:
    changes = updates.model_dump(exclude_unset=True)
    if "name" in changes:
        changes["name"] = (changes["name"] or "").strip()
        if not changes["name"]:
            raise ValidationError("Item name cannot be empty")
    if "category_id" in changes and changes["category_id"] is None:
        raise ValidationError("Category cannot be removed")
    for field in ("quantity", "min_quantity", "unit_price", "condition"):
        if field in changes and changes[field] is None:
            del changes[field]

    def _op() -> InventoryItem:
        item = get_item(session, actor.company_id, item_id)
        if "category_id" in changes:
            get_category(session, actor.company_id, changes["category_id"])

        location_type = changes.get("location_type") or item.location_type
        if "assigned_truck_id" in changes:
            truck_id = changes["assigned_truck_id"]
        else:
            truck_id = item.assigned_truck_id if location_type == LocationType.truck else None
        _validate_location(session, actor.company_id, location_type, truck_id)
        moved = location_type != item.location_type or truck_id != item.assigned_truck_id
        if moved:
            _check_movable(item, changes.get("quantity"))

        for field in ("serial_number", "barcode"):
            if field in changes:
                changes[field] = normalize_code(changes[field])
        _check_duplicates(
            session,
            actor.company_id,
            changes.get("serial_number"),
            changes.get("barcode"),
            exclude_item_id=item.id,
        )

        values = {k: v for k, v in changes.items() if k not in ("location_type", "assigned_truck_id")}
        from_label = location_label(session, item.location_type, item.assigned_truck_id)
        previous_truck_id = item.assigned_truck_id
        if moved:
            values.update(
                location_type=location_type,
                assigned_truck_id=truck_id,
                assigned_at=datetime.utcnow(),
                assigned_by=actor.id,
            )
        if values:
            _guarded_update(session, item, **values)

        if moved:
            _record_transfer(session, actor, item, from_label, previous_truck_id)
        return item

    item = run_in_transaction(session, _op)
    session.refresh(item)
    return item


def set_item_image(
    session: Session,
    actor: User,
    item_id: int,
    image: bytes,
    content_type: str,
    image_store: ImageStore,
) -> InventoryItem:
    validate_image(image, content_type)
    item = get_item(session, actor.company_id, item_id)
    previous = item.image_url
    url = put_image(image_store, image, content_type)
    if not url:
        # store failed; keep whatever the item had
        return item

    def _op() -> InventoryItem:
        current = get_item(session, actor.company_id, item_id)
        _guarded_update(session, current, image_url=url)
        return current

    try:
        item = run_in_transaction(session, _op)
    except Exception:
        release_image(image_store, url)
        raise
    if previous and previous != url:
        release_image(image_store, previous)
    session.refresh(item)
    return item


def delete_item(session: Session, actor: User, item_id: int, image_store: ImageStore | None = None) -> dict:
    released: list[str] = []

    def _op() -> dict:
        released.clear()
        item = get_item(session, actor.company_id, item_id)
        # captured before the row is gone
        snapshot = {
            "item_name": item.name,
            "serial_number": item.serial_number,
            "barcode": item.barcode,
            "location": location_label(session, item.location_type, item.assigned_truck_id),
            "group_id": item.group_id,
        }

        if item.image_url:
            heir = None
            if item.group_id:
                heir = session.exec(
                    select(InventoryItem)
                    .where(
                        InventoryItem.company_id == item.company_id,
                        InventoryItem.group_id == item.group_id,
                        InventoryItem.id != item.id,
                    )
                    .order_by(InventoryItem.id)
                ).first()
            if heir is not None and not heir.image_url:
                _guarded_update(session, heir, image_url=item.image_url)
            else:
                released.append(item.image_url)

        session.delete(item)
        audit.record(
            session,
            company_id=actor.company_id,
            actor_id=actor.id,
            action=ActivityAction.deleted,
            subject=snapshot["item_name"],
            item_id=item_id,
            details=snapshot,
        )
        return snapshot

    snapshot = run_in_transaction(session, _op)
    for url in released:
        release_image(image_store, url)
    logger.info("item %s deleted (%s)", item_id, snapshot["item_name"])
    return snapshot


def _record_transfer(
    session: Session, actor: User, item: InventoryItem, from_label: str, previous_truck_id: int | None
) -> None:
    audit.record(
        session,
        company_id=actor.company_id,
        actor_id=actor.id,
        action=ActivityAction.transferred,
        subject=item.name,
        item_id=item.id,
        truck_id=item.assigned_truck_id,
        details={
            "item_name": item.name,
            "serial_number": item.serial_number,
            "from": from_label,
            "to": location_label(session, item.location_type, item.assigned_truck_id),
            "previous_truck_id": previous_truck_id,
            "new_truck_id": item.assigned_truck_id,
        },
    )


def _check_movable(item: InventoryItem, quantity: int | None = None) -> None:
    # a drawn unit stays behind as an empty warehouse row; it has nothing left to move
    quantity = item.quantity if quantity is None else quantity
    if item.location_type == LocationType.warehouse and quantity <= 0:
        raise InvalidTransferError(f"{item.name} has no units left in the warehouse to move")


def apply_transfer(session: Session, actor: User, item: InventoryItem, truck_id: int | None) -> None:
    """Move ``item`` inside the caller's transaction; ``truck_id=None`` means the warehouse."""
    _check_movable(item)
    destination = LocationType.truck if truck_id is not None else LocationType.warehouse
    if destination == item.location_type and truck_id == item.assigned_truck_id:
        raise InvalidTransferError(
            f"{item.name} is already in {location_label(session, item.location_type, item.assigned_truck_id)}"
        )
    if truck_id is not None:
        get_truck(session, actor.company_id, truck_id)

    from_label = location_label(session, item.location_type, item.assigned_truck_id)
    previous_truck_id = item.assigned_truck_id
    _guarded_update(
        session,
        item,
        location_type=destination,
        assigned_truck_id=truck_id,
        assigned_at=datetime.utcnow(),
        assigned_by=actor.id,
    )
    _record_transfer(session, actor, item, from_label, previous_truck_id)


def transfer_item(session: Session, actor: User, item_id: int, truck_id: int | None) -> InventoryItem:
    def _op() -> InventoryItem:
        item = get_item(session, actor.company_id, item_id)
        apply_transfer(session, actor, item, truck_id)
        return item

    item = run_in_transaction(session, _op)
    session.refresh(item)
    logger.info("item %s transferred to %s", item.id, item.assigned_truck_id or WAREHOUSE_LABEL)
    return item


def decrement_warehouse_stock(session: Session, company_id: int, item_id: int, amount: int) -> InventoryItem:
    """Draw ``amount`` units out of the warehouse. Runs inside the caller's transaction.

    Grouped units spread the draw over the group's warehouse members,
    starting with the referenced unit.
    """
    if amount <= 0:
        raise ValidationError("Decrement amount must be > 0")
    item = get_item(session, company_id, item_id)

    if item.group_id:
        stmt = (
            select(InventoryItem)
            .where(
                InventoryItem.company_id == company_id,
                InventoryItem.group_id == item.group_id,
                InventoryItem.location_type == LocationType.warehouse,
                InventoryItem.quantity > 0,
            )
            .order_by(case((InventoryItem.id == item.id, 0), else_=1), InventoryItem.id)
            .with_for_update()
        )
        units = list(session.exec(stmt).all())
    else:
        session.refresh(item, with_for_update=True)
        units = [item] if item.location_type == LocationType.warehouse and item.quantity > 0 else []

    available = sum(u.quantity for u in units)
    if amount > available:
        raise InsufficientStockError(
            f"Insufficient stock for {item.name}: {available} in warehouse, {amount} requested"
        )

    left = amount
    now = datetime.utcnow()
    for unit in units:
        if not left:
            break
        take = min(unit.quantity, left)
        result = session.exec(
            update(InventoryItem)
            .where(InventoryItem.id == unit.id, InventoryItem.quantity >= take)
            .values(
                quantity=InventoryItem.quantity - take,
                version=InventoryItem.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError(f"Stock for {unit.name} changed concurrently")
        session.refresh(unit)
        left -= take

    session.refresh(item)
    return item


# ---------- reads ----------

ITEM_SORTS = {
    "id_desc": InventoryItem.id.desc(),
    "id_asc": InventoryItem.id.asc(),
    "name_asc": InventoryItem.name.asc(),
    "name_desc": InventoryItem.name.desc(),
    "qty_asc": InventoryItem.quantity.asc(),
    "qty_desc": InventoryItem.quantity.desc(),
}


def list_items(
    session: Session,
    company_id: int,
    *,
    q: str | None = None,
    location_type: LocationType | None = None,
    truck_id: int | None = None,
    category_id: int | None = None,
    group_id: str | None = None,
    sort: str = "id_desc",
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[InventoryItem], int]:
    if sort not in ITEM_SORTS:
        raise ValidationError(f"Unsupported sort: {sort}")

    conds = [InventoryItem.company_id == company_id]
    if q:
        conds.append(
            or_(
                InventoryItem.name.contains(q),
                InventoryItem.serial_number.contains(q),
                InventoryItem.barcode.contains(q),
            )
        )
    if location_type is not None:
        conds.append(InventoryItem.location_type == location_type)
    if truck_id is not None:
        conds.append(InventoryItem.assigned_truck_id == truck_id)
    if category_id is not None:
        conds.append(InventoryItem.category_id == category_id)
    if group_id is not None:
        conds.append(InventoryItem.group_id == group_id)

    total = session.exec(select(func.count()).select_from(InventoryItem).where(*conds)).one()
    items = session.exec(
        select(InventoryItem).where(*conds).order_by(ITEM_SORTS[sort]).offset(offset).limit(limit)
    ).all()
    return list(items), total


def find_by_code(
    session: Session, company_id: int, barcode: str | None = None, serial_number: str | None = None
) -> InventoryItem:
    barcode, serial_number = normalize_code(barcode), normalize_code(serial_number)
    if not barcode and not serial_number:
        raise ValidationError("barcode or serial_number is required")
    stmt = select(InventoryItem).where(InventoryItem.company_id == company_id)
    if barcode:
        stmt = stmt.where(InventoryItem.barcode == barcode)
    if serial_number:
        stmt = stmt.where(InventoryItem.serial_number == serial_number)
    item = session.exec(stmt).first()
    if not item:
        raise NotFoundError("No item matches that code")
    return item


def list_groups(session: Session, company_id: int) -> list[dict]:
    # drawn units keep their warehouse row at quantity 0
    in_warehouse = func.sum(
        case(((InventoryItem.location_type == LocationType.warehouse) & (InventoryItem.quantity > 0), 1), else_=0)
    )
    on_trucks = func.sum(case((InventoryItem.location_type == LocationType.truck, 1), else_=0))
    stmt = (
        select(
            InventoryItem.group_id,
            func.min(InventoryItem.name),
            func.min(InventoryItem.category_id),
            func.count(),
            in_warehouse,
            on_trucks,
        )
        .where(InventoryItem.company_id == company_id, InventoryItem.group_id.is_not(None))
        .group_by(InventoryItem.group_id)
        .order_by(func.min(InventoryItem.name))
    )
    return [
        {
            "group_id": group_id,
            "name": name,
            "category_id": category_id,
            "total": total,
            "in_warehouse": int(wh or 0),
            "on_trucks": int(tr or 0),
        }
        for group_id, name, category_id, total, wh, tr in session.exec(stmt).all()
    ]
