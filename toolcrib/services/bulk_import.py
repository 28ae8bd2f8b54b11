import base64
import binascii
import logging
import uuid
from dataclasses import dataclass, field

from sqlmodel import Session, select

from toolcrib.config import settings
from toolcrib.db import run_in_transaction
from toolcrib.error import DuplicateError, ValidationError
from toolcrib.models import Category, InventoryItem, User
from toolcrib.schemas import ActivityAction, ImportRow, ItemCondition, LocationType
from toolcrib.services import audit
from toolcrib.services.duplicate_guard import find_conflict, normalize_code
from toolcrib.services.images import ImageStore, put_image, release_image, validate_image

logger = logging.getLogger(__name__)


@dataclass
class PreparedRow:
    row: int
    name: str
    category_id: int
    category_name: str
    description: str | None
    serial_number: str | None
    barcode: str | None
    condition: ItemCondition
    unit_price: float
    quantity: int
    min_quantity: int
    image: bytes | None = None
    image_content_type: str = "image/png"


@dataclass
class ImportedRow:
    row: int
    name: str
    quantity: int
    group_id: str | None
    item_ids: list[int] = field(default_factory=list)


@dataclass
class ImportResult:
    rows: list[ImportedRow]

    @property
    def items_created(self) -> int:
        return sum(len(r.item_ids) for r in self.rows)


def clamp_quantity(value: int | None) -> int:
    if value is None:
        return 1
    return max(1, min(value, settings.bulk_import_max_quantity))


def _is_blank(row: ImportRow) -> bool:
    return not (row.name or "").strip() and not (row.category or "").strip()


def prepare_rows(session: Session, company_id: int, rows: list[ImportRow]) -> list[PreparedRow]:
    """Validate every row up front; any bad row rejects the whole batch."""
    categories = {
        c.name.lower(): c
        for c in session.exec(select(Category).where(Category.company_id == company_id)).all()
    }
    prepared: list[PreparedRow] = []
    errors: list[str] = []

    for n, row in enumerate(rows, start=1):
        if _is_blank(row):
            continue
        name = (row.name or "").strip()
        category_name = (row.category or "").strip()
        if not name or not category_name:
            errors.append(f"Row {n}: Name and Category are required")
            continue
        category = categories.get(category_name.lower())
        if category is None:
            errors.append(f'Row {n}: Invalid category "{category_name}"')
            continue
        if row.unit_price is not None and row.unit_price < 0:
            errors.append(f"Row {n}: unit_price cannot be negative")
            continue

        image = None
        if row.image_base64:
            try:
                image = base64.b64decode(row.image_base64, validate=True)
                validate_image(image, row.image_content_type)
            except (binascii.Error, ValueError):
                errors.append(f"Row {n}: image is not valid base64")
                continue
            except ValidationError as exc:
                errors.append(f"Row {n}: {exc.message}")
                continue

        quantity = clamp_quantity(row.quantity)
        serial, barcode = normalize_code(row.serial_number), normalize_code(row.barcode)
        if quantity > 1 and (serial or barcode):
            # one code cannot identify several physical units
            logger.info("row %s: dropping serial/barcode for %s grouped units", n, quantity)
            serial = barcode = None

        prepared.append(
            PreparedRow(
                row=n,
                name=name,
                category_id=category.id,
                category_name=category.name,
                description=(row.description or "").strip() or None,
                serial_number=serial,
                barcode=barcode,
                condition=row.condition or ItemCondition.good,
                unit_price=row.unit_price or 0,
                quantity=quantity,
                min_quantity=max(0, row.min_quantity or 0),
                image=image,
                image_content_type=row.image_content_type,
            )
        )

    if errors:
        raise ValidationError(f"Import rejected: {len(errors)} invalid row(s)", errors)
    if not prepared:
        raise ValidationError("No rows to import")
    return prepared


def import_rows(
    session: Session,
    actor: User,
    rows: list[ImportRow],
    image_store: ImageStore | None = None,
) -> ImportResult:
    prepared = prepare_rows(session, actor.company_id, rows)
    uploaded: dict[int, str] = {}

    def _op() -> list[ImportedRow]:
        imported = []
        for p in prepared:
            if p.quantity == 1:
                # earlier rows of this batch are flushed, so the guard sees them too
                conflict = find_conflict(session, actor.company_id, p.serial_number, p.barcode)
                if conflict:
                    raise DuplicateError(f"Row {p.row}: {conflict.message}")
            group_id = uuid.uuid4().hex if p.quantity > 1 else None

            units = [
                InventoryItem(
                    name=p.name,
                    description=p.description,
                    category_id=p.category_id,
                    serial_number=p.serial_number if group_id is None else None,
                    barcode=p.barcode if group_id is None else None,
                    condition=p.condition,
                    location_type=LocationType.warehouse,
                    company_id=actor.company_id,
                    unit_price=p.unit_price,
                    quantity=1,
                    min_quantity=p.min_quantity,
                    group_id=group_id,
                )
                for _ in range(p.quantity)
            ]
            session.add_all(units)
            session.flush()

            if p.image is not None:
                if p.row not in uploaded:
                    url = put_image(image_store, p.image, p.image_content_type)
                    if url:
                        uploaded[p.row] = url
                # stored once, on the representative unit
                units[0].image_url = uploaded.get(p.row)

            audit.record(
                session,
                company_id=actor.company_id,
                actor_id=actor.id,
                action=ActivityAction.added,
                subject=p.name,
                item_id=units[0].id,
                details={
                    "item_name": p.name,
                    "category": p.category_name,
                    "quantity": p.quantity,
                    "group_id": group_id,
                    "first_item_id": units[0].id,
                    "source": "bulk_import",
                    "row": p.row,
                },
            )
            imported.append(
                ImportedRow(
                    row=p.row,
                    name=p.name,
                    quantity=p.quantity,
                    group_id=group_id,
                    item_ids=[u.id for u in units],
                )
            )
        return imported

    try:
        imported = run_in_transaction(session, _op)
    except Exception:
        for url in uploaded.values():
            release_image(image_store, url)
        raise
    result = ImportResult(rows=imported)
    logger.info("bulk import: %s rows, %s items", len(imported), result.items_created)
    return result
