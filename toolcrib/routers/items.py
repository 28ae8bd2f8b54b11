from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlmodel import Session

from toolcrib.db import get_session
from toolcrib.deps import get_image_store, require_admin, require_user
from toolcrib.models import InventoryItem, User
from toolcrib.schemas import (
    ItemCreate,
    ItemGroupRead,
    ItemListResponse,
    ItemRead,
    ItemUpdate,
    LocationType,
    TransferRequest,
)
from toolcrib.services import ledger
from toolcrib.services.images import ImageStore

router = APIRouter(prefix="/items", tags=["items"])


def _read(session: Session, item: InventoryItem) -> ItemRead:
    # grouped units show the representative's image
    return ItemRead.model_validate(item).model_copy(update={"image_url": ledger.image_url_for(session, item)})


@router.post("", response_model=ItemRead)
def create_item(
        data: ItemCreate,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
        image_store: ImageStore = Depends(get_image_store),
):
    item = ledger.add_item(session, admin, data, image_store=image_store)
    return _read(session, item)


@router.get("", response_model=ItemListResponse)
def list_items(
        q: str | None = None,
        location_type: LocationType | None = None,
        truck_id: int | None = Query(None, ge=1),
        category_id: int | None = Query(None, ge=1),
        group_id: str | None = None,
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        sort: str = Query(
            "id_desc",
            description="Sort: id_desc/id_asc/name_asc/name_desc/qty_asc/qty_desc",
        ),
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    items, total = ledger.list_items(
        session,
        user.company_id,
        q=q,
        location_type=location_type,
        truck_id=truck_id,
        category_id=category_id,
        group_id=group_id,
        sort=sort,
        limit=limit,
        offset=offset,
    )
    return {
        "items": [_read(session, item) for item in items],
        "total": total,
        "limit": limit,
        "offset": offset,
        "q": q,
    }


@router.get("/lookup", response_model=ItemRead)
def lookup_item(
        barcode: str | None = None,
        serial_number: str | None = None,
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    item = ledger.find_by_code(session, user.company_id, barcode=barcode, serial_number=serial_number)
    return _read(session, item)


@router.get("/groups", response_model=list[ItemGroupRead])
def list_groups(
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    return ledger.list_groups(session, user.company_id)


@router.get("/{item_id}", response_model=ItemRead)
def get_item(
        item_id: int,
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    return _read(session, ledger.get_item(session, user.company_id, item_id))


@router.patch("/{item_id}", response_model=ItemRead)
def update_item(
        item_id: int,
        data: ItemUpdate,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
):
    item = ledger.edit_item(session, admin, item_id, data)
    return _read(session, item)


@router.post("/{item_id}/transfer", response_model=ItemRead)
def transfer_item(
        item_id: int,
        data: TransferRequest,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
):
    item = ledger.transfer_item(session, admin, item_id, data.truck_id)
    return _read(session, item)


@router.put("/{item_id}/image", response_model=ItemRead)
def upload_item_image(
        item_id: int,
        file: UploadFile = File(...),
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
        image_store: ImageStore = Depends(get_image_store),
):
    data = file.file.read()
    item = ledger.set_item_image(
        session, admin, item_id, data, file.content_type or "", image_store
    )
    return _read(session, item)


@router.delete("/{item_id}")
def delete_item(
        item_id: int,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
        image_store: ImageStore = Depends(get_image_store),
):
    snapshot = ledger.delete_item(session, admin, item_id, image_store=image_store)
    return {"ok": True, "deleted": snapshot}
