from fastapi import APIRouter, Depends
from sqlmodel import Session

from toolcrib.db import get_session
from toolcrib.deps import get_image_store, require_admin
from toolcrib.models import User
from toolcrib.schemas import ImportBatch, ImportResultRead
from toolcrib.services import bulk_import
from toolcrib.services.images import ImageStore

router = APIRouter(prefix="/imports", tags=["imports"])


@router.post("", response_model=ImportResultRead)
def import_items(
        data: ImportBatch,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
        image_store: ImageStore = Depends(get_image_store),
):
    result = bulk_import.import_rows(session, admin, data.rows, image_store=image_store)
    return {
        "rows": [vars(r) for r in result.rows],
        "items_created": result.items_created,
    }
