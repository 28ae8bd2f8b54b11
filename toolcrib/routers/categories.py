from fastapi import APIRouter, Depends
from sqlmodel import Session

from toolcrib.db import get_session
from toolcrib.deps import require_admin, require_user
from toolcrib.models import User
from toolcrib.schemas import CategoryCreate, CategoryRead, CategoryUpdate
from toolcrib.services import reference

router = APIRouter(prefix="/categories", tags=["categories"])


@router.post("", response_model=CategoryRead)
def create_category(
        data: CategoryCreate,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
):
    return reference.create_category(session, admin, data)


@router.get("", response_model=list[CategoryRead])
def list_categories(
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    return reference.list_categories(session, user.company_id)


@router.patch("/{category_id}", response_model=CategoryRead)
def update_category(
        category_id: int,
        data: CategoryUpdate,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
):
    return reference.update_category(session, admin, category_id, data)


@router.delete("/{category_id}")
def delete_category(
        category_id: int,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
):
    reference.delete_category(session, admin, category_id)
    return {"ok": True}
