from fastapi import APIRouter, Depends
from sqlmodel import Session

from toolcrib.db import get_session
from toolcrib.deps import require_admin, require_user
from toolcrib.models import User
from toolcrib.schemas import CompanySettingsRead, CompanySettingsUpdate
from toolcrib.services import reference

router = APIRouter(prefix="/companies", tags=["companies"])


@router.get("/me", response_model=CompanySettingsRead)
def read_company(
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    return reference.get_company(session, user.company_id)


@router.patch("/me", response_model=CompanySettingsRead)
def update_company(
        data: CompanySettingsUpdate,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
):
    return reference.update_company_settings(session, admin, data)
