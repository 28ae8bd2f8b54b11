from fastapi import APIRouter, Depends
from sqlmodel import Session

from toolcrib.db import get_session
from toolcrib.deps import require_admin, require_user
from toolcrib.models import User
from toolcrib.schemas import TruckCreate, TruckRead, TruckUpdate
from toolcrib.services import ledger, reference

router = APIRouter(prefix="/trucks", tags=["trucks"])


@router.post("", response_model=TruckRead)
def create_truck(
        data: TruckCreate,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
):
    return reference.create_truck(session, admin, data)


@router.get("", response_model=list[TruckRead])
def list_trucks(
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    return reference.list_trucks(session, user.company_id)


@router.get("/{truck_id}", response_model=TruckRead)
def get_truck(
        truck_id: int,
        session: Session = Depends(get_session),
        user: User = Depends(require_user),
):
    return ledger.get_truck(session, user.company_id, truck_id)


@router.patch("/{truck_id}", response_model=TruckRead)
def update_truck(
        truck_id: int,
        data: TruckUpdate,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
):
    return reference.update_truck(session, admin, truck_id, data)


@router.delete("/{truck_id}")
def delete_truck(
        truck_id: int,
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
):
    moved = reference.delete_truck(session, admin, truck_id)
    return {"ok": True, "items_returned": moved}
