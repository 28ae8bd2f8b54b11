from fastapi import APIRouter, Depends
from sqlmodel import Session

from toolcrib.db import get_session
from toolcrib.deps import get_notifier, require_admin
from toolcrib.models import User
from toolcrib.services import reference
from toolcrib.services.notifier import Notifier, dispatch

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/test")
def send_test_notification(
        session: Session = Depends(get_session),
        admin: User = Depends(require_admin),
        notifier: Notifier = Depends(get_notifier),
):
    note = reference.build_test_notification(session, admin)
    # sent inline so the admin sees whether delivery worked
    delivered = dispatch(notifier, [note])
    return {"ok": delivered == 1, "to": note.payload["to"]}
