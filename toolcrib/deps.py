from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import Session, select

from toolcrib.db import get_session
from toolcrib.error import PermissionDeniedError, _auth_401
from toolcrib.models import User
from toolcrib.schemas import UserRole
from toolcrib.security import decode_token
from toolcrib.services.images import ImageStore, LocalImageStore
from toolcrib.services.notifier import Notifier, default_notifier

# ✅ auto_error=False so a missing token gets our own error envelope
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def require_user(
    token: str | None = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> User:
    # 1) no token at all
    if not token:
        raise _auth_401("NOT_AUTHENTICATED", "Not signed in or session expired, please sign in again")

    # 2) bad signature / expired / wrong secret
    try:
        username = decode_token(token)
    except Exception:
        raise _auth_401("INVALID_TOKEN", "Token is invalid or expired, please sign in again")

    # 3) token is fine but the account is gone
    user = session.exec(select(User).where(User.username == username)).first()
    if not user:
        raise _auth_401("USER_NOT_FOUND", "User does not exist or was deleted")

    return user


def require_admin(user: User = Depends(require_user)) -> User:
    if user.role != UserRole.admin:
        raise PermissionDeniedError("Admin access required")
    return user


def get_notifier() -> Notifier:
    return default_notifier()


def get_image_store() -> ImageStore:
    return LocalImageStore()
