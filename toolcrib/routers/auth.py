from fastapi import APIRouter, Depends
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from toolcrib.db import get_session
from toolcrib.error import DuplicateError, NotFoundError, ValidationError, _auth_401
from toolcrib.models import Company, User
from toolcrib.schemas import Token, UserCreate, UserRole
from toolcrib.security import create_access_token, hash_password, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register")
def register(data: UserCreate, session: Session = Depends(get_session)):
    username = data.username.strip()
    company_name = data.company_name.strip()
    if not username or not data.password:
        raise ValidationError("Username and password are required")
    if not company_name:
        raise ValidationError("Company name is required")

    # 1) username taken (check first for a friendly message)
    existing = session.exec(select(User).where(User.username == username)).first()
    if existing:
        raise DuplicateError("Username already exists")

    # 2) admins open a company, technicians join one
    company = session.exec(select(Company).where(Company.name == company_name)).first()
    if data.role == UserRole.admin:
        if company:
            raise DuplicateError(f'Company "{company_name}" already exists')
        company = Company(name=company_name)
        session.add(company)
        session.flush()
    elif not company:
        raise NotFoundError(f'Company "{company_name}" not found')

    user = User(
        username=username,
        password_hash=hash_password(data.password),
        role=data.role,
        company_id=company.id,
    )
    session.add(user)

    # 3) unique constraint backstop for concurrent sign-ups
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateError("Username already exists")

    return {"ok": True, "company_id": company.id}


@router.post("/login", response_model=Token)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    session: Session = Depends(get_session),
):
    user = session.exec(select(User).where(User.username == form_data.username)).first()
    if (not user) or (not verify_password(form_data.password, user.password_hash)):
        raise _auth_401("INVALID_CREDENTIALS", "Incorrect username or password")

    token = create_access_token(user.username)
    return {"access_token": token, "token_type": "bearer"}
