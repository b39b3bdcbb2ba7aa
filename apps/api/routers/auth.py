"""
Authentication API endpoints.

Provides:
- Client registration (email/password)
- Login (JWT token generation)
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
import logging

from core.database import get_db
from core.exceptions import ConflictError, UnauthorizedError
from core.security import (
    verify_password,
    get_password_hash,
    create_access_token,
    ACCESS_TOKEN_EXPIRE_MINUTES,
)
from models import User
from schemas import TokenResponse, UserLogin, UserRegister

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _token_response(user: User) -> dict:
    access_token = create_access_token(
        data={"sub": str(user.id), "email": user.email, "role": user.role}
    )
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        "user_id": user.id,
        "role": user.role,
    }


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(user_data: UserRegister, db: Session = Depends(get_db)):
    """
    Register a new client account.

    The account starts pending; it becomes active with the first verified
    payment.
    """
    email = user_data.email.strip().lower()

    existing = db.query(User).filter(User.email == email).first()
    if existing:
        raise ConflictError("Email already registered")

    user = User(
        email=email,
        password_hash=get_password_hash(user_data.password),
        full_name=(user_data.full_name or "").strip() or None,
        role="client",
        status="pending",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Registered client account {user.id}")

    # Token issued immediately so the client can go straight to onboarding
    return _token_response(user)


@router.post("/login", response_model=TokenResponse)
def login(credentials: UserLogin, db: Session = Depends(get_db)):
    """Authenticate by email and password and return a JWT access token."""
    email = credentials.email.strip().lower()

    user = db.query(User).filter(User.email == email).first()

    # Same answer for unknown email, passwordless account and wrong password
    if not user or not user.password_hash or not verify_password(credentials.password, user.password_hash):
        raise UnauthorizedError("Invalid email or password")

    return _token_response(user)
