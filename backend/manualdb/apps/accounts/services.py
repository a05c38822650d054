# backend/manualdb/apps/accounts/services.py

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from manualdb.security import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    create_access_token,
    get_password_hash,
    verify_password,
)

from . import models, schemas

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when login credentials are invalid or the account is inactive."""


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return (
        db.query(models.User)
        .filter(models.User.email == email.strip().lower())
        .first()
    )


def create_user(db: Session, data: schemas.UserCreate) -> models.User:
    user = models.User(
        email=str(data.email).strip().lower(),
        full_name=data.full_name.strip(),
        role=data.role,
        is_active=True,
        hashed_password=get_password_hash(data.password),
    )
    db.add(user)
    db.flush()
    return user


def authenticate_user(db: Session, *, email: str, password: str) -> models.User:
    user = get_user_by_email(db, email)
    if user is None or not verify_password(password, user.hashed_password):
        logger.warning("Failed login attempt", extra={"email": email})
        raise AuthenticationError("Incorrect email or password.")
    if not user.is_active:
        raise AuthenticationError("Account is inactive.")
    user.last_login_at = datetime.now(timezone.utc)
    db.add(user)
    db.commit()
    return user


def issue_access_token_for_user(user: models.User) -> Tuple[str, int]:
    """
    Create a JWT access token for the user.

    Returns (token_string, expires_in_seconds).
    """
    expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": str(user.id),
        "role": (
            user.role.value if hasattr(user.role, "value") else str(user.role)
        ),
        "is_superuser": bool(getattr(user, "is_superuser", False)),
    }

    access_token = create_access_token(
        data=payload,
        expires_delta=expires_delta,
    )
    return access_token, int(ACCESS_TOKEN_EXPIRE_MINUTES * 60)


def list_reviewers(db: Session) -> List[models.User]:
    """Active elevated users; they receive review requests."""
    return (
        db.query(models.User)
        .filter(
            models.User.is_active.is_(True),
            models.User.role == models.AccountRole.SYSADMIN,
        )
        .order_by(models.User.email.asc())
        .all()
    )
