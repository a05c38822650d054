# backend/manualdb/apps/accounts/router.py

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from manualdb.database import get_db
from manualdb.security import get_current_active_user, require_roles
from . import models, schemas, services

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post(
    "/login",
    response_model=schemas.Token,
    summary="Login with email and password",
)
def login(
    payload: schemas.LoginRequest,
    db: Session = Depends(get_db),
):
    try:
        user = services.authenticate_user(
            db,
            email=str(payload.email),
            password=payload.password,
        )
    except services.AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc) or "Incorrect email or password.",
        )

    token, expires_in = services.issue_access_token_for_user(user)
    return schemas.Token(access_token=token, expires_in=expires_in, user=user)


@router.get(
    "/me",
    response_model=schemas.UserRead,
    summary="Get current logged-in user",
)
def read_current_user(
    current_user: models.User = Depends(get_current_active_user),
):
    return current_user


@router.post(
    "/users",
    response_model=schemas.UserRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create a user (sysadmin only)",
)
def create_user(
    payload: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_roles(models.AccountRole.SYSADMIN)),
):
    if services.get_user_by_email(db, str(payload.email)) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A user with this email already exists.",
        )
    user = services.create_user(db, payload)
    db.commit()
    db.refresh(user)
    return user
