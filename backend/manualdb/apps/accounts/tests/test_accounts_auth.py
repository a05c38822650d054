from __future__ import annotations

import pytest
from fastapi import HTTPException

from manualdb import security
from manualdb.apps.accounts import models as account_models
from manualdb.apps.accounts import schemas as account_schemas
from manualdb.apps.accounts import services as account_services


def _create_user(db_session, *, email="author@example.com", role=account_models.AccountRole.MANAGER):
    user = account_services.create_user(
        db_session,
        account_schemas.UserCreate(
            email=email,
            full_name="Manual Author",
            role=role,
            password="s3cret-pass",
        ),
    )
    db_session.commit()
    return user


def test_password_hash_round_trip():
    hashed = security.get_password_hash("s3cret-pass")
    assert hashed.startswith("$argon2")
    assert security.verify_password("s3cret-pass", hashed) is True
    assert security.verify_password("wrong", hashed) is False
    assert security.verify_password("s3cret-pass", "not-a-hash") is False


def test_authenticate_user_stamps_last_login(db_session):
    user = _create_user(db_session, email="Author@Example.com")
    assert user.email == "author@example.com"
    assert user.last_login_at is None

    result = account_services.authenticate_user(db_session, email="author@example.com", password="s3cret-pass")

    assert result.id == user.id
    assert result.last_login_at is not None


def test_authenticate_user_rejects_bad_password_and_inactive(db_session):
    user = _create_user(db_session)

    with pytest.raises(account_services.AuthenticationError):
        account_services.authenticate_user(db_session, email=user.email, password="nope")

    user.is_active = False
    db_session.commit()
    with pytest.raises(account_services.AuthenticationError):
        account_services.authenticate_user(db_session, email=user.email, password="s3cret-pass")


def test_access_token_resolves_current_user(db_session):
    user = _create_user(db_session)
    token, expires_in = account_services.issue_access_token_for_user(user)

    assert expires_in == security.ACCESS_TOKEN_EXPIRE_MINUTES * 60
    resolved = security.get_current_user(token=token, db=db_session)
    assert resolved.id == user.id

    with pytest.raises(HTTPException) as exc:
        security.get_current_user(token=token + "x", db=db_session)
    assert exc.value.status_code == 401


def test_list_reviewers_returns_active_sysadmins_only(db_session):
    _create_user(db_session, email="author@example.com")
    admin = _create_user(db_session, email="admin@example.com", role=account_models.AccountRole.SYSADMIN)
    retired = _create_user(db_session, email="old-admin@example.com", role=account_models.AccountRole.SYSADMIN)
    retired.is_active = False
    db_session.commit()

    reviewers = account_services.list_reviewers(db_session)

    assert [user.id for user in reviewers] == [admin.id]
    assert admin.is_elevated is True
