from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Enum, Index, String

from manualdb.database import Base
from manualdb.utils.identifiers import generate_short_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountRole(str, enum.Enum):
    """Roles used by the manual workflow.

    SYSADMIN is the elevated role: it may approve or reject any manual and
    receives review requests. MANAGER authors manuals it owns.
    """

    SYSADMIN = "SYSADMIN"
    MANAGER = "MANAGER"
    VIEW_ONLY = "VIEW_ONLY"


ELEVATED_ROLES = frozenset({AccountRole.SYSADMIN})


class User(Base):
    """
    Person (or service account) acting on manuals.

    Audit and field history rows store the user id as a plain string so that
    the ledgers never depend on this table staying intact.
    """

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_role_active", "role", "is_active"),
    )

    id = Column(
        String(36),
        primary_key=True,
        default=generate_short_id,
    )

    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(255), nullable=False)

    role = Column(
        Enum(AccountRole, name="account_role_enum"),
        nullable=False,
        default=AccountRole.MANAGER,
        index=True,
    )

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_superuser = Column(Boolean, nullable=False, default=False, index=True)

    hashed_password = Column(String(255), nullable=False)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def is_elevated(self) -> bool:
        return bool(self.is_superuser) or self.role in ELEVATED_ROLES

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email} role={self.role}>"
