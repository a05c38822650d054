from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

from manualdb.database import Base  # noqa: E402
from manualdb.apps.accounts import models as account_models  # noqa: E402
from manualdb.apps.audit import models as audit_models  # noqa: E402
from manualdb.apps.manuals import models as manual_models  # noqa: E402
from manualdb.apps.notifications import models as notification_models  # noqa: E402

TABLES = [
    account_models.User.__table__,
    manual_models.Manual.__table__,
    manual_models.Chapter.__table__,
    manual_models.ContentBlock.__table__,
    manual_models.ChapterRemark.__table__,
    manual_models.Revision.__table__,
    manual_models.FieldHistoryEntry.__table__,
    audit_models.AuditLogEntry.__table__,
    notification_models.EmailLog.__table__,
]


def make_session_factory(url: str = "sqlite+pysqlite:///:memory:") -> sessionmaker:
    engine = create_engine(url)
    Base.metadata.create_all(bind=engine, tables=TABLES)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@pytest.fixture()
def db_session():
    TestingSession = make_session_factory()
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def file_session_factory(tmp_path):
    """Sessions on a shared SQLite file, for tests that need two connections."""
    return make_session_factory(f"sqlite+pysqlite:///{tmp_path / 'manualdb.sqlite'}")
