# backend/manualdb/__init__.py
"""
Import ORM models from each app so that Alembic and
Base.metadata.create_all() see every table.

The model classes live in manualdb/apps/*/models.py.
"""

from .apps.accounts import models as accounts_models          # users / auth
from .apps.audit import models as audit_models                # append-only audit ledger
from .apps.manuals import models as manuals_models            # manuals, chapters, revisions, field history
from .apps.notifications import models as notifications_models  # email delivery log

__all__ = [
    "accounts_models",
    "audit_models",
    "manuals_models",
    "notifications_models",
]
