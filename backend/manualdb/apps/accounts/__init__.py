# backend/manualdb/apps/accounts/__init__.py
"""
Accounts app

Responsible for:
- User accounts and their workflow role (author or elevated reviewer)
- Public auth endpoints (login, current user)

Other apps should depend on these models for anything related to
"who is allowed to do what" on a manual.
"""

from . import models, schemas  # noqa: F401

__all__ = ["models", "schemas"]
