# backend/create_initial_admin.py

import os

from manualdb.database import SessionLocal
from manualdb.apps.accounts import models
from manualdb.security import get_password_hash


def main() -> None:
    db = SessionLocal()
    try:
        email = os.getenv("INITIAL_ADMIN_EMAIL", "admin@example.com")
        password = os.getenv("INITIAL_ADMIN_PASSWORD", "ChangeMe123!")

        # Check if it already exists
        existing = db.query(models.User).filter(models.User.email == email).first()
        if existing:
            print(f"[INFO] User already exists: id={existing.id}, email={existing.email}")
            return

        user = models.User(
            email=email,
            full_name="Manual Admin",
            role=models.AccountRole.SYSADMIN,
            is_active=True,
            is_superuser=True,
            hashed_password=get_password_hash(password),
        )

        db.add(user)
        db.commit()
        db.refresh(user)

        print("[OK] Created admin user:")
        print(f"  id:      {user.id}")
        print(f"  email:   {user.email}")
        print(f"  role:    {user.role}")
        print(f"  login password: {password}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
