from __future__ import annotations

from datetime import date

from manualdb.database import WriteSessionLocal
from manualdb.apps.accounts import models as account_models
from manualdb.apps.accounts import schemas as account_schemas
from manualdb.apps.accounts import services as account_services
from manualdb.apps.manuals import chapters, lifecycle, models as manual_models, services as manual_services


def _get_or_create_user(db, *, email: str, full_name: str, role: account_models.AccountRole) -> account_models.User:
    user = account_services.get_user_by_email(db, email)
    if user:
        return user
    user = account_services.create_user(
        db,
        account_schemas.UserCreate(
            email=email,
            full_name=full_name,
            role=role,
            password="ChangeMe123!",
        ),
    )
    db.commit()
    db.refresh(user)
    return user


def _seed_manual(db, author: account_models.User, reviewer: account_models.User) -> manual_models.Manual:
    manual = db.query(manual_models.Manual).filter(manual_models.Manual.manual_code == "DEMO-MOE").first()
    if manual:
        return manual

    manual = manual_services.create_manual(
        db,
        author,
        manual_code="DEMO-MOE",
        title="Demo Maintenance Organisation Exposition",
        organization_name="Demo Aero",
        tags=["demo", "moe"],
    )
    general = chapters.add_chapter(db, manual.id, author, heading="General")
    chapters.add_chapter(db, manual.id, author, heading="Purpose", parent_id=general.id)
    scope = chapters.add_chapter(db, manual.id, author, heading="Scope of work", parent_id=general.id)
    chapters.add_content_block(
        db,
        manual.id,
        scope.id,
        author,
        content={"text": "Base and line maintenance on listed aircraft types."},
    )
    chapters.add_chapter(db, manual.id, author, heading="Management")
    db.commit()

    revision = lifecycle.submit_for_review(db, manual.id, author)
    lifecycle.approve(db, manual.id, revision.id, reviewer, date.today(), "Initial issue")
    return manual


def main() -> None:
    db = WriteSessionLocal()
    try:
        reviewer = _get_or_create_user(
            db,
            email="admin@demo.example",
            full_name="Demo Admin",
            role=account_models.AccountRole.SYSADMIN,
        )
        author = _get_or_create_user(
            db,
            email="author@demo.example",
            full_name="Demo Author",
            role=account_models.AccountRole.MANAGER,
        )
        manual = _seed_manual(db, author, reviewer)
        print(f"[OK] Manual {manual.manual_code} at revision {manual.current_revision} ({manual.status.value})")
    finally:
        db.close()


if __name__ == "__main__":
    main()
