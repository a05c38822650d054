"""
Create users, manuals, chapter tree, revisions, field history, audit log
and email log tables.

Revision ID: 5d2e8a1f3c40
Revises:
Create Date: 2026-09-28
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from manualdb.utils.append_only import (
    LEDGER_GUARD_FUNCTION,
    append_only_statements,
    drop_append_only_statements,
)


# revision identifiers, used by Alembic.
revision: str = "5d2e8a1f3c40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_STATUS_VALUES = ("draft", "in_review", "approved", "rejected")
_APPEND_ONLY_TABLES = ("audit_logs", "field_history")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_by", sa.String(length=36), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column(
            "role",
            sa.Enum("SYSADMIN", "MANAGER", "VIEW_ONLY", name="account_role_enum"),
            nullable=False,
            server_default="MANAGER",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_superuser", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])
    op.create_index("ix_users_is_active", "users", ["is_active"])
    op.create_index("ix_users_is_superuser", "users", ["is_superuser"])
    op.create_index("idx_users_role_active", "users", ["role", "is_active"])

    op.create_table(
        "manuals",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("manual_code", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("organization_name", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*_STATUS_VALUES, name="manual_status_enum", native_enum=False),
            nullable=False,
            server_default="draft",
        ),
        sa.Column("current_revision", sa.String(length=32), nullable=False, server_default="0"),
        sa.Column("effective_date", sa.Date(), nullable=True),
        sa.Column("revision_date", sa.Date(), nullable=True),
        sa.Column("review_due_date", sa.Date(), nullable=True),
        sa.Column("language", sa.String(length=16), nullable=False, server_default="en"),
        sa.Column("reference_number", sa.String(length=64), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column(
            "created_by",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column(
            "updated_by",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.create_index("ix_manuals_manual_code", "manuals", ["manual_code"], unique=True)
    op.create_index("ix_manuals_status", "manuals", ["status"])
    op.create_index("ix_manuals_is_archived", "manuals", ["is_archived"])
    op.create_index("ix_manuals_created_by", "manuals", ["created_by"])
    op.create_index("ix_manuals_status_archived", "manuals", ["status", "is_archived"])

    op.create_table(
        "chapters",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "manual_id",
            sa.String(length=36),
            sa.ForeignKey("manuals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "parent_id",
            sa.String(length=36),
            sa.ForeignKey("chapters.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("chapter_number", sa.Integer(), nullable=False),
        sa.Column("section_number", sa.Integer(), nullable=True),
        sa.Column("subsection_number", sa.Integer(), nullable=True),
        sa.Column("clause_number", sa.Integer(), nullable=True),
        sa.Column("depth", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("heading", sa.String(length=500), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("page_break", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("regulatory_references", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("depth >= 0 AND depth <= 3", name="ck_chapters_depth"),
        sa.CheckConstraint(
            "(depth = 0 AND section_number IS NULL AND subsection_number IS NULL AND clause_number IS NULL)"
            " OR (depth = 1 AND section_number IS NOT NULL AND subsection_number IS NULL AND clause_number IS NULL)"
            " OR (depth = 2 AND section_number IS NOT NULL AND subsection_number IS NOT NULL AND clause_number IS NULL)"
            " OR (depth = 3 AND section_number IS NOT NULL AND subsection_number IS NOT NULL AND clause_number IS NOT NULL)",
            name="ck_chapters_valid_numbering",
        ),
        sa.UniqueConstraint(
            "manual_id",
            "chapter_number",
            "section_number",
            "subsection_number",
            "clause_number",
            name="uq_chapters_manual_coordinates",
        ),
    )
    op.create_index("ix_chapters_manual_id", "chapters", ["manual_id"])
    op.create_index("ix_chapters_manual_parent", "chapters", ["manual_id", "parent_id"])

    op.create_table(
        "content_blocks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "chapter_id",
            sa.String(length=36),
            sa.ForeignKey("chapters.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("block_type", sa.String(length=32), nullable=False, server_default="text"),
        sa.Column("content", sa.JSON(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_content_blocks_chapter_id", "content_blocks", ["chapter_id"])

    op.create_table(
        "chapter_remarks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "chapter_id",
            sa.String(length=36),
            sa.ForeignKey("chapters.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("remark_text", sa.Text(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("chapter_id", "display_order", name="uq_chapter_remarks_order"),
    )
    op.create_index("ix_chapter_remarks_chapter_id", "chapter_remarks", ["chapter_id"])

    op.create_table(
        "revisions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "manual_id",
            sa.String(length=36),
            sa.ForeignKey("manuals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("revision_number", sa.String(length=32), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*_STATUS_VALUES, name="revision_status_enum", native_enum=False),
            nullable=False,
            server_default="draft",
        ),
        sa.Column("snapshot", sa.JSON(), nullable=False),
        sa.Column("snapshot_sha256", sa.String(length=64), nullable=False),
        sa.Column("changes_summary", sa.Text(), nullable=True),
        sa.Column("chapters_affected", sa.JSON(), nullable=False),
        sa.Column("effective_date", sa.Date(), nullable=True),
        sa.Column("submitted_for_review_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_by", sa.String(length=36), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.String(length=36), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.String(length=36), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("manual_id", "revision_number", name="uq_revisions_manual_number"),
    )
    op.create_index("ix_revisions_manual_id", "revisions", ["manual_id"])
    op.create_index("ix_revisions_manual_status", "revisions", ["manual_id", "status"])

    op.create_table(
        "field_history",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("manual_id", sa.String(length=36), nullable=False),
        sa.Column("revision_id", sa.String(length=36), nullable=True),
        sa.Column("table_name", sa.String(length=64), nullable=False),
        sa.Column("record_id", sa.String(length=36), nullable=False),
        sa.Column("field_name", sa.String(length=64), nullable=False),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column(
            "change_type",
            sa.Enum("created", "updated", "deleted", name="field_change_type_enum", native_enum=False),
            nullable=False,
            server_default="updated",
        ),
        sa.Column("changed_by", sa.String(length=36), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_field_history_manual_id", "field_history", ["manual_id"])
    op.create_index("ix_field_history_revision_id", "field_history", ["revision_id"])
    op.create_index("ix_field_history_manual_time", "field_history", ["manual_id", "changed_at"])
    op.create_index("ix_field_history_record", "field_history", ["table_name", "record_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("actor_email", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("manual_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_logs_id", "audit_logs", ["id"])
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity_type", "audit_logs", ["entity_type"])
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"])
    op.create_index("ix_audit_logs_manual_id", "audit_logs", ["manual_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("ix_audit_logs_manual_time", "audit_logs", ["manual_id", "created_at"])
    op.create_index("ix_audit_logs_actor_time", "audit_logs", ["actor_id", "created_at"])
    op.create_index("ix_audit_logs_time_desc", "audit_logs", [sa.text("created_at DESC")])

    op.create_table(
        "email_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("manual_id", sa.String(length=36), nullable=True),
        sa.Column("revision_id", sa.String(length=36), nullable=True),
        sa.Column("revision_number", sa.String(length=32), nullable=True),
        sa.Column("template_key", sa.String(length=64), nullable=False),
        sa.Column("recipient", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            sa.Enum("QUEUED", "SENT", "FAILED", "SKIPPED_NO_PROVIDER", name="email_status_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_email_logs_manual_revision", "email_logs", ["manual_id", "revision_number"])
    op.create_index("ix_email_logs_revision_id", "email_logs", ["revision_id"])
    op.create_index("ix_email_logs_template_key", "email_logs", ["template_key"])
    op.create_index("ix_email_logs_status", "email_logs", ["status"])

    bind = op.get_bind()
    for table_name in _APPEND_ONLY_TABLES:
        for statement in append_only_statements(table_name, bind.dialect.name):
            op.execute(statement)

    if bind.dialect.name != "postgresql":
        return

    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_approved_revision_delete()
        RETURNS trigger AS $$
        BEGIN
            IF OLD.status = 'approved' THEN
                RAISE EXCEPTION 'Deleting approved manual revisions is not allowed';
            END IF;
            RETURN OLD;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        DROP TRIGGER IF EXISTS trg_prevent_approved_revision_delete ON revisions;
        CREATE TRIGGER trg_prevent_approved_revision_delete
        BEFORE DELETE ON revisions
        FOR EACH ROW
        EXECUTE FUNCTION prevent_approved_revision_delete();
        """
    )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS trg_prevent_approved_revision_delete ON revisions;")
        op.execute("DROP FUNCTION IF EXISTS prevent_approved_revision_delete();")

    for table_name in _APPEND_ONLY_TABLES:
        for statement in drop_append_only_statements(table_name, bind.dialect.name):
            op.execute(statement)

    op.drop_table("email_logs")
    op.drop_table("audit_logs")
    op.drop_table("field_history")
    op.drop_table("revisions")
    op.drop_table("chapter_remarks")
    op.drop_table("content_blocks")
    op.drop_table("chapters")
    op.drop_table("manuals")
    op.drop_table("users")
    if bind.dialect.name == "postgresql":
        op.execute(f"DROP FUNCTION IF EXISTS {LEDGER_GUARD_FUNCTION}();")
        op.execute("DROP TYPE IF EXISTS account_role_enum;")
