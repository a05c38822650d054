from __future__ import annotations

from typing import List

from sqlalchemy import DDL, Table, event

LEDGER_GUARD_FUNCTION = "manualdb_reject_ledger_mutation"


def append_only_statements(table_name: str, dialect_name: str) -> List[str]:
    """
    SQL that makes `table_name` refuse UPDATE and DELETE at the storage layer.

    Shared by the metadata DDL hooks below (fresh databases, tests) and the
    alembic migration (existing databases). Each entry is one statement.
    """
    if dialect_name == "sqlite":
        return [
            f"""
            CREATE TRIGGER IF NOT EXISTS trg_{table_name}_no_update
            BEFORE UPDATE ON {table_name}
            BEGIN
                SELECT RAISE(ABORT, '{table_name} is append-only');
            END
            """,
            f"""
            CREATE TRIGGER IF NOT EXISTS trg_{table_name}_no_delete
            BEFORE DELETE ON {table_name}
            BEGIN
                SELECT RAISE(ABORT, '{table_name} is append-only');
            END
            """,
        ]
    if dialect_name == "postgresql":
        return [
            f"""
            CREATE OR REPLACE FUNCTION {LEDGER_GUARD_FUNCTION}()
            RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'append-only table cannot be modified'
                    USING DETAIL = TG_TABLE_NAME;
            END;
            $$ LANGUAGE plpgsql
            """,
            f"DROP TRIGGER IF EXISTS trg_{table_name}_no_update ON {table_name}",
            f"""
            CREATE TRIGGER trg_{table_name}_no_update
            BEFORE UPDATE ON {table_name}
            FOR EACH ROW
            EXECUTE FUNCTION {LEDGER_GUARD_FUNCTION}()
            """,
            f"DROP TRIGGER IF EXISTS trg_{table_name}_no_delete ON {table_name}",
            f"""
            CREATE TRIGGER trg_{table_name}_no_delete
            BEFORE DELETE ON {table_name}
            FOR EACH ROW
            EXECUTE FUNCTION {LEDGER_GUARD_FUNCTION}()
            """,
        ]
    return []


def drop_append_only_statements(table_name: str, dialect_name: str) -> List[str]:
    if dialect_name == "sqlite":
        return [
            f"DROP TRIGGER IF EXISTS trg_{table_name}_no_update",
            f"DROP TRIGGER IF EXISTS trg_{table_name}_no_delete",
        ]
    if dialect_name == "postgresql":
        return [
            f"DROP TRIGGER IF EXISTS trg_{table_name}_no_update ON {table_name}",
            f"DROP TRIGGER IF EXISTS trg_{table_name}_no_delete ON {table_name}",
        ]
    return []


def make_append_only(table: Table) -> None:
    """Attach the guard triggers to `table` whenever metadata creates it."""
    for dialect_name in ("sqlite", "postgresql"):
        for statement in append_only_statements(table.name, dialect_name):
            event.listen(
                table,
                "after_create",
                DDL(statement).execute_if(dialect=dialect_name),
            )
