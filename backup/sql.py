"""SQL issued by the restorer outside the bulk-load transaction."""
from __future__ import annotations

from typing import Iterable

from core.db import quote_ident, quote_literal

AUTH_STATE_TABLES = (
    "audit_log_entries",
    "flow_state",
    "users",
    "identities",
    "instances",
    "sessions",
    "mfa_amr_claims",
    "mfa_factors",
    "mfa_challenges",
    "refresh_tokens",
)
STORAGE_STATE_TABLES = ("buckets", "objects")

PROFILE_TABLE = "public.sales"
PROFILE_OWNER_COLUMN = "user_id"
PROFILE_OWNER_INDEX = "uq__sales__user_id"

DISABLE_TRIGGERS = "SET session_replication_role = replica;"


def truncate_if_exists(schema: str, tables: Iterable[str]) -> str:
    """A ``DO`` block truncating each table only when it exists."""

    lines = ["DO $$", "BEGIN"]
    for table in tables:
        lines.append(
            "    IF EXISTS (SELECT FROM information_schema.tables "
            f"WHERE table_schema = {quote_literal(schema)} AND table_name = {quote_literal(table)}) THEN"
        )
        lines.append(f"        TRUNCATE TABLE {quote_ident(schema)}.{quote_ident(table)} CASCADE;")
        lines.append("    END IF;")
    lines.append("END $$;")
    return "\n".join(lines) + "\n"


def storage_truncate_sql() -> str:
    return truncate_if_exists("storage", STORAGE_STATE_TABLES)


def schema_reset_sql(schema: str = "public") -> str:
    ident = quote_ident(schema)
    return "\n".join(
        [
            f"DROP SCHEMA IF EXISTS {ident} CASCADE;",
            f"CREATE SCHEMA {ident};",
            f"GRANT ALL ON SCHEMA {ident} TO postgres;",
            f"GRANT ALL ON SCHEMA {ident} TO public;",
            truncate_if_exists("auth", AUTH_STATE_TABLES),
            storage_truncate_sql(),
        ]
    )


DUPLICATE_OWNERS_SQL = (
    "SELECT count(*) FROM ("
    f"SELECT {PROFILE_OWNER_COLUMN} FROM {PROFILE_TABLE} "
    f"WHERE {PROFILE_OWNER_COLUMN} IS NOT NULL "
    f"GROUP BY {PROFILE_OWNER_COLUMN} HAVING count(*) > 1"
    ") AS duplicates;"
)

REATTACH_TRIGGERS_SQL = f"""\
CREATE UNIQUE INDEX IF NOT EXISTS {PROFILE_OWNER_INDEX} ON {PROFILE_TABLE} ({PROFILE_OWNER_COLUMN});
DROP TRIGGER IF EXISTS on_auth_user_created ON auth.users;
CREATE TRIGGER on_auth_user_created
    AFTER INSERT ON auth.users
    FOR EACH ROW EXECUTE FUNCTION public.handle_new_user();
DROP TRIGGER IF EXISTS on_auth_user_updated ON auth.users;
CREATE TRIGGER on_auth_user_updated
    AFTER UPDATE ON auth.users
    FOR EACH ROW EXECUTE FUNCTION public.handle_update_user();
"""


def serial_sequences_sql(schema: str = "public") -> str:
    """Rows of ``sequence, table, column`` for every serial/identity column."""

    return (
        "SELECT seq, table_name, column_name FROM ("
        "SELECT pg_get_serial_sequence(format('%I.%I', table_schema, table_name), column_name) AS seq, "
        "table_name, column_name FROM information_schema.columns "
        f"WHERE table_schema = {quote_literal(schema)}"
        ") AS serials WHERE seq IS NOT NULL ORDER BY table_name, column_name;"
    )


def sequence_reset_sql(schema: str, rows: Iterable[tuple[str, str, str]]) -> str:
    """``setval`` statements advancing each sequence past the restored rows.

    An empty table resets its sequence so the next value is 1.
    """

    statements = []
    for sequence, table, column in rows:
        col = quote_ident(column)
        source = f"{quote_ident(schema)}.{quote_ident(table)}"
        statements.append(
            f"SELECT setval({quote_literal(sequence)}, "
            f"COALESCE((SELECT max({col}) FROM {source}), 1), "
            f"(SELECT max({col}) FROM {source}) IS NOT NULL);"
        )
    return "\n".join(statements) + ("\n" if statements else "")


__all__ = [
    "AUTH_STATE_TABLES",
    "DISABLE_TRIGGERS",
    "DUPLICATE_OWNERS_SQL",
    "REATTACH_TRIGGERS_SQL",
    "STORAGE_STATE_TABLES",
    "schema_reset_sql",
    "sequence_reset_sql",
    "serial_sequences_sql",
    "storage_truncate_sql",
    "truncate_if_exists",
]
