"""Tenant scope predicates shared by export and tenant cleanup.

Every predicate binds the tenant id as ``:tenant_id`` and is written
against the unaliased table, so the same clause drives both
``SELECT ... WHERE`` and ``DELETE ... WHERE``.
"""

from tenant_backup.backup.models import BackupSchema, ScopeStrategy, TableDef


def quote_ident(name: str) -> str:
    """Quote a SQL identifier, doubling embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def scope_clause(schema: BackupSchema, table_def: TableDef) -> str | None:
    """Build the WHERE predicate selecting one tenant's rows of a table.

    Returns:
        SQL predicate, or ``None`` if the table has no tenant scope
        (``GLOBAL``, or a ``PARENT`` chain ending in a global table).
    """
    if table_def.scope is ScopeStrategy.TENANT_COLUMN:
        return f"CAST({quote_ident(table_def.tenant_field)} AS TEXT) = :tenant_id"

    if table_def.scope is ScopeStrategy.TENANT_MEMBERS:
        membership = schema.get(schema.membership_table)
        if membership is None:
            return None
        inner = scope_clause(schema, membership)
        if inner is None:
            return None
        return (
            f"{quote_ident(table_def.user_field)} IN ("
            f"SELECT {quote_ident(membership.user_field)} "
            f"FROM {quote_ident(membership.name)} WHERE {inner})"
        )

    if table_def.scope is ScopeStrategy.PARENT and table_def.parent is not None:
        parent_def = schema.get(table_def.parent.table)
        if parent_def is None:
            return None
        inner = scope_clause(schema, parent_def)
        if inner is None:
            return None
        return (
            f"{quote_ident(table_def.parent.field)} IN ("
            f"SELECT {quote_ident(parent_def.pk)} "
            f"FROM {quote_ident(parent_def.name)} WHERE {inner})"
        )

    return None


def select_sql(table_name: str, clause: str | None = None) -> str:
    """``SELECT *`` for a table, optionally filtered by a scope clause."""
    sql = f"SELECT * FROM {quote_ident(table_name)}"
    if clause:
        sql += f" WHERE {clause}"
    return sql


def delete_sql(table_name: str, clause: str | None = None) -> str:
    """``DELETE FROM`` a table, optionally filtered by a scope clause."""
    sql = f"DELETE FROM {quote_ident(table_name)}"
    if clause:
        sql += f" WHERE {clause}"
    return sql
