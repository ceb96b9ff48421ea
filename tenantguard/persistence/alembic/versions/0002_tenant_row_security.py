"""tenant row security

Revision ID: 0002_tenant_row_security
Revises: 0001_init
Create Date: 2026-10-18 09:30:00.000000
"""
from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "0002_tenant_row_security"
down_revision = "0001_init"
branch_labels = None
depends_on = None

_TABLES = ("customers", "workorders")
_POLICY = "tenantguard_tenant_isolation"
# Mirrors the session settings written by the tenant scope binder.
_PREDICATE = (
    "(current_setting('app.tenant_scope_bypass', true) = 'on' "
    "OR tenant_id = current_setting('app.current_tenant', true))"
)


def upgrade() -> None:
    # Row-level security only exists on Postgres.
    if op.get_bind().dialect.name != "postgresql":
        return
    for table in _TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(f"DROP POLICY IF EXISTS {_POLICY} ON {table}")
        op.execute(
            f"CREATE POLICY {_POLICY} ON {table} USING {_PREDICATE} WITH CHECK {_PREDICATE}"
        )


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    for table in _TABLES:
        op.execute(f"DROP POLICY IF EXISTS {_POLICY} ON {table}")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
