"""Enable Row-Level Security on the tenant-scoped billing tables.

Sessions opened for an authenticated request bind ``app.tenant_id`` and
see only their tenant's rows.  Sessions that never bind it (the webhook
processor, which resolves the tenant from the event, and the probes) are
not restricted.

PostgreSQL only; a no-op on SQLite.

Revision ID: 002
Revises: 001
Create Date: 2025-01-06 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_TENANT_TABLES: list[str] = [
    "tenant_billing",
    "billing_customers",
    "billing_subscriptions",
    "billing_orders",
]

_TENANT_PREDICATE = (
    "coalesce(current_setting('app.tenant_id', true), '') = '' "
    "OR tenant_id = current_setting('app.tenant_id', true)"
)


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    if not _is_postgres():
        return
    for table in _TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation_{table} ON {table} "
            f"USING ({_TENANT_PREDICATE}) WITH CHECK ({_TENANT_PREDICATE})"
        )


def downgrade() -> None:
    if not _is_postgres():
        return
    for table in reversed(_TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
