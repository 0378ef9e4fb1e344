"""
Inventory KPI schema - tenants, engine inputs, KPI snapshots, run audit

Revision ID: 001
Revises: None
Create Date: 2026-10-12
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TENANT_TABLES = [
    "inv_stores",
    "inv_state_positions",
    "inv_state_demand",
    "inv_sku_fc_mapping",
    "inv_style_costs",
    "kpi_inventory_distortion",
    "kpi_size_completeness",
    "kpi_curve_health",
    "kpi_network_gap",
    "kpi_engine_runs",
]


def _id_column(name: str = "id") -> sa.Column:
    return sa.Column(name, UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _tenant_column() -> sa.Column:
    return sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.tenant_id"), nullable=False)


def upgrade() -> None:
    # 1. Tenants
    op.create_table(
        "tenants",
        _id_column("tenant_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_tenant_status"),
    )

    # 2. Store master
    op.create_table(
        "inv_stores",
        _id_column(),
        _tenant_column(),
        sa.Column("store_name", sa.String(255), nullable=False),
        sa.Column("store_code", sa.String(50)),
        sa.Column("tier", sa.String(20)),
        sa.Column("region", sa.String(100)),
        sa.Column("location_type", sa.String(30), nullable=False, server_default="retail"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_inv_stores_tenant", "inv_stores", ["tenant_id"])
    op.create_index("ix_inv_stores_tenant_active", "inv_stores", ["tenant_id", "is_active"])

    # 3. Inventory positions
    op.create_table(
        "inv_state_positions",
        _id_column(),
        _tenant_column(),
        sa.Column("store_id", UUID(as_uuid=True), sa.ForeignKey("inv_stores.id"), nullable=False),
        sa.Column("style_id", sa.String(100), nullable=False),
        sa.Column("sku", sa.String(100), nullable=False),
        sa.Column("on_hand", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reserved", sa.Integer, nullable=False, server_default="0"),
        sa.Column("in_transit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("safety_stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "store_id", "sku", name="uq_position_store_sku"),
        sa.CheckConstraint("on_hand >= 0", name="ck_position_on_hand_positive"),
        sa.CheckConstraint("reserved >= 0", name="ck_position_reserved_positive"),
        sa.CheckConstraint("in_transit >= 0", name="ck_position_in_transit_positive"),
        sa.CheckConstraint("safety_stock >= 0", name="ck_position_safety_stock_positive"),
    )
    op.create_index("ix_positions_tenant_style", "inv_state_positions", ["tenant_id", "style_id"])

    # 4. Demand signals
    op.create_table(
        "inv_state_demand",
        _id_column(),
        _tenant_column(),
        sa.Column("store_id", UUID(as_uuid=True), sa.ForeignKey("inv_stores.id"), nullable=False),
        sa.Column("style_id", sa.String(100), nullable=False),
        sa.Column("avg_daily_sales", sa.Float, nullable=False, server_default="0"),
        sa.Column("sales_velocity", sa.Float, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "store_id", "style_id", name="uq_demand_store_style"),
        sa.CheckConstraint("avg_daily_sales >= 0", name="ck_demand_avg_daily_sales_positive"),
        sa.CheckConstraint("sales_velocity >= 0", name="ck_demand_velocity_positive"),
    )

    # 5. SKU <-> style <-> size mapping
    op.create_table(
        "inv_sku_fc_mapping",
        _id_column(),
        _tenant_column(),
        sa.Column("style_id", sa.String(100), nullable=False),
        sa.Column("sku", sa.String(100), nullable=False),
        sa.Column("size_code", sa.String(20), nullable=False),
        sa.UniqueConstraint("tenant_id", "sku", name="uq_size_mapping_sku"),
    )
    op.create_index("ix_size_mapping_tenant_style", "inv_sku_fc_mapping", ["tenant_id", "style_id"])

    # 6. Style unit costs
    op.create_table(
        "inv_style_costs",
        _id_column(),
        _tenant_column(),
        sa.Column("style_id", sa.String(100), nullable=False),
        sa.Column("unit_cost", sa.Float, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "style_id", name="uq_style_cost"),
        sa.CheckConstraint("unit_cost >= 0", name="ck_style_cost_positive"),
    )

    # 7. Inventory Distortion Index
    op.create_table(
        "kpi_inventory_distortion",
        _id_column(),
        _tenant_column(),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("style_id", sa.String(100), nullable=False),
        sa.Column("distortion_score", sa.Float, nullable=False),
        sa.Column("overstock_locations", JSONB, nullable=False, server_default="[]"),
        sa.Column("understock_locations", JSONB, nullable=False, server_default="[]"),
        sa.Column("locked_cash_estimate", sa.Float, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "as_of_date", "style_id", name="uq_distortion_snapshot"),
        sa.CheckConstraint("distortion_score >= 0", name="ck_distortion_score_positive"),
    )

    # 8. Size Completeness Score
    op.create_table(
        "kpi_size_completeness",
        _id_column(),
        _tenant_column(),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("store_id", UUID(as_uuid=True), sa.ForeignKey("inv_stores.id"), nullable=False),
        sa.Column("style_id", sa.String(100), nullable=False),
        sa.Column("sizes_present", sa.Integer, nullable=False),
        sa.Column("sizes_total", sa.Integer, nullable=False),
        sa.Column("score", sa.Float, nullable=False),
        sa.Column("missing_sizes", JSONB, nullable=False, server_default="[]"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "as_of_date", "store_id", "style_id", name="uq_completeness_snapshot"),
        sa.CheckConstraint("score >= 0 AND score <= 1", name="ck_completeness_score_range"),
        sa.CheckConstraint("status IN ('HEALTHY', 'AT_RISK', 'BROKEN')", name="ck_completeness_status"),
    )
    op.create_index(
        "ix_completeness_tenant_date_style", "kpi_size_completeness", ["tenant_id", "as_of_date", "style_id"]
    )

    # 9. Curve Health Index
    op.create_table(
        "kpi_curve_health",
        _id_column(),
        _tenant_column(),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("style_id", sa.String(100), nullable=False),
        sa.Column("curve_health_index", sa.Float, nullable=False),
        sa.Column("risk_band", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "as_of_date", "style_id", name="uq_curve_health_snapshot"),
        sa.CheckConstraint("curve_health_index >= 0 AND curve_health_index <= 1", name="ck_curve_health_range"),
        sa.CheckConstraint("risk_band IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')", name="ck_curve_health_band"),
    )

    # 10. Network Gap
    op.create_table(
        "kpi_network_gap",
        _id_column(),
        _tenant_column(),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("style_id", sa.String(100), nullable=False),
        sa.Column("reallocatable_units", sa.Integer, nullable=False),
        sa.Column("true_shortage_units", sa.Integer, nullable=False),
        sa.Column("net_gap_units", sa.Integer, nullable=False),
        sa.Column("revenue_at_risk", sa.Float, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "as_of_date", "style_id", name="uq_network_gap_snapshot"),
        sa.CheckConstraint("reallocatable_units >= 0", name="ck_network_gap_reallocatable_positive"),
        sa.CheckConstraint("true_shortage_units >= 0", name="ck_network_gap_shortage_positive"),
        sa.CheckConstraint("net_gap_units >= 0", name="ck_network_gap_net_positive"),
    )

    # 11. Engine run audit
    op.create_table(
        "kpi_engine_runs",
        _id_column("run_id"),
        _tenant_column(),
        sa.Column("as_of_date", sa.Date, nullable=False),
        sa.Column("trigger", sa.String(30), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("idi_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("scs_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("chi_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("gap_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("degraded", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("truncated_inputs", JSONB, nullable=False, server_default="[]"),
        sa.Column("errors", JSONB, nullable=False, server_default="[]"),
        sa.Column("cost_basis", sa.String(20)),
        sa.Column("started_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("duration_seconds", sa.Float),
        sa.CheckConstraint("status IN ('running', 'success', 'partial', 'failed')", name="ck_kpi_run_status"),
    )
    op.create_index("ix_kpi_runs_tenant_date", "kpi_engine_runs", ["tenant_id", "as_of_date"])

    # Row-level security for API reads. The KPI engine connects as the table
    # owner, so RLS is enabled but not forced.
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation ON {table} "
            f"USING (tenant_id::text = current_setting('app.current_tenant_id', true))"
        )


def downgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation ON {table}")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")

    for table in reversed(TENANT_TABLES):
        op.drop_table(table)
    op.drop_table("tenants")
