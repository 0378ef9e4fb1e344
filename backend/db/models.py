"""
Control Tower Database Models

Tables for the inventory KPI engine.
Multi-tenant via tenant_id on all tables.

Tables:
  Tenancy (1):
  1. tenants                   - Tenant organizations

  Foundation inputs (2-6), owned by upstream ingestion:
  2. inv_stores                - Store master (retail + central warehouse)
  3. inv_state_positions       - Inventory position per store x sku
  4. inv_state_demand          - Demand signal per store x style
  5. inv_sku_fc_mapping        - SKU <-> style <-> size reference data
  6. inv_style_costs           - Optional per-style unit cost

  KPI snapshots (7-10), written only by the KPI engine:
  7. kpi_inventory_distortion  - Inventory Distortion Index per style
  8. kpi_size_completeness     - Size Completeness Score per store x style
  9. kpi_curve_health          - Curve Health Index per style
  10. kpi_network_gap          - Network supply/demand gap per style

  Audit (11):
  11. kpi_engine_runs          - One row per engine invocation
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


CENTRAL_WAREHOUSE = "central_warehouse"

# ─── 1. Tenants ─────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_tenant_status"),
    )

    stores = relationship("InvStore", back_populates="tenant", cascade="all, delete-orphan")


# ─── 2. Store Master ────────────────────────────────────────────────────────


class InvStore(Base):
    __tablename__ = "inv_stores"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    store_name = Column(String(255), nullable=False)
    store_code = Column(String(50))
    tier = Column(String(20))
    region = Column(String(100))
    location_type = Column(String(30), nullable=False, default="retail")  # retail, central_warehouse, outlet, ...
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_inv_stores_tenant", "tenant_id"),
        Index("ix_inv_stores_tenant_active", "tenant_id", "is_active"),
    )

    tenant = relationship("Tenant", back_populates="stores")


# ─── 3. Inventory Positions ─────────────────────────────────────────────────


class InventoryPosition(Base):
    __tablename__ = "inv_state_positions"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    store_id = Column(GUID(), ForeignKey("inv_stores.id"), nullable=False)
    style_id = Column(String(100), nullable=False)
    sku = Column(String(100), nullable=False)
    on_hand = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    in_transit = Column(Integer, nullable=False, default=0)
    safety_stock = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "store_id", "sku", name="uq_position_store_sku"),
        Index("ix_positions_tenant_style", "tenant_id", "style_id"),
        CheckConstraint("on_hand >= 0", name="ck_position_on_hand_positive"),
        CheckConstraint("reserved >= 0", name="ck_position_reserved_positive"),
        CheckConstraint("in_transit >= 0", name="ck_position_in_transit_positive"),
        CheckConstraint("safety_stock >= 0", name="ck_position_safety_stock_positive"),
    )


# ─── 4. Demand Signals ──────────────────────────────────────────────────────


class DemandSignal(Base):
    __tablename__ = "inv_state_demand"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    store_id = Column(GUID(), ForeignKey("inv_stores.id"), nullable=False)
    style_id = Column(String(100), nullable=False)
    avg_daily_sales = Column(Float, nullable=False, default=0.0)
    sales_velocity = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "store_id", "style_id", name="uq_demand_store_style"),
        CheckConstraint("avg_daily_sales >= 0", name="ck_demand_avg_daily_sales_positive"),
        CheckConstraint("sales_velocity >= 0", name="ck_demand_velocity_positive"),
    )


# ─── 5. SKU <-> Style <-> Size Mapping ──────────────────────────────────────


class SizeMapping(Base):
    __tablename__ = "inv_sku_fc_mapping"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    style_id = Column(String(100), nullable=False)
    sku = Column(String(100), nullable=False)
    size_code = Column(String(20), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "sku", name="uq_size_mapping_sku"),
        Index("ix_size_mapping_tenant_style", "tenant_id", "style_id"),
    )


# ─── 6. Style Unit Costs ────────────────────────────────────────────────────


class StyleUnitCost(Base):
    """Per-style unit cost used to value locked cash and revenue at risk."""

    __tablename__ = "inv_style_costs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    style_id = Column(String(100), nullable=False)
    unit_cost = Column(Float, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "style_id", name="uq_style_cost"),
        CheckConstraint("unit_cost >= 0", name="ck_style_cost_positive"),
    )


# ═══════════════════════════════════════════════════════════════════════════
# KPI SNAPSHOTS: replaced per (tenant_id, as_of_date) by the KPI engine
# ═══════════════════════════════════════════════════════════════════════════


# ─── 7. Inventory Distortion ────────────────────────────────────────────────


class InventoryDistortion(Base):
    __tablename__ = "kpi_inventory_distortion"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(100), nullable=False)
    distortion_score = Column(Float, nullable=False)
    overstock_locations = Column(JSON, nullable=False, default=list)
    understock_locations = Column(JSON, nullable=False, default=list)
    locked_cash_estimate = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "as_of_date", "style_id", name="uq_distortion_snapshot"),
        CheckConstraint("distortion_score >= 0", name="ck_distortion_score_positive"),
    )


# ─── 8. Size Completeness ───────────────────────────────────────────────────


class SizeCompleteness(Base):
    __tablename__ = "kpi_size_completeness"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    as_of_date = Column(Date, nullable=False)
    store_id = Column(GUID(), ForeignKey("inv_stores.id"), nullable=False)
    style_id = Column(String(100), nullable=False)
    sizes_present = Column(Integer, nullable=False)
    sizes_total = Column(Integer, nullable=False)
    score = Column(Float, nullable=False)
    missing_sizes = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "as_of_date", "store_id", "style_id", name="uq_completeness_snapshot"),
        Index("ix_completeness_tenant_date_style", "tenant_id", "as_of_date", "style_id"),
        CheckConstraint("score >= 0 AND score <= 1", name="ck_completeness_score_range"),
        CheckConstraint("status IN ('HEALTHY', 'AT_RISK', 'BROKEN')", name="ck_completeness_status"),
    )


# ─── 9. Curve Health ────────────────────────────────────────────────────────


class CurveHealth(Base):
    __tablename__ = "kpi_curve_health"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(100), nullable=False)
    curve_health_index = Column(Float, nullable=False)
    risk_band = Column(String(20), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "as_of_date", "style_id", name="uq_curve_health_snapshot"),
        CheckConstraint("curve_health_index >= 0 AND curve_health_index <= 1", name="ck_curve_health_range"),
        CheckConstraint("risk_band IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')", name="ck_curve_health_band"),
    )


# ─── 10. Network Gap ────────────────────────────────────────────────────────


class NetworkGap(Base):
    __tablename__ = "kpi_network_gap"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    as_of_date = Column(Date, nullable=False)
    style_id = Column(String(100), nullable=False)
    reallocatable_units = Column(Integer, nullable=False)
    true_shortage_units = Column(Integer, nullable=False)
    net_gap_units = Column(Integer, nullable=False)
    revenue_at_risk = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "as_of_date", "style_id", name="uq_network_gap_snapshot"),
        CheckConstraint("reallocatable_units >= 0", name="ck_network_gap_reallocatable_positive"),
        CheckConstraint("true_shortage_units >= 0", name="ck_network_gap_shortage_positive"),
        CheckConstraint("net_gap_units >= 0", name="ck_network_gap_net_positive"),
    )


# ─── 11. Engine Runs ────────────────────────────────────────────────────────


class KpiEngineRun(Base):
    """Audit trail of KPI engine invocations."""

    __tablename__ = "kpi_engine_runs"

    run_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    as_of_date = Column(Date, nullable=False)
    trigger = Column(String(30), nullable=False, default="manual")  # manual, scheduled, api
    status = Column(String(20), nullable=False, default="running")
    idi_rows = Column(Integer, nullable=False, default=0)
    scs_rows = Column(Integer, nullable=False, default=0)
    chi_rows = Column(Integer, nullable=False, default=0)
    gap_rows = Column(Integer, nullable=False, default=0)
    degraded = Column(Boolean, nullable=False, default=False)
    truncated_inputs = Column(JSON, nullable=False, default=list)
    errors = Column(JSON, nullable=False, default=list)
    cost_basis = Column(String(20))
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)
    duration_seconds = Column(Float)

    __table_args__ = (
        Index("ix_kpi_runs_tenant_date", "tenant_id", "as_of_date"),
        CheckConstraint("status IN ('running', 'success', 'partial', 'failed')", name="ck_kpi_run_status"),
    )
