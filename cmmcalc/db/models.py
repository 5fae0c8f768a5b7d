"""SQLAlchemy async database models for CMMCalc.

Reference tables (taxonomy, materials, conversions, building profiles, rule
sets, rules, waste factors) are read-only to the engine. Calculation runs and
their breakdown lines are owned by the orchestrator.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class CategoryL1Model(Base):
    """Trade (e.g. CON structural, INT interior)."""

    __tablename__ = "cmm_category_l1"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class CategoryL2Model(Base):
    """Sub-trade (e.g. CON_REBAR) with its default unit."""

    __tablename__ = "cmm_category_l2"

    code: Mapped[str] = mapped_column(String(30), primary_key=True)
    l1_code: Mapped[str] = mapped_column(
        String(20), ForeignKey("cmm_category_l1.code"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    default_unit: Mapped[str | None] = mapped_column(String(20))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class CategoryL3Model(Base):
    """Work-item template (e.g. CON_REBAR_D13) with default materials/params."""

    __tablename__ = "cmm_category_l3"

    code: Mapped[str] = mapped_column(String(40), primary_key=True)
    l2_code: Mapped[str] = mapped_column(
        String(30), ForeignKey("cmm_category_l2.code"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    default_materials: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    default_params: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ---------------------------------------------------------------------------
# Materials and conversions
# ---------------------------------------------------------------------------


class MaterialMasterModel(Base):
    __tablename__ = "cmm_material_masters"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    english_name: Mapped[str | None] = mapped_column(String(200))
    category: Mapped[str] = mapped_column(String(20), nullable=False, default="OTHER")
    category_l1: Mapped[str | None] = mapped_column(String(20))
    category_l2: Mapped[str | None] = mapped_column(String(30))
    base_unit: Mapped[str] = mapped_column(String(20), nullable=False)
    specification: Mapped[str | None] = mapped_column(Text)

    density: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    unit_weight: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    standard_weight_per_length: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    default_waste_factor: Mapped[Decimal] = mapped_column(
        Numeric(6, 4), nullable=False, default=Decimal("0")
    )

    packaging_unit: Mapped[str | None] = mapped_column(String(20))
    packaging_size: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    reference_price: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'INACTIVE', 'DEPRECATED')",
            name="check_material_status",
        ),
        CheckConstraint(
            "default_waste_factor >= 0", name="check_material_waste_non_negative"
        ),
        Index("idx_material_category", "category_l1", "category_l2"),
    )


class UnitConversionModel(Base):
    """Unit conversion factor; material_code NULL means generic."""

    __tablename__ = "cmm_unit_conversions"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    material_code: Mapped[str | None] = mapped_column(String(50), index=True)
    from_unit: Mapped[str] = mapped_column(String(20), nullable=False)
    to_unit: Mapped[str] = mapped_column(String(20), nullable=False)
    factor: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    is_bidirectional: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint(
            "material_code", "from_unit", "to_unit", name="uq_unit_conversion"
        ),
        CheckConstraint("factor > 0", name="check_conversion_factor_positive"),
    )


class BuildingProfileModel(Base):
    """Per-floor-area material factors by structure type, usage and floor band."""

    __tablename__ = "cmm_building_profiles"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    structure_type: Mapped[str] = mapped_column(String(10), nullable=False)
    usage: Mapped[str] = mapped_column(String(20), nullable=False)
    min_floors: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_floors: Mapped[int | None] = mapped_column(Integer)
    # {"rebar": {"value": "120", "unit": "kg/m2"}, ...}
    factors: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    category_l1: Mapped[str] = mapped_column(String(20), nullable=False, default="CON")
    description: Mapped[str | None] = mapped_column(Text)
    is_system_default: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "structure_type IN ('RC', 'SRC', 'SC', 'RB', 'W')",
            name="check_profile_structure_type",
        ),
        CheckConstraint(
            "max_floors IS NULL OR max_floors >= min_floors",
            name="check_profile_floor_range",
        ),
        Index("idx_profile_lookup", "structure_type", "usage", "min_floors"),
    )


# ---------------------------------------------------------------------------
# Rule sets
# ---------------------------------------------------------------------------


class RuleSetModel(Base):
    """Versioned rule set. Exactly zero or one row is current."""

    __tablename__ = "cmm_rule_sets"

    version: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_editable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    effective_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        # At most one current rule set
        Index(
            "idx_rule_sets_single_current",
            "is_current",
            unique=True,
            postgresql_where=text("is_current = true"),
            sqlite_where=text("is_current = 1"),
        ),
        CheckConstraint(
            "effective_to IS NULL OR effective_to > effective_from",
            name="check_rule_set_period",
        ),
    )


class ConversionRuleModel(Base):
    __tablename__ = "cmm_conversion_rules"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    rule_set_version: Mapped[str] = mapped_column(
        String(20), ForeignKey("cmm_rule_sets.version"), nullable=False
    )
    rule_type: Mapped[str] = mapped_column(String(20), nullable=False)
    category_l1: Mapped[str | None] = mapped_column(String(20))
    category_l2: Mapped[str | None] = mapped_column(String(30))
    category_l3: Mapped[str | None] = mapped_column(String(40))
    source_material: Mapped[str | None] = mapped_column(String(50))
    target_material: Mapped[str | None] = mapped_column(String(50))
    formula: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    output_unit: Mapped[str | None] = mapped_column(String(20))
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "rule_type IN ('UNIT', 'DENSITY', 'ASSEMBLY', 'WASTE', 'PACKAGING', 'SCENARIO')",
            name="check_rule_type",
        ),
        Index("idx_rules_lookup", "rule_set_version", "rule_type", "category_l1"),
    )


class WasteFactorModel(Base):
    __tablename__ = "cmm_waste_factors"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    rule_set_version: Mapped[str] = mapped_column(
        String(20), ForeignKey("cmm_rule_sets.version"), nullable=False
    )
    category_l1: Mapped[str | None] = mapped_column(String(20))
    category_l2: Mapped[str | None] = mapped_column(String(30))
    material_code: Mapped[str | None] = mapped_column(String(50))
    factor: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    scenario: Mapped[str | None] = mapped_column(String(50))
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("factor >= 0", name="check_waste_factor_non_negative"),
        Index("idx_waste_lookup", "rule_set_version", "category_l1", "category_l2"),
    )


# ---------------------------------------------------------------------------
# Calculation runs
# ---------------------------------------------------------------------------


class CalculationRunModel(Base):
    __tablename__ = "cmm_calculation_runs"

    run_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str | None] = mapped_column(String(100), index=True)
    category_l1: Mapped[str] = mapped_column(String(20), nullable=False)
    rule_set_version: Mapped[str] = mapped_column(
        String(20), ForeignKey("cmm_rule_sets.version"), nullable=False
    )
    input_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    input_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    failure_reason: Mapped[str | None] = mapped_column(String(30))
    result_summary: Mapped[dict | None] = mapped_column(JSON)
    error_log: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    lines: Mapped[list[MaterialBreakdownModel]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="MaterialBreakdownModel.line_no",
    )

    __table_args__ = (
        UniqueConstraint("input_hash", "rule_set_version", name="uq_run_input"),
        CheckConstraint(
            "status IN ('PENDING', 'RUNNING', 'SUCCESS', 'PARTIAL', 'FAILED')",
            name="check_run_status",
        ),
        CheckConstraint(
            "failure_reason IS NULL OR status = 'FAILED'",
            name="check_failure_reason_on_failed",
        ),
        Index("idx_runs_project_created", "project_id", "created_at"),
    )


class MaterialBreakdownModel(Base):
    """Immutable derived material line of a run."""

    __tablename__ = "cmm_material_breakdown"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("cmm_calculation_runs.run_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    source_work_item_code: Mapped[str] = mapped_column(String(50), nullable=False)
    category_l1: Mapped[str] = mapped_column(String(20), nullable=False)
    category_l2: Mapped[str | None] = mapped_column(String(30))
    category_l3: Mapped[str | None] = mapped_column(String(40))
    material_code: Mapped[str | None] = mapped_column(String(50))
    material_name: Mapped[str] = mapped_column(String(200), nullable=False)
    spec: Mapped[str | None] = mapped_column(Text)
    base_quantity: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)
    waste_factor: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    final_quantity: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    packaging_unit: Mapped[str | None] = mapped_column(String(20))
    packaging_quantity: Mapped[int | None] = mapped_column(Integer)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))
    subtotal: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))
    trace_info: Mapped[dict] = mapped_column(JSON, nullable=False)

    run: Mapped[CalculationRunModel] = relationship(back_populates="lines")

    __table_args__ = (
        CheckConstraint("final_quantity >= 0", name="check_final_quantity_non_negative"),
        Index("idx_breakdown_material", "run_id", "material_code"),
    )
