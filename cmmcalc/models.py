"""CMMCalc Pydantic models for type-safe data validation.

Reference data (taxonomy, materials, rule sets, profiles), calculation
requests and the run / breakdown records produced by the engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RuleType(str, Enum):
    """Conversion rule kinds."""

    UNIT = "UNIT"
    DENSITY = "DENSITY"
    ASSEMBLY = "ASSEMBLY"
    WASTE = "WASTE"
    PACKAGING = "PACKAGING"
    SCENARIO = "SCENARIO"

    @property
    def is_quantity_rule(self) -> bool:
        return self in QUANTITY_RULE_TYPES


# Tried in this order when a work item does not name its rule type
QUANTITY_RULE_TYPES: tuple[RuleType, ...] = (
    RuleType.ASSEMBLY,
    RuleType.DENSITY,
    RuleType.UNIT,
    RuleType.SCENARIO,
)


class RunStatus(str, Enum):
    """Calculation run lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.PARTIAL, RunStatus.FAILED)


class FailureReason(str, Enum):
    """Why a run ended FAILED."""

    NO_ITEMS_RESOLVED = "NO_ITEMS_RESOLVED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    PERSISTENCE = "PERSISTENCE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ItemErrorType(str, Enum):
    """Per work-item failure classification recorded in a run's error log."""

    NO_MATCH = "NO_MATCH"
    AMBIGUOUS = "AMBIGUOUS"
    UNKNOWN_VARIABLE = "UNKNOWN_VARIABLE"
    DIVISION_BY_ZERO = "DIVISION_BY_ZERO"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    INVALID_RESULT = "INVALID_RESULT"
    INCOMPATIBLE_UNITS = "INCOMPATIBLE_UNITS"


class StructureType(str, Enum):
    """Building structure systems."""

    RC = "RC"  # reinforced concrete
    SRC = "SRC"  # steel reinforced concrete
    SC = "SC"  # steel
    RB = "RB"  # reinforced brick
    W = "W"  # timber


class BuildingUsage(str, Enum):
    RESIDENTIAL = "RESIDENTIAL"
    OFFICE = "OFFICE"
    COMMERCIAL = "COMMERCIAL"
    INDUSTRIAL = "INDUSTRIAL"
    PUBLIC = "PUBLIC"
    MIXED = "MIXED"


class MaterialCategory(str, Enum):
    REBAR = "REBAR"
    CONCRETE = "CONCRETE"
    FORMWORK = "FORMWORK"
    MORTAR = "MORTAR"
    STEEL = "STEEL"
    CEMENT = "CEMENT"
    SAND = "SAND"
    GRAVEL = "GRAVEL"
    TILE = "TILE"
    PAINT = "PAINT"
    WOOD = "WOOD"
    OTHER = "OTHER"


class MaterialStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DEPRECATED = "DEPRECATED"


class WasteSource(str, Enum):
    """Where an applied waste factor came from."""

    RULE = "RULE"
    TABLE = "TABLE"
    MATERIAL_DEFAULT = "MATERIAL_DEFAULT"
    NONE = "NONE"


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


class CategoryNode(BaseModel):
    """One node of the L1 (trade) / L2 (sub-trade) / L3 (work item) taxonomy."""

    code: str
    name: str
    level: int = Field(ge=1, le=3)
    parent_code: str | None = None
    default_unit: str | None = None
    default_materials: list[str] = Field(default_factory=list)
    default_params: dict[str, Any] = Field(default_factory=dict)
    sort_order: int = 0
    is_active: bool = True

    @model_validator(mode="after")
    def check_parent(self) -> CategoryNode:
        if self.level == 1 and self.parent_code is not None:
            raise ValueError(f"L1 category {self.code} cannot have a parent")
        if self.level > 1 and not self.parent_code:
            raise ValueError(f"L{self.level} category {self.code} requires a parent")
        return self


class MaterialMaster(BaseModel):
    """Catalogue material with physical properties and packaging."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    name: str
    english_name: str | None = None
    category: MaterialCategory = MaterialCategory.OTHER
    category_l1: str | None = None
    category_l2: str | None = None
    base_unit: str
    specification: str | None = None
    density: Decimal | None = None  # kg/m3
    unit_weight: Decimal | None = None
    standard_weight_per_length: Decimal | None = None  # kg/m, rebar
    default_waste_factor: Decimal = Decimal("0")
    packaging_unit: str | None = None
    packaging_size: Decimal | None = None  # base units per package
    reference_price: Decimal | None = None
    status: MaterialStatus = MaterialStatus.ACTIVE
    deleted_at: datetime | None = None

    @field_validator("default_waste_factor")
    @classmethod
    def validate_waste(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("default_waste_factor must be non-negative")
        return v

    @field_validator("packaging_size")
    @classmethod
    def validate_packaging_size(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v <= 0:
            raise ValueError("packaging_size must be positive")
        return v

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class UnitConversion(BaseModel):
    """Conversion factor: quantity_in_to_unit = quantity_in_from_unit * factor."""

    model_config = ConfigDict(from_attributes=True)

    material_code: str | None = None  # None = generic
    from_unit: str
    to_unit: str
    factor: Decimal
    is_bidirectional: bool = True
    description: str | None = None

    @field_validator("factor")
    @classmethod
    def validate_factor(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("conversion factor must be positive")
        return v


class ProfileFactor(BaseModel):
    """A per-floor-area quantity factor, e.g. 120 kg/m2 of rebar."""

    value: Decimal
    unit: str

    @property
    def output_unit(self) -> str:
        """`kg/m2` -> `kg`."""
        return self.unit.split("/", 1)[0].strip()


class BuildingProfile(BaseModel):
    """Empirical material factors for a structure type / usage / floor band."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    name: str
    structure_type: StructureType
    usage: BuildingUsage
    min_floors: int = Field(default=1, ge=1)
    max_floors: int | None = None  # None = unbounded
    factors: dict[str, ProfileFactor] = Field(default_factory=dict)
    category_l1: str = "CON"
    description: str | None = None
    is_system_default: bool = True

    @model_validator(mode="after")
    def check_floor_range(self) -> BuildingProfile:
        if self.max_floors is not None and self.max_floors < self.min_floors:
            raise ValueError(f"profile {self.code}: max_floors < min_floors")
        return self

    def covers(self, floors: int) -> bool:
        if floors < self.min_floors:
            return False
        return self.max_floors is None or floors <= self.max_floors


class RuleSet(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version: str
    name: str
    description: str | None = None
    is_current: bool = False
    is_editable: bool = True
    effective_from: datetime = Field(default_factory=utcnow)
    effective_to: datetime | None = None


class TaxonomyScope(BaseModel):
    """Scope of a rule or query over the taxonomy (unset = wildcard)."""

    model_config = ConfigDict(frozen=True)

    category_l1: str | None = None
    category_l2: str | None = None
    category_l3: str | None = None

    @property
    def depth(self) -> int:
        """Deepest populated level: 3 for L3, ..., 0 for a global scope."""
        if self.category_l3:
            return 3
        if self.category_l2:
            return 2
        if self.category_l1:
            return 1
        return 0


class ConversionRule(BaseModel):
    """Versioned formula turning a work-item quantity into material quantity."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID = Field(default_factory=uuid4)
    rule_set_version: str
    rule_type: RuleType
    category_l1: str | None = None
    category_l2: str | None = None
    category_l3: str | None = None
    source_material: str | None = None
    target_material: str | None = None
    formula: str
    variables: dict[str, str] = Field(default_factory=dict)  # name -> source
    output_unit: str | None = None
    priority: int = 0
    description: str | None = None
    is_active: bool = True

    @field_validator("variables", mode="before")
    @classmethod
    def stringify_sources(cls, v: Any) -> Any:
        # YAML and JSON hand numeric literals over as numbers
        if isinstance(v, dict):
            return {str(name): str(source) for name, source in v.items()}
        return v

    @property
    def scope(self) -> TaxonomyScope:
        return TaxonomyScope(
            category_l1=self.category_l1,
            category_l2=self.category_l2,
            category_l3=self.category_l3,
        )


class WasteFactor(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID = Field(default_factory=uuid4)
    rule_set_version: str
    category_l1: str | None = None
    category_l2: str | None = None
    material_code: str | None = None
    factor: Decimal
    scenario: str | None = None
    description: str | None = None
    is_active: bool = True

    @field_validator("factor")
    @classmethod
    def validate_factor(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("waste factor must be non-negative")
        return v


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class WorkItem(BaseModel):
    """One line of a bill of quantities submitted for derivation."""

    item_code: str
    category_l2: str
    category_l3: str | None = None
    material_code: str | None = None
    quantity: Decimal
    unit: str
    rule_type: RuleType | None = None
    params: dict[str, Decimal] = Field(default_factory=dict)

    @field_validator("item_code", "category_l2", "unit")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("quantity must be non-negative")
        return v

    @field_validator("rule_type")
    @classmethod
    def validate_rule_type(cls, v: RuleType | None) -> RuleType | None:
        if v is not None and not v.is_quantity_rule:
            raise ValueError(f"{v.value} rules cannot produce a base quantity")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "item_code": "F-01",
                "category_l2": "INT_TILE",
                "category_l3": "INT_TILE_FLOOR",
                "material_code": "TILE_60X60",
                "quantity": "100",
                "unit": "m2",
            }
        }


class CalculationRequest(BaseModel):
    project_id: str | None = None
    category_l1: str
    rule_set_version: str | None = None  # None = current
    scenario: str | None = None
    building_params: dict[str, Decimal] = Field(default_factory=dict)
    work_items: list[WorkItem] = Field(default_factory=list)


class EstimateRequest(BaseModel):
    structure_type: StructureType
    usage: BuildingUsage
    floors: int = Field(ge=1)
    gross_floor_area: Decimal = Field(gt=0)  # m2
    profile_code: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class WasteResolution(BaseModel):
    model_config = ConfigDict(frozen=True)

    factor: Decimal
    source: WasteSource
    source_id: str | None = None


class TraceInfo(BaseModel):
    """Provenance of a breakdown line: which rule, which inputs, which steps."""

    model_config = ConfigDict(frozen=True)

    rule_id: UUID
    rule_type: RuleType
    rule_set_version: str
    formula: str
    bindings: dict[str, Decimal] = Field(default_factory=dict)
    formula_result: Decimal
    formula_unit: str
    waste: WasteResolution
    conversion_factor: Decimal | None = None
    final_quantity: Decimal
    packaging_source: str | None = None  # "RULE:<id>" or "MATERIAL"
    packaging_size: Decimal | None = None
    price_source: str | None = None


class MaterialBreakdownLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    run_id: UUID | None = None
    source_work_item_code: str
    category_l1: str
    category_l2: str | None = None
    category_l3: str | None = None
    material_code: str | None = None
    material_name: str
    spec: str | None = None
    base_quantity: Decimal
    waste_factor: Decimal
    final_quantity: Decimal
    unit: str
    packaging_unit: str | None = None
    packaging_quantity: int | None = None
    unit_price: Decimal | None = None
    subtotal: Decimal | None = None
    trace_info: TraceInfo


class ItemError(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_code: str
    error_type: ItemErrorType
    message: str


class MaterialTotal(BaseModel):
    material_code: str | None = None
    material_name: str
    unit: str
    final_quantity: Decimal
    packaging_unit: str | None = None
    packaging_quantity: int | None = None
    subtotal: Decimal | None = None
    line_count: int = 0


class ResultSummary(BaseModel):
    item_count: int
    resolved_count: int
    error_count: int
    line_count: int
    totals: list[MaterialTotal] = Field(default_factory=list)
    total_cost: Decimal | None = None


class EstimateLine(BaseModel):
    """A breakdown line as a row for the cost estimate it feeds."""

    id: UUID
    name: str
    spec: str | None = None
    quantity: Decimal
    unit: str
    unit_price: Decimal | None = None
    subtotal: Decimal | None = None
    category_l1: str
    category_l2: str | None = None
    source_run_id: UUID


class CalculationRun(BaseModel):
    run_id: UUID
    project_id: str | None = None
    category_l1: str
    rule_set_version: str
    input_snapshot: dict[str, Any]
    input_hash: str
    status: RunStatus
    failure_reason: FailureReason | None = None
    result_summary: ResultSummary | None = None
    error_log: list[ItemError] = Field(default_factory=list)
    duration_ms: int | None = None
    created_at: datetime
    completed_at: datetime | None = None
    lines: list[MaterialBreakdownLine] = Field(default_factory=list)

    @computed_field
    @property
    def suggested_estimate_lines(self) -> list[EstimateLine]:
        """Breakdown lines projected onto cost-estimate rows."""
        return [
            EstimateLine(
                id=line.id,
                name=line.material_name,
                spec=line.spec,
                quantity=line.final_quantity,
                unit=line.unit,
                unit_price=line.unit_price,
                subtotal=line.subtotal,
                category_l1=line.category_l1,
                category_l2=line.category_l2,
                source_run_id=self.run_id,
            )
            for line in self.lines
        ]


class EstimatedQuantity(BaseModel):
    quantity_type: str  # rebar, concrete, formwork, ...
    amount: Decimal
    unit: str
    factor: Decimal
    factor_unit: str


class EstimateResult(BaseModel):
    profile_code: str
    profile_name: str
    structure_type: StructureType
    usage: BuildingUsage
    floors: int
    gross_floor_area: Decimal  # m2
    gross_floor_area_ping: Decimal
    quantities: dict[str, Decimal]
    details: list[EstimatedQuantity]
