"""Database layer for CMMCalc with async SQLAlchemy."""

from cmmcalc.db.connection import get_session, get_session_factory, init_db
from cmmcalc.db.models import (
    Base,
    BuildingProfileModel,
    CalculationRunModel,
    CategoryL1Model,
    CategoryL2Model,
    CategoryL3Model,
    ConversionRuleModel,
    MaterialBreakdownModel,
    MaterialMasterModel,
    RuleSetModel,
    UnitConversionModel,
    WasteFactorModel,
)

__all__ = [
    "Base",
    "CategoryL1Model",
    "CategoryL2Model",
    "CategoryL3Model",
    "MaterialMasterModel",
    "UnitConversionModel",
    "BuildingProfileModel",
    "RuleSetModel",
    "ConversionRuleModel",
    "WasteFactorModel",
    "CalculationRunModel",
    "MaterialBreakdownModel",
    "get_session",
    "get_session_factory",
    "init_db",
]
