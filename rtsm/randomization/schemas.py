"""
Pydantic Schemas for Randomization Schemes
==========================================
Input models for creating, patching and previewing schemes.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from rtsm.config import get_settings
from rtsm.database.enums import BlindingLevel, RandomizationType, SlotPolicy

from .exceptions import ValidationError


# =============================================================================
# BUILDING BLOCKS
# =============================================================================

class AllocationRatio(BaseModel):
    """One arm and its relative weight."""
    model_config = ConfigDict(frozen=True)

    arm_id: str = Field(..., min_length=1, max_length=50)
    weight: int = Field(..., gt=0)


class StratificationFactor(BaseModel):
    """A baseline factor and its finite value set."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=100)
    values: List[str] = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def name_is_key_safe(cls, v: str) -> str:
        if ":" in v or "|" in v:
            raise ValueError("factor names may not contain ':' or '|'")
        return v

    @field_validator("values")
    @classmethod
    def values_are_distinct(cls, v: List[str]) -> List[str]:
        if any(not value or "|" in value for value in v):
            raise ValueError("factor values must be non-empty and may not contain '|'")
        if len(set(v)) != len(v):
            raise ValueError("factor values must be distinct")
        return v


def _ratios_from_mapping(v: Any) -> Any:
    # {"A": 1, "B": 2} is accepted and kept in insertion order
    if isinstance(v, dict):
        return [{"arm_id": str(arm_id), "weight": weight} for arm_id, weight in v.items()]
    return v


# =============================================================================
# SCHEMES
# =============================================================================

class SchemeDefinition(BaseModel):
    """A complete, validated randomization scheme."""

    study_id: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None

    randomization_type: RandomizationType = RandomizationType.BLOCK
    blinding_level: BlindingLevel = BlindingLevel.DOUBLE_BLIND
    block_size: int = Field(4, ge=2)
    block_size_varied: bool = False
    block_sizes_list: List[int] = Field(default_factory=list)

    allocation_ratios: List[AllocationRatio]
    stratification_factors: List[StratificationFactor] = Field(default_factory=list)

    study_group_class_id: Optional[str] = None
    seed: Optional[str] = Field(None, min_length=16, max_length=128)
    total_slots: int = Field(100, ge=1)
    slot_policy: SlotPolicy = Field(default_factory=lambda: get_settings().DEFAULT_SLOT_POLICY)

    drug_kit_management: bool = False
    drug_kit_prefix: Optional[str] = Field(None, max_length=20)
    site_specific: bool = False

    @field_validator("name")
    @classmethod
    def name_is_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("allocation_ratios", mode="before")
    @classmethod
    def coerce_ratio_mapping(cls, v: Any) -> Any:
        return _ratios_from_mapping(v)

    @field_validator("block_sizes_list")
    @classmethod
    def block_sizes_are_valid(cls, v: List[int]) -> List[int]:
        if any(size < 2 for size in v):
            raise ValueError("every block size must be at least 2")
        return v

    @model_validator(mode="after")
    def check_consistency(self) -> "SchemeDefinition":
        if len(self.allocation_ratios) < 2:
            raise ValueError("At least 2 treatment arms with allocation ratios are required")

        arm_ids = [ratio.arm_id for ratio in self.allocation_ratios]
        if len(set(arm_ids)) != len(arm_ids):
            raise ValueError("allocation ratios must name distinct arms")

        names = [factor.name for factor in self.stratification_factors]
        if len(set(names)) != len(names):
            raise ValueError("stratification factor names must be distinct")

        if self.randomization_type == RandomizationType.STRATIFIED and not names:
            raise ValueError("stratified randomization requires at least one stratification factor")

        return self

    @property
    def ratio_pairs(self) -> List[tuple]:
        return [(ratio.arm_id, ratio.weight) for ratio in self.allocation_ratios]

    def to_record(self) -> Dict[str, Any]:
        """Column values for RandomizationScheme."""
        return self.model_dump(mode="json")


class SchemePreview(SchemeDefinition):
    """A scheme still being authored; it needs no study or name to be previewed."""

    study_id: Optional[str] = Field(None, max_length=50)
    name: Optional[str] = Field(None, max_length=255)

    study_id: Optional[str] = Field(None, max_length=50)
    name: Optional[str] = Field(None, max_length=255)


class SchemePatch(BaseModel):
    """Partial update of an unlocked scheme. study_id cannot change."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    randomization_type: Optional[RandomizationType] = None
    blinding_level: Optional[BlindingLevel] = None
    block_size: Optional[int] = None
    block_size_varied: Optional[bool] = None
    block_sizes_list: Optional[List[int]] = None
    allocation_ratios: Optional[List[AllocationRatio]] = None
    stratification_factors: Optional[List[StratificationFactor]] = None
    study_group_class_id: Optional[str] = None
    total_slots: Optional[int] = None
    slot_policy: Optional[SlotPolicy] = None
    drug_kit_management: Optional[bool] = None
    drug_kit_prefix: Optional[str] = None
    site_specific: Optional[bool] = None

    @field_validator("allocation_ratios", mode="before")
    @classmethod
    def coerce_ratio_mapping(cls, v: Any) -> Any:
        return _ratios_from_mapping(v)


# =============================================================================
# PARSING
# =============================================================================

def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ()))
        message = error.get("msg", "invalid value").removeprefix("Value error, ")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def _validate(model: type, data: Any) -> Any:
    # Exact type: a SchemePreview never passes as a full SchemeDefinition
    if type(data) is model:
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(_describe(e), {"errors": [err["msg"] for err in e.errors()]}) from e


def parse_scheme(data: Any) -> SchemeDefinition:
    """Validate a full scheme, raising the engine's ValidationError."""
    return _validate(SchemeDefinition, data)


def parse_preview(data: Any) -> SchemePreview:
    """Validate a scheme for preview only; study_id and name may be missing."""
    if isinstance(data, SchemeDefinition):
        return data
    return _validate(SchemePreview, data)


def parse_patch(data: Any) -> SchemePatch:
    return _validate(SchemePatch, data)
