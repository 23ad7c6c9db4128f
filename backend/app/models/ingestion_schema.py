"""
Pydantic contracts for the ingestion pipeline.

Inbound:  ElementRecord (one parsed building element from the model producer)
          CatalogEntry  (one external material catalog hit)
Outbound: IngestionResult, MatchResult, UploadRecord, EmissionsSummary
"""
from datetime import datetime
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.services.pipeline_config import FRACTION_TOLERANCE


def check_layer_fractions(fractions: Iterable[Optional[float]], tolerance: float = FRACTION_TOLERANCE) -> None:
    """Raise ValueError when the given (present) fractions do not sum to 1."""
    present = [f for f in fractions if f is not None]
    if not present:
        return
    total = sum(present)
    if abs(total - 1.0) > tolerance:
        raise ValueError(f"layer fractions sum to {total:.6f}, expected 1 (±{tolerance})")


# ── Inbound: building-model producer ──────────────────────────────────────────

class MaterialRef(BaseModel):
    """Direct material reference: a named material carrying part of the element volume."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    volume: float = Field(0.0, ge=0)
    fraction: Optional[float] = Field(None, ge=0, le=1)


class LayerRef(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    material_name: str = Field(..., min_length=1, alias="materialName")
    volume: Optional[float] = Field(None, ge=0)   # None -> even split of element volume
    thickness: Optional[float] = Field(None, ge=0)
    fraction: Optional[float] = Field(None, ge=0, le=1)


class LayerGroup(BaseModel):
    layers: list[LayerRef] = Field(default_factory=list)


class ElementProperties(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    load_bearing: bool = Field(False, alias="loadBearing")
    is_external: bool = Field(False, alias="isExternal")


class ElementRecord(BaseModel):
    """One parsed element as delivered by the building-model producer."""
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    external_id: str = Field(..., min_length=1, alias="externalId")
    name: str = ""
    type: str = ""
    volume: float = Field(0.0, ge=0)
    properties: ElementProperties = Field(default_factory=ElementProperties)
    materials: list[MaterialRef] = Field(default_factory=list)
    material_layer_groups: list[LayerGroup] = Field(default_factory=list, alias="materialLayerGroups")

    @model_validator(mode="after")
    def _fractions_sum_to_one(self) -> "ElementRecord":
        check_declared_fractions(self)
        return self

    def material_names(self) -> set[str]:
        names = {m.name for m in self.materials}
        for group in self.material_layer_groups:
            names.update(layer.material_name for layer in group.layers)
        return names


def check_declared_fractions(record: ElementRecord) -> None:
    """Direct materials form one fraction set; each layer group forms its own."""
    check_layer_fractions(m.fraction for m in record.materials)
    for group in record.material_layer_groups:
        check_layer_fractions(layer.fraction for layer in group.layers)


# ── Inbound: external material catalog ────────────────────────────────────────

class ImpactFactors(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    gwp: Optional[float] = None
    eco_points: Optional[float] = Field(None, alias="ecoPoints")
    non_renewable_primary_energy: Optional[float] = Field(None, alias="nonRenewablePrimaryEnergy")


class CatalogEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    category: Optional[str] = None
    impact_factors: ImpactFactors = Field(default_factory=ImpactFactors, alias="impactFactors")
    declared_unit: Optional[str] = Field(None, alias="declaredUnit")
    density_min: Optional[float] = Field(None, alias="densityMin")
    density_max: Optional[float] = Field(None, alias="densityMax")

    def mean_density(self) -> Optional[float]:
        if self.density_min is None or self.density_max is None:
            return None
        return (self.density_min + self.density_max) / 2


class MaterialUpdate(BaseModel):
    """User-editable material attributes. Unset fields are left untouched."""
    model_config = ConfigDict(str_strip_whitespace=True)

    manufacturer: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    density: Optional[float] = Field(None, ge=0)
    declared_unit: Optional[str] = None


# ── Outbound ──────────────────────────────────────────────────────────────────

class IngestionResult(BaseModel):
    element_count: int = 0
    material_count: int = 0
    matched_count: int = 0
    skipped_count: int = 0       # matched by a concurrent transaction first


class MatchResult(BaseModel):
    matched_count: int = 0
    skipped_count: int = 0       # matched by a concurrent transaction first
    rejected_count: int = 0      # a catalog hit existed but scored below threshold
    unmatched_count: int = 0     # no catalog hit at all


class UploadCounts(BaseModel):
    elements: int = 0
    materials: int = 0


class UploadRecord(BaseModel):
    id: str
    project_id: str
    filename: str
    status: str
    counts: UploadCounts
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_orm_upload(cls, upload) -> "UploadRecord":
        return cls(
            id=upload.id,
            project_id=upload.project_id,
            filename=upload.filename,
            status=upload.status,
            counts=UploadCounts(elements=upload.element_count or 0, materials=upload.material_count or 0),
            error=upload.error_message,
            created_at=upload.created_at,
            updated_at=upload.updated_at,
        )


class MaterialRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    name: str
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    density: Optional[float] = None
    declared_unit: Optional[str] = None
    gwp: Optional[float] = None
    ubp: Optional[float] = None
    penre: Optional[float] = None
    catalog_entry_id: Optional[str] = None


class EmissionsSummary(BaseModel):
    """Indicator totals for one scope (element or project)."""
    gwp: float = 0.0
    ubp: float = 0.0
    penre: float = 0.0
