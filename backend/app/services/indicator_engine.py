"""
Indicator Engine: GWP, UBP (eco-points) and PENRE for elements and projects.

    indicator = Σ_layers  volume [m³] × density [kg/m³] × factor [per kg]

The same formula applies to all three indicators.  A layer whose material has
no accepted catalog match, no density, or a missing factor contributes 0;
partial data gives an under-reported total, never an error.

Totals are computed from current rows on every call (fetch, then fold in
Python).  The project row additionally keeps a snapshot of the last refresh
for dashboard reads.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db.unit_of_work import UnitOfWork, unit_of_work
from app.models.ingestion_schema import EmissionsSummary
from app.models.orm_models import Element, Material, Project
from app.services.errors import DatabaseError, ElementNotFoundError, ProjectNotFoundError

logger = logging.getLogger("lca-ingestion")


@dataclass(frozen=True)
class MaterialFactors:
    """Per-kg factors of a matched material (None = unknown)."""
    gwp: Optional[float] = None
    ubp: Optional[float] = None
    penre: Optional[float] = None

    @classmethod
    def of(cls, material: Optional[Material]) -> "MaterialFactors":
        if material is None or not material.is_matched:
            return cls()
        return cls(gwp=material.gwp, ubp=material.ubp, penre=material.penre)


def _mul(volume: Optional[float], density: Optional[float], factor: Optional[float]) -> float:
    if volume is None or density is None or factor is None:
        return 0.0
    return volume * density * factor


def layer_indicators(volume: Optional[float], density: Optional[float], factors: MaterialFactors) -> EmissionsSummary:
    return EmissionsSummary(
        gwp=_mul(volume, density, factors.gwp),
        ubp=_mul(volume, density, factors.ubp),
        penre=_mul(volume, density, factors.penre),
    )


def sum_indicators(parts: Iterable[EmissionsSummary]) -> EmissionsSummary:
    gwp = ubp = penre = 0.0
    for part in parts:
        gwp += part.gwp
        ubp += part.ubp
        penre += part.penre
    return EmissionsSummary(gwp=gwp, ubp=ubp, penre=penre)


def layer_bundle(volume: Optional[float], material: Optional[Material]) -> Optional[dict]:
    """Pre-computed indicators stored on a layer; None until the material is matched."""
    if material is None or not material.is_matched:
        return None
    return layer_indicators(volume, material.density, MaterialFactors.of(material)).model_dump()


def fold_layers(layers: Iterable[dict], materials: dict[str, Material]) -> EmissionsSummary:
    parts = []
    for layer in layers:
        # a deleted material leaves the layer (by name) but contributes nothing
        material = materials.get(layer.get("material_id"))
        density = material.density if material is not None else None
        parts.append(layer_indicators(layer.get("volume"), density, MaterialFactors.of(material)))
    return sum_indicators(parts)


class IndicatorEngine:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    def _uow(self, uow: Optional[UnitOfWork], name: str):
        return unit_of_work(uow, name=name, session_factory=self.session_factory)

    async def _project_materials(self, session, project_id: str) -> dict[str, Material]:
        result = await session.execute(
            select(Material)
            .where(Material.project_id == project_id)
            .execution_options(populate_existing=True)
        )
        return {m.id: m for m in result.scalars().all()}

    async def _project_elements(self, session, project_id: str) -> list[Element]:
        result = await session.execute(
            select(Element)
            .where(Element.project_id == project_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _require_project(self, session, project_id: str) -> None:
        if await session.get(Project, project_id) is None:
            raise ProjectNotFoundError(project_id)

    async def element_indicators(
        self, project_id: str, element_id: str, uow: Optional[UnitOfWork] = None
    ) -> EmissionsSummary:
        async with self._uow(uow, "element_indicators") as work:
            element = await work.session.scalar(
                select(Element).where(Element.id == element_id, Element.project_id == project_id)
            )
            if element is None:
                raise ElementNotFoundError(element_id)
            materials = await self._project_materials(work.session, project_id)
            return fold_layers(element.material_layers or [], materials)

    async def project_indicators(self, project_id: str, uow: Optional[UnitOfWork] = None) -> EmissionsSummary:
        async with self._uow(uow, "project_indicators") as work:
            await self._require_project(work.session, project_id)
            materials = await self._project_materials(work.session, project_id)
            elements = await self._project_elements(work.session, project_id)
        return sum_indicators(fold_layers(e.material_layers or [], materials) for e in elements)

    async def refresh_layer_indicators(self, project_id: str, uow: Optional[UnitOfWork] = None) -> int:
        """Rewrite stored layer bundles from current material state; returns elements changed."""
        async with self._uow(uow, "refresh_layer_indicators") as work:
            session = work.session
            materials = await self._project_materials(session, project_id)
            changed = []
            for element in await self._project_elements(session, project_id):
                layers = element.material_layers or []
                refreshed = [
                    {**layer, "indicators": layer_bundle(layer.get("volume"), materials.get(layer.get("material_id")))}
                    for layer in layers
                ]
                if refreshed != layers:
                    changed.append({"id": element.id, "material_layers": refreshed})
            if changed:
                try:
                    await session.execute(update(Element), changed)
                except SQLAlchemyError as exc:
                    raise DatabaseError("layer indicator refresh", str(exc)) from exc
        logger.debug("Refreshed layer indicators on %d element(s)", len(changed), extra={"project_id": project_id})
        return len(changed)

    async def refresh_project_emissions(
        self, project_id: str, uow: Optional[UnitOfWork] = None
    ) -> EmissionsSummary:
        """Recompute project totals and store them as the project's snapshot."""
        async with self._uow(uow, "refresh_project_emissions") as work:
            totals = await self.project_indicators(project_id, uow=work)
            try:
                await work.session.execute(
                    update(Project)
                    .where(Project.id == project_id)
                    .values(
                        emissions_gwp=totals.gwp,
                        emissions_ubp=totals.ubp,
                        emissions_penre=totals.penre,
                        emissions_calculated_at=datetime.now(timezone.utc),
                    )
                )
            except SQLAlchemyError as exc:
                raise DatabaseError("project emissions update", str(exc)) from exc
        return totals
