"""
Material Service: project-scoped material store.

Covers:
  - reconcile_materials: dedupe names, one upsert statement, one re-read
  - apply_bulk_match / create_match: record catalog matches in O(1) statements
  - get / update / delete (with a deletion audit entry per material)

Edits that change indicator inputs re-derive the stored layer indicators
and the project emissions snapshot in the same transaction.

Uniqueness of (project_id, name) is enforced by the uq_material_project_name
constraint; the upsert relies on it so concurrent ingestions converge on one row.
"""
import logging
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db.unit_of_work import UnitOfWork, dialect_insert, unit_of_work
from app.models.ingestion_schema import CatalogEntry, MaterialUpdate
from app.models.orm_models import CatalogMatch, Material, MaterialDeletion, gen_uuid
from app.services.errors import (
    BusinessRuleError,
    DatabaseError,
    MatchError,
    MaterialDeleteError,
    MaterialNotFoundError,
    MaterialUpdateError,
    ValidationError,
)
from app.services.indicator_engine import IndicatorEngine
from app.services.perf_monitor import timed_async
from app.services.pipeline_config import MATERIAL_DELETION_REASON

logger = logging.getLogger("lca-materials")

# (material_id, catalog entry, confidence score)
MatchCandidate = tuple[str, CatalogEntry, float]

# material fields the indicator formula reads
INDICATOR_INPUTS = frozenset({"density"})


class MaterialService:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory
        self.indicators = IndicatorEngine(session_factory)

    def _uow(self, uow: Optional[UnitOfWork], name: str):
        return unit_of_work(uow, name=name, session_factory=self.session_factory)

    async def _refresh_indicators(self, project_id: str, work: UnitOfWork) -> None:
        # layer bundles and the project snapshot are derived from material state
        await self.indicators.refresh_layer_indicators(project_id, uow=work)
        await self.indicators.refresh_project_emissions(project_id, uow=work)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    @timed_async
    async def reconcile_materials(
        self,
        project_id: str,
        upload_id: Optional[str],
        names: Iterable[str],
        uow: Optional[UnitOfWork] = None,
    ) -> dict[str, Material]:
        """
        Upsert every distinct name for the project and return name -> Material.

        Existing materials only get their updated_at refreshed; new ones are
        created with the upload as provenance.  The returned map may be
        partial (e.g. a concurrent delete won the race); callers skip names
        that are missing rather than failing.
        """
        # sorted so concurrent upserts take row locks in the same order
        distinct = sorted(set(names))
        if not distinct:
            return {}

        async with self._uow(uow, "reconcile_materials") as work:
            session = work.session
            stmt = dialect_insert(session, Material).values([
                {"id": gen_uuid(), "project_id": project_id, "upload_id": upload_id, "name": name}
                for name in distinct
            ])
            stmt = stmt.on_conflict_do_update(
                index_elements=["project_id", "name"],
                set_={"updated_at": func.now()},
            )
            try:
                await session.execute(stmt)
                result = await session.execute(
                    select(Material)
                    .where(Material.project_id == project_id, Material.name.in_(distinct))
                    .execution_options(populate_existing=True)
                )
            except SQLAlchemyError as exc:
                raise DatabaseError("material upsert", str(exc)) from exc
            materials = {m.name: m for m in result.scalars().all()}

        if len(materials) < len(distinct):
            missing = [n for n in distinct if n not in materials]
            logger.warning(
                "Reconciled %d of %d materials, missing: %s",
                len(materials), len(distinct), ", ".join(missing),
                extra={"project_id": project_id, "upload_id": upload_id},
            )
        return materials

    # ------------------------------------------------------------------
    # Reads and user edits
    # ------------------------------------------------------------------

    async def get_material(self, project_id: str, material_id: str, uow: Optional[UnitOfWork] = None) -> Material:
        async with self._uow(uow, "get_material") as work:
            material = await work.session.scalar(
                select(Material).where(Material.id == material_id, Material.project_id == project_id)
            )
        if material is None:
            raise MaterialNotFoundError(material_id)
        return material

    async def update_material(
        self,
        project_id: str,
        material_id: str,
        changes: MaterialUpdate,
        uow: Optional[UnitOfWork] = None,
    ) -> Material:
        async with self._uow(uow, "update_material") as work:
            material = await self.get_material(project_id, material_id, uow=work)
            data = changes.model_dump(exclude_unset=True)
            if not data:
                return material
            for field, value in data.items():
                setattr(material, field, value)
            try:
                await work.session.flush()
                await work.session.refresh(material)
            except SQLAlchemyError as exc:
                raise MaterialUpdateError(f"Could not update material {material_id}: {exc}") from exc
            if INDICATOR_INPUTS & data.keys():
                await self._refresh_indicators(project_id, work)
            return material

    async def delete_material(
        self,
        project_id: str,
        material_id: str,
        reason: str = MATERIAL_DELETION_REASON,
        uow: Optional[UnitOfWork] = None,
    ) -> int:
        return await self.delete_materials(project_id, [material_id], reason=reason, uow=uow)

    async def delete_materials(
        self,
        project_id: str,
        material_ids: list[str],
        reason: str = MATERIAL_DELETION_REASON,
        uow: Optional[UnitOfWork] = None,
    ) -> int:
        """Delete materials (and their match) and write one audit entry each."""
        ids = list(dict.fromkeys(material_ids))
        if not ids:
            raise ValidationError("No material ids given", field="material_ids")

        async with self._uow(uow, "delete_materials") as work:
            session = work.session
            materials = (await session.scalars(
                select(Material).where(Material.project_id == project_id, Material.id.in_(ids))
            )).all()
            found = {m.id for m in materials}
            missing = [i for i in ids if i not in found]
            if missing:
                raise MaterialNotFoundError(missing[0], f"Material(s) not found: {', '.join(missing)}")

            session.add_all([
                MaterialDeletion(project_id=project_id, material_name=m.name, reason=reason)
                for m in materials
            ])
            try:
                await session.execute(delete(CatalogMatch).where(CatalogMatch.material_id.in_(ids)))
                await session.execute(delete(Material).where(Material.id.in_(ids)))
                await session.flush()
            except SQLAlchemyError as exc:
                raise MaterialDeleteError(f"Could not delete {len(ids)} material(s): {exc}") from exc
            await self._refresh_indicators(project_id, work)

        logger.info("Deleted %d material(s)", len(ids), extra={"project_id": project_id})
        return len(ids)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def create_match(
        self,
        project_id: str,
        material_id: str,
        entry: CatalogEntry,
        score: float = 1.0,
        auto_matched: bool = False,
        uow: Optional[UnitOfWork] = None,
    ) -> Material:
        """Record a single (usually person-chosen) match and refresh the project's indicators."""
        if not 0.0 <= score <= 1.0:
            raise ValidationError(f"Match score must be within [0, 1], got {score}", field="score")
        async with self._uow(uow, "create_match") as work:
            await self.apply_bulk_match(project_id, [(material_id, entry, score)], auto_matched, uow=work)
            await self._refresh_indicators(project_id, work)
            material = await work.session.scalar(
                select(Material).where(Material.id == material_id).execution_options(populate_existing=True)
            )
            return material

    async def apply_bulk_match(
        self,
        project_id: str,
        matches: list[MatchCandidate],
        auto_matched: bool = True,
        skip_matched: bool = False,
        uow: Optional[UnitOfWork] = None,
    ) -> int:
        """
        Copy catalog factors onto the materials and insert their match records.

        One INSERT plus one UPDATE (executemany by primary key) regardless of
        how many materials are matched.  Density is filled from the catalog's
        min/max mean only when the material has none.

        With ``skip_matched`` materials that already carry a match, including
        ones matched by a concurrent transaction, are left alone and not
        counted; otherwise they raise MatchError.  Returns the number of
        materials newly matched.
        """
        by_id = {material_id: (entry, score) for material_id, entry, score in matches}
        if not by_id:
            return 0
        ids = list(by_id)

        async with self._uow(uow, "apply_bulk_match") as work:
            session = work.session
            rows = (await session.execute(
                select(Material.id, Material.density)
                .where(Material.project_id == project_id, Material.id.in_(ids))
            )).all()
            densities = {row.id: row.density for row in rows}
            missing = [i for i in ids if i not in densities]
            if missing:
                raise MaterialNotFoundError(
                    missing[0], f"{len(missing)} of {len(ids)} materials not found in project {project_id}"
                )

            already = set((await session.scalars(
                select(CatalogMatch.material_id).where(CatalogMatch.material_id.in_(ids))
            )).all())
            if already and not skip_matched:
                raise MatchError(f"{len(already)} material(s) already have an active match")
            pending = [i for i in ids if i not in already]
            if not pending:
                logger.info(
                    "All %d material(s) already matched, nothing applied", len(ids),
                    extra={"project_id": project_id},
                )
                return 0

            match_rows = []
            for material_id in pending:
                entry, score = by_id[material_id]
                match_rows.append({
                    "id": gen_uuid(),
                    "material_id": material_id,
                    "catalog_entry_id": entry.id,
                    "score": score,
                    "auto_matched": auto_matched,
                })

            try:
                stmt = (
                    dialect_insert(session, CatalogMatch)
                    .values(match_rows)
                    .on_conflict_do_nothing(index_elements=["material_id"])
                    .returning(CatalogMatch.material_id)
                )
                inserted = set((await session.scalars(stmt)).all())
                if len(inserted) < len(pending) and not skip_matched:
                    raise MatchError(f"Concurrent match detected for {len(pending) - len(inserted)} material(s)")

                material_rows = []
                for material_id in pending:
                    if material_id not in inserted:
                        continue
                    entry, _ = by_id[material_id]
                    factors = entry.impact_factors
                    density = densities[material_id]
                    material_rows.append({
                        "id": material_id,
                        "catalog_entry_id": entry.id,
                        "gwp": factors.gwp,
                        "ubp": factors.eco_points,
                        "penre": factors.non_renewable_primary_energy,
                        "declared_unit": entry.declared_unit,
                        "density": density if density is not None else entry.mean_density(),
                    })
                if material_rows:
                    await session.execute(update(Material), material_rows)
                applied = await session.scalar(
                    select(func.count())
                    .select_from(Material)
                    .where(Material.id.in_(list(inserted)), Material.catalog_entry_id.is_not(None))
                ) if inserted else 0
            except IntegrityError as exc:
                raise MatchError(f"Concurrent match detected for {len(pending)} material(s)") from exc
            except SQLAlchemyError as exc:
                raise DatabaseError("match apply", str(exc)) from exc

            if applied < len(inserted):
                raise BusinessRuleError(f"Bulk match updated {applied} of {len(inserted)} materials")

        skipped = len(ids) - len(inserted)
        logger.info(
            "Applied %d catalog match(es), skipped %d already matched", len(inserted), skipped,
            extra={"project_id": project_id},
        )
        return len(inserted)
