"""
Automatic Match Engine: links project materials to external catalog entries.

For every material without an active match, the catalog is searched by the
material's trimmed name and each hit is scored.  The default scorer accepts
only a case-sensitive exact name match (score 1.0) with no
fuzzy fallback.  Hits scoring below MATCH_CONFIDENCE_THRESHOLD are logged and
discarded.  All accepted matches are written in one bulk operation; materials
matched by a concurrent transaction in the meantime are skipped, not failed.

A catalog failure aborts the run with ExternalServiceError; when called inside
an ingestion unit of work that rolls back the whole ingestion.
"""
import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy import exists, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db.unit_of_work import UnitOfWork, unit_of_work
from app.models.ingestion_schema import CatalogEntry, MatchResult
from app.models.orm_models import CatalogMatch, Material
from app.services.catalog_client import CatalogClient
from app.services.errors import AppError, DatabaseError, MatchError
from app.services.material_service import MaterialService
from app.services.perf_monitor import timed_async
from app.services.pipeline_config import (
    EXACT_MATCH_SCORE,
    MATCH_CONCURRENCY,
    MATCH_CONFIDENCE_THRESHOLD,
)

logger = logging.getLogger("lca-ingestion")

Scorer = Callable[[str, CatalogEntry], float]
BestMatch = tuple[CatalogEntry, float]


def exact_name_score(name: str, entry: CatalogEntry) -> float:
    return EXACT_MATCH_SCORE if entry.name == name.strip() else 0.0


class MatchEngine:
    def __init__(
        self,
        catalog_client: CatalogClient,
        material_service: Optional[MaterialService] = None,
        session_factory: Optional[async_sessionmaker] = None,
        scorer: Scorer = exact_name_score,
        threshold: float = MATCH_CONFIDENCE_THRESHOLD,
        concurrency: int = MATCH_CONCURRENCY,
    ):
        self.catalog_client = catalog_client
        self.session_factory = session_factory
        self.material_service = material_service or MaterialService(session_factory)
        self.scorer = scorer
        self.threshold = threshold
        self.concurrency = max(1, concurrency)

    async def find_best_match(self, name: str) -> Optional[tuple[CatalogEntry, float]]:
        """Best-scoring catalog entry for ``name``, or None when nothing scores above 0."""
        entries = await self.catalog_client.search(name.strip())
        best: Optional[tuple[CatalogEntry, float]] = None
        for entry in entries:
            score = self.scorer(name, entry)
            if score > 0 and (best is None or score > best[1]):
                best = (entry, score)
        return best

    async def _unmatched_materials(self, session, project_id: str, material_ids: list[str]) -> list[Material]:
        has_match = exists().where(CatalogMatch.material_id == Material.id)
        try:
            result = await session.execute(
                select(Material).where(
                    Material.project_id == project_id,
                    Material.id.in_(material_ids),
                    ~has_match,
                )
            )
        except SQLAlchemyError as exc:
            raise DatabaseError("unmatched material lookup", str(exc)) from exc
        return list(result.scalars().all())

    async def _lookup_all(self, materials: list[Material]) -> list[tuple[Material, Optional[BestMatch]]]:
        """Search the catalog for every material, at most ``concurrency`` at a time.

        The first failure cancels the lookups still in flight before it propagates.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def lookup(material: Material):
            async with semaphore:
                return material, await self.find_best_match(material.name)

        tasks = [asyncio.ensure_future(lookup(m)) for m in materials]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    @timed_async
    async def apply_automatic_matches(
        self,
        project_id: str,
        material_ids: list[str],
        uow: Optional[UnitOfWork] = None,
    ) -> MatchResult:
        if not material_ids:
            return MatchResult()
        try:
            async with unit_of_work(uow, name="apply_automatic_matches", session_factory=self.session_factory) as work:
                materials = await self._unmatched_materials(work.session, project_id, list(dict.fromkeys(material_ids)))
                if not materials:
                    return MatchResult()

                lookups = await self._lookup_all(materials)

                accepted = []
                rejected = unmatched = 0
                for material, best in lookups:
                    if best is None:
                        unmatched += 1
                        continue
                    entry, score = best
                    if score >= self.threshold:
                        accepted.append((material.id, entry, score))
                    else:
                        rejected += 1
                        logger.debug(
                            "Match for %r rejected: %s scored %.2f < %.2f",
                            material.name, entry.id, score, self.threshold,
                            extra={"project_id": project_id},
                        )

                matched = 0
                if accepted:
                    # another transaction may have matched some of these during the lookups
                    matched = await self.material_service.apply_bulk_match(
                        project_id, accepted, auto_matched=True, skip_matched=True, uow=work
                    )
        except AppError:
            raise
        except Exception as exc:
            raise MatchError(f"Automatic matching failed for project {project_id}: {exc}") from exc

        skipped = len(accepted) - matched
        logger.info(
            "Automatic matching: %d matched, %d already matched, %d rejected, %d without catalog hit",
            matched, skipped, rejected, unmatched,
            extra={"project_id": project_id},
        )
        return MatchResult(
            matched_count=matched,
            skipped_count=skipped,
            rejected_count=rejected,
            unmatched_count=unmatched,
        )
