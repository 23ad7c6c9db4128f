"""
Element Batch Writer: parsed element records -> persisted elements.

Each record's materials (flat list and/or layered assemblies) are resolved
through the reconciled name -> Material map and stored as embedded layers.
Elements are upserted on (project_id, guid) in batches of ELEMENT_BATCH_SIZE:
creation metadata and provenance are set on first sighting only, every other
column is overwritten so re-ingesting a corrected model self-corrects.
"""
import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db.unit_of_work import UnitOfWork, dialect_insert, unit_of_work
from app.models.ingestion_schema import ElementRecord, check_declared_fractions
from app.models.orm_models import Element, Material, gen_uuid
from app.services.errors import DatabaseError, ValidationError
from app.services.indicator_engine import layer_bundle
from app.services.perf_monitor import timed_async
from app.services.pipeline_config import ELEMENT_BATCH_SIZE

logger = logging.getLogger("lca-ingestion")

# Columns overwritten on every sighting of an element
_OVERWRITE_COLUMNS = ("name", "type", "volume", "load_bearing", "is_external", "material_layers")


def _layer(material: Material, volume: Optional[float], fraction=None, thickness=None) -> dict:
    return {
        "material_id": material.id,
        "material_name": material.name,
        "volume": volume,
        "fraction": fraction,
        "thickness": thickness,
        "indicators": layer_bundle(volume, material),
    }


def _without_stale_fractions(layers: list[dict], dropped: int, external_id: str) -> list[dict]:
    # declared fractions summed to 1 over the full set; with a sibling gone they no longer do
    if dropped and any(layer["fraction"] is not None for layer in layers):
        logger.warning(
            "Cleared layer fractions on element %s: %d sibling layer(s) unresolved", external_id, dropped
        )
        for layer in layers:
            layer["fraction"] = None
    return layers


def build_layers(record: ElementRecord, materials: dict[str, Material]) -> list[dict]:
    """
    Resolve a record's material references into layer dicts.

    Layer-group layers without a volume get an even share of the element
    volume across that group.  Names missing from ``materials`` are dropped
    with a warning, and the surviving siblings of a dropped layer lose their
    fraction.
    """
    layers = []

    direct = []
    dropped = 0
    for ref in record.materials:
        material = materials.get(ref.name)
        if material is None:
            logger.warning("Material not found: %s (element %s)", ref.name, record.external_id)
            dropped += 1
            continue
        direct.append(_layer(material, ref.volume, fraction=ref.fraction))
    layers.extend(_without_stale_fractions(direct, dropped, record.external_id))

    for group in record.material_layer_groups:
        if not group.layers:
            continue
        even_share = record.volume / len(group.layers)
        grouped = []
        dropped = 0
        for layer in group.layers:
            material = materials.get(layer.material_name)
            if material is None:
                logger.warning("Material not found: %s (element %s)", layer.material_name, record.external_id)
                dropped += 1
                continue
            volume = layer.volume if layer.volume is not None else even_share
            grouped.append(_layer(material, volume, fraction=layer.fraction, thickness=layer.thickness))
        layers.extend(_without_stale_fractions(grouped, dropped, record.external_id))

    return layers


def _dedupe_by_guid(records: list[ElementRecord]) -> list[ElementRecord]:
    # one upsert statement cannot touch the same row twice; last record wins
    by_guid: dict[str, ElementRecord] = {}
    for record in records:
        by_guid[record.external_id] = record
    if len(by_guid) < len(records):
        logger.warning("Dropped %d duplicate element id(s) from input", len(records) - len(by_guid))
    return list(by_guid.values())


class ElementWriter:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None, batch_size: int = ELEMENT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.session_factory = session_factory
        self.batch_size = batch_size

    @timed_async
    async def write_elements(
        self,
        project_id: str,
        upload_id: Optional[str],
        records: list[ElementRecord],
        materials: dict[str, Material],
        uow: Optional[UnitOfWork] = None,
    ) -> int:
        """Upsert all records; returns the number of elements inserted or updated."""
        for record in records:
            try:
                check_declared_fractions(record)
            except ValueError as exc:
                raise ValidationError(f"Element {record.external_id}: {exc}", field="fraction") from exc

        # a fixed guid order makes concurrent upserts take row locks in the same order
        records = sorted(_dedupe_by_guid(records), key=lambda record: record.external_id)
        written = 0
        async with unit_of_work(uow, name="write_elements", session_factory=self.session_factory) as work:
            for start in range(0, len(records), self.batch_size):
                batch = records[start:start + self.batch_size]
                written += await self._upsert_batch(work, project_id, upload_id, batch, materials)
                logger.debug(
                    "Element batch %d-%d written", start, start + len(batch),
                    extra={"project_id": project_id, "upload_id": upload_id},
                )
        return written

    async def _upsert_batch(
        self,
        work: UnitOfWork,
        project_id: str,
        upload_id: Optional[str],
        batch: list[ElementRecord],
        materials: dict[str, Material],
    ) -> int:
        rows = [
            {
                "id": gen_uuid(),
                "project_id": project_id,
                "upload_id": upload_id,
                "guid": record.external_id,
                "name": record.name,
                "type": record.type,
                "volume": record.volume,
                "load_bearing": record.properties.load_bearing,
                "is_external": record.properties.is_external,
                "material_layers": build_layers(record, materials),
            }
            for record in batch
        ]
        stmt = dialect_insert(work.session, Element).values(rows)
        overwrite = {col: stmt.excluded[col] for col in _OVERWRITE_COLUMNS}
        overwrite["updated_at"] = func.now()
        stmt = stmt.on_conflict_do_update(
            index_elements=["project_id", "guid"],
            set_=overwrite,
        ).returning(Element.id)
        try:
            result = await work.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise DatabaseError("element upsert", str(exc)) from exc
        return len(result.all())
