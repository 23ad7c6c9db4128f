"""ORM Models for LCA Estimator: SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, Float, DateTime, JSON, Uuid,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── PROJECTS ──────────────────────────────────────────────────────────────────
class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    # Snapshot of the last aggregate run; read-time totals are always recomputed
    emissions_gwp: Mapped[float] = mapped_column(Float, default=0.0)
    emissions_ubp: Mapped[float] = mapped_column(Float, default=0.0)
    emissions_penre: Mapped[float] = mapped_column(Float, default=0.0)
    emissions_calculated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    uploads: Mapped[list["Upload"]] = relationship(
        "Upload", back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    materials: Mapped[list["Material"]] = relationship(
        "Material", back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    elements: Mapped[list["Element"]] = relationship(
        "Element", back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )


# ── UPLOADS ───────────────────────────────────────────────────────────────────
class Upload(Base):
    __tablename__ = "uploads"
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Processing")
    element_count: Mapped[int] = mapped_column(Integer, default=0)
    material_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    project: Mapped["Project"] = relationship("Project", back_populates="uploads")


# ── MATERIALS ─────────────────────────────────────────────────────────────────
class Material(Base):
    __tablename__ = "materials"
    __table_args__ = (
        # Storage-level guard against duplicate materials under concurrent ingestion
        UniqueConstraint("project_id", "name", name="uq_material_project_name"),
    )
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    upload_id: Mapped[Optional[str]] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("uploads.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    manufacturer: Mapped[Optional[str]] = mapped_column(String(255))
    category: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    density: Mapped[Optional[float]] = mapped_column(Float)          # kg/m³
    declared_unit: Mapped[Optional[str]] = mapped_column(String(50))
    gwp: Mapped[Optional[float]] = mapped_column(Float)              # kg CO2-eq per kg
    ubp: Mapped[Optional[float]] = mapped_column(Float)              # eco-points per kg
    penre: Mapped[Optional[float]] = mapped_column(Float)            # MJ per kg
    catalog_entry_id: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    project: Mapped["Project"] = relationship("Project", back_populates="materials")
    catalog_match: Mapped[Optional["CatalogMatch"]] = relationship(
        "CatalogMatch", back_populates="material", uselist=False,
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def is_matched(self) -> bool:
        return self.catalog_entry_id is not None


# ── ELEMENTS ──────────────────────────────────────────────────────────────────
class Element(Base):
    __tablename__ = "elements"
    __table_args__ = (
        UniqueConstraint("project_id", "guid", name="uq_element_project_guid"),
    )
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    upload_id: Mapped[Optional[str]] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("uploads.id", ondelete="SET NULL")
    )
    guid: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(500), default="")
    type: Mapped[str] = mapped_column(String(255), default="")
    volume: Mapped[float] = mapped_column(Float, default=0.0)       # m³
    load_bearing: Mapped[bool] = mapped_column(Boolean, default=False)
    is_external: Mapped[bool] = mapped_column(Boolean, default=False)
    # [{material_id, material_name, volume, fraction, thickness, indicators}]
    material_layers: Mapped[list] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    project: Mapped["Project"] = relationship("Project", back_populates="elements")


# ── CATALOG MATCHES ───────────────────────────────────────────────────────────
class CatalogMatch(Base):
    __tablename__ = "catalog_matches"
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    # unique: at most one active match per material
    material_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("materials.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    catalog_entry_id: Mapped[str] = mapped_column(String(100), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    auto_matched: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    material: Mapped["Material"] = relationship("Material", back_populates="catalog_match")


# ── AUDIT ─────────────────────────────────────────────────────────────────────
class MaterialDeletion(Base):
    __tablename__ = "material_deletions"
    __table_args__ = (
        Index("ix_material_deletions_project_created", "project_id", "created_at"),
    )
    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    material_name: Mapped[str] = mapped_column(String(500), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
