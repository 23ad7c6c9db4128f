"""lca_core_schema

Revision ID: 001_lca_core
Revises:
Create Date: 2026-10-19

Creates the ingestion pipeline tables:
- projects (with emissions snapshot columns)
- uploads (lifecycle status + summary counts)
- materials (unique per project + name)
- elements (unique per project + guid, embedded material layers)
- catalog_matches (one active match per material)
- material_deletions (audit trail)

Every create is guarded by an existence check so the migration is
idempotent, so it can run even when Base.metadata.create_all() already
created the tables.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = '001_lca_core'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

_JSON = sa.JSON().with_variant(JSONB(), "postgresql")
_UUID = sa.Uuid(as_uuid=False)

# Reverse dependency order for downgrade
_TABLES = [
    'material_deletions',
    'catalog_matches',
    'elements',
    'materials',
    'uploads',
    'projects',
]


def _table_exists(conn, table_name: str) -> bool:
    return sa.inspect(conn).has_table(table_name)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def _project_fk():
    return sa.Column('project_id', _UUID, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True)


def _upload_fk():
    return sa.Column('upload_id', _UUID, sa.ForeignKey('uploads.id', ondelete='SET NULL'), nullable=True)


def _create(conn, name: str, *columns) -> None:
    if _table_exists(conn, name):
        logger.info(f"Table {name} already exists, skipping create")
        return
    op.create_table(name, *columns)
    logger.info(f"Created table: {name}")


def upgrade() -> None:
    conn = op.get_bind()

    # ── projects ──────────────────────────────────────────────────────────────
    _create(
        conn, 'projects',
        sa.Column('id', _UUID, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('emissions_gwp', sa.Float, server_default='0'),
        sa.Column('emissions_ubp', sa.Float, server_default='0'),
        sa.Column('emissions_penre', sa.Float, server_default='0'),
        sa.Column('emissions_calculated_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # ── uploads ───────────────────────────────────────────────────────────────
    _create(
        conn, 'uploads',
        sa.Column('id', _UUID, primary_key=True),
        _project_fk(),
        sa.Column('filename', sa.String(500), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='Processing'),
        sa.Column('element_count', sa.Integer, server_default='0'),
        sa.Column('material_count', sa.Integer, server_default='0'),
        sa.Column('error_message', sa.Text, nullable=True),
        *_timestamps(),
    )

    # ── materials ─────────────────────────────────────────────────────────────
    _create(
        conn, 'materials',
        sa.Column('id', _UUID, primary_key=True),
        _project_fk(),
        _upload_fk(),
        sa.Column('name', sa.String(500), nullable=False),
        sa.Column('manufacturer', sa.String(255), nullable=True),
        sa.Column('category', sa.String(255), nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('density', sa.Float, nullable=True),
        sa.Column('declared_unit', sa.String(50), nullable=True),
        sa.Column('gwp', sa.Float, nullable=True),
        sa.Column('ubp', sa.Float, nullable=True),
        sa.Column('penre', sa.Float, nullable=True),
        sa.Column('catalog_entry_id', sa.String(100), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('project_id', 'name', name='uq_material_project_name'),
    )

    # ── elements ──────────────────────────────────────────────────────────────
    _create(
        conn, 'elements',
        sa.Column('id', _UUID, primary_key=True),
        _project_fk(),
        _upload_fk(),
        sa.Column('guid', sa.String(100), nullable=False),
        sa.Column('name', sa.String(500), server_default=''),
        sa.Column('type', sa.String(255), server_default=''),
        sa.Column('volume', sa.Float, server_default='0'),
        sa.Column('load_bearing', sa.Boolean, server_default=sa.false()),
        sa.Column('is_external', sa.Boolean, server_default=sa.false()),
        sa.Column('material_layers', _JSON, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('project_id', 'guid', name='uq_element_project_guid'),
    )

    # ── catalog_matches ───────────────────────────────────────────────────────
    _create(
        conn, 'catalog_matches',
        sa.Column('id', _UUID, primary_key=True),
        sa.Column(
            'material_id', _UUID,
            sa.ForeignKey('materials.id', ondelete='CASCADE'), nullable=False, unique=True,
        ),
        sa.Column('catalog_entry_id', sa.String(100), nullable=False),
        sa.Column('score', sa.Float, nullable=False),
        sa.Column('auto_matched', sa.Boolean, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── material_deletions ────────────────────────────────────────────────────
    _create(
        conn, 'material_deletions',
        sa.Column('id', _UUID, primary_key=True),
        sa.Column('project_id', _UUID, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('material_name', sa.String(500), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Index('ix_material_deletions_project_created', 'project_id', 'created_at'),
    )


def downgrade() -> None:
    conn = op.get_bind()
    for name in _TABLES:
        if _table_exists(conn, name):
            op.drop_table(name)
            logger.info(f"Dropped table: {name}")
