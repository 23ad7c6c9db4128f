"""
Ingestion pipeline configuration: single source of truth for batch sizes,
thresholds, external catalog settings and upload status names.

Import from here in all services rather than hardcoding values.
"""
from __future__ import annotations

import os

# ── Persistence ────────────────────────────────────────────────────────────────
# Elements per upsert statement; bounds peak memory and transaction log size.
ELEMENT_BATCH_SIZE: int = int(os.getenv("INGEST_BATCH_SIZE", "50"))

# Layer fractions of one element must sum to 1 within this tolerance.
FRACTION_TOLERANCE: float = 1e-4

# ── Matching ───────────────────────────────────────────────────────────────────
# Catalog matches scoring below this are discarded (never recorded).
MATCH_CONFIDENCE_THRESHOLD: float = 0.90

# Score given to a trimmed, case-sensitive exact name match.
EXACT_MATCH_SCORE: float = 1.0

# Parallel catalog lookups per match run.
MATCH_CONCURRENCY: int = int(os.getenv("MATCH_CONCURRENCY", "8"))

# ── External material catalog (EC3) ───────────────────────────────────────────
CATALOG_SERVICE_NAME: str = "EC3"
EC3_API_URL: str = os.getenv("EC3_API_URL", "https://buildingtransparency.org/api").rstrip("/")
EC3_API_KEY: str = os.getenv("EC3_API_KEY", "")
EC3_TIMEOUT_SECONDS: float = float(os.getenv("EC3_TIMEOUT_SECONDS", "10"))

# ── Upload lifecycle ───────────────────────────────────────────────────────────
UPLOAD_PROCESSING: str = "Processing"
UPLOAD_COMPLETED: str = "Completed"
UPLOAD_FAILED: str = "Failed"

UPLOAD_TERMINAL_STATES: frozenset[str] = frozenset({UPLOAD_COMPLETED, UPLOAD_FAILED})

# error recorded when the task running an ingestion is cancelled
UPLOAD_CANCELLED_ERROR: str = "Ingestion cancelled"

# ── Audit ──────────────────────────────────────────────────────────────────────
MATERIAL_DELETION_REASON: str = "Material deleted by user"
