"""threatscribe research — durable job/section storage and report layout.

Architecture:
    JobStore          — persistence contract (Postgres or SQLite backend)
    DEFAULT_SECTIONS  — the fixed five-section report layout
    build_full_report — stitches a run's sections into the final markdown
"""

from .report import build_full_report
from .sections import DEFAULT_SECTIONS, fallback_content, static_outline
from .store import JobStore, PostgresJobStore, SqliteJobStore, StoreError, build_store

__all__ = [
    "DEFAULT_SECTIONS",
    "JobStore",
    "PostgresJobStore",
    "SqliteJobStore",
    "StoreError",
    "build_full_report",
    "build_store",
    "fallback_content",
    "static_outline",
]
