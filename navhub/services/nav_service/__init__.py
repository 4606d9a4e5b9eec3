"""NAV service package facade."""
from __future__ import annotations

from .core import (
    ErrorKind,
    NavSyncError,
    TransientFetchError,
    RateLimitError,
    PersistenceError,
    DataQualityError,
    FatalSyncError,
    SyncAlreadyRunningError,
    async_retry_with_backoff,
)
from .models import NavPoint, SchemeInfo, UpsertResult, ReturnsSnapshot
from .parser import parse_bulk_feed, parse_bulk_line, parse_bulk_schemes, parse_scheme_document
from .store import NavStore
from .returns import PERIODS, compute_returns
from .fetcher import NavSourceClient
from .registry import SchemeRegistry, StaticSchemeRegistry, DatabaseSchemeRegistry
from .orchestrator import SyncOrchestrator, build_default_orchestrator, run_nav_sync

__all__ = [
    "ErrorKind",
    "NavSyncError",
    "TransientFetchError",
    "RateLimitError",
    "PersistenceError",
    "DataQualityError",
    "FatalSyncError",
    "SyncAlreadyRunningError",
    "async_retry_with_backoff",
    "NavPoint",
    "SchemeInfo",
    "UpsertResult",
    "ReturnsSnapshot",
    "parse_bulk_feed",
    "parse_bulk_line",
    "parse_bulk_schemes",
    "parse_scheme_document",
    "NavStore",
    "PERIODS",
    "compute_returns",
    "NavSourceClient",
    "SchemeRegistry",
    "StaticSchemeRegistry",
    "DatabaseSchemeRegistry",
    "SyncOrchestrator",
    "build_default_orchestrator",
    "run_nav_sync",
]
