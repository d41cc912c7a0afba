"""Application services."""

from subsync.application.services.duplicate_resolver import DuplicateResolver, ResolveResult
from subsync.application.services.import_finalizer import ImportFinalizer
from subsync.application.services.library_maintenance import (
    ConsistencyReport,
    DuplicateMergeReport,
    LibraryMaintenanceService,
)
from subsync.application.services.library_sync import LibrarySyncService
from subsync.application.services.reconciliation import DiffResult, ReconciliationService

__all__ = [
    "ConsistencyReport",
    "DiffResult",
    "DuplicateMergeReport",
    "DuplicateResolver",
    "ImportFinalizer",
    "LibraryMaintenanceService",
    "LibrarySyncService",
    "ReconciliationService",
    "ResolveResult",
]
