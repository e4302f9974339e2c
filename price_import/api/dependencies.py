"""
Shared service state for the API.

The orchestrator keeps the live context of running imports in memory, so a
single instance serves every request of the process.
"""
import threading
from typing import Optional

from fastapi import HTTPException

from price_import.domain.imports.errors import (
    ImportPipelineError,
    InvalidStateTransitionError,
    OperationNotFoundError,
)
from price_import.domain.imports.jobs import OperationStatusStore
from price_import.domain.imports.orchestrator import ImportOrchestrator
from price_import.domain.imports.repository import SqlAlchemyEntityRepository

_orchestrator: Optional[ImportOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_import_orchestrator() -> ImportOrchestrator:
    """Return the process-wide orchestrator, creating it on first use."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = ImportOrchestrator(
                repository=SqlAlchemyEntityRepository(),
                status_store=OperationStatusStore(),
            )
        return _orchestrator


def to_http_exception(error: ImportPipelineError) -> HTTPException:
    """Translate a pipeline error into the matching HTTP error."""
    if isinstance(error, OperationNotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, InvalidStateTransitionError):
        return HTTPException(status_code=409, detail=error.message)
    return HTTPException(status_code=400, detail=error.message)
