"""
Import orchestration.

An operation moves INIT -> ANALYZING -> MAPPING -> VALIDATING_HEADERS ->
PROCESSING -> FINALIZING and ends COMPLETED, FAILED or CANCELLED. Rows are
read in chunks; each chunk is assembled into entities, handed to the
duplicate strategy and added to the running counts before the progress
counter advances.

Cancellation is cooperative. ``cancel`` only raises a flag; the worker looks
at it between chunks and between stages, rolls back what the operation
inserted and ends CANCELLED. Moving to FINALIZING and accepting a cancel
both happen under the operation's lock, so the two never overlap.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from price_import.api.schemas.shared import ErrorHandling, ImportSettings
from price_import.core.config import settings
from price_import.domain.imports.assembler import RelationshipHolder, RowAssembler
from price_import.domain.imports.dialect import DialectDescriptor, analyze_dialect
from price_import.domain.imports.entities import PRIMARY_ENTITY_TYPE, EntityType, parse_entity_type
from price_import.domain.imports.errors import (
    ImportPipelineError,
    InvalidStateTransitionError,
    MappingValidationError,
    OperationNotFoundError,
)
from price_import.domain.imports.jobs import OperationStatus, OperationStatusStore
from price_import.domain.imports.mapping import FieldMapping, suggest_mapping
from price_import.domain.imports.progress import ProgressTracker, calculate_percent
from price_import.domain.imports.readers import CsvRowReader, ExcelRowReader, RowChunk
from price_import.domain.imports.repository import EntityRepository
from price_import.domain.imports.strategies import BatchSaveResult, DuplicateStrategy, get_strategy
from price_import.domain.imports.transformers import TransformerRegistry, default_registry
from price_import.domain.imports.validators import calculate_file_hash, is_excel, validate_upload
from price_import.utils.locks import ClientLockManager

logger = logging.getLogger(__name__)

# Statuses an operation can be failed or cancelled from.
ACTIVE_STATUSES = (
    OperationStatus.INIT,
    OperationStatus.ANALYZING,
    OperationStatus.MAPPING,
    OperationStatus.VALIDATING_HEADERS,
    OperationStatus.PROCESSING,
)


class ImportCancelled(Exception):
    """Raised inside the worker when a cancel request is seen at a boundary."""


@dataclass
class ImportRequest:
    client_id: int
    entity_type: EntityType
    file_name: str
    file_content: bytes
    mapping: Optional[FieldMapping] = None
    options: ImportSettings = field(default_factory=ImportSettings)


class ErrorCollector:
    """Keeps the first ``limit`` messages and counts the rest."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = settings.import_max_reported_errors if limit is None else limit
        self.messages: List[str] = []
        self.truncated_count = 0

    def add(self, message: str) -> None:
        if len(self.messages) < self.limit:
            self.messages.append(message)
        else:
            self.truncated_count += 1

    def extend(self, messages) -> None:
        for message in messages:
            self.add(message)

    def __len__(self) -> int:
        return len(self.messages) + self.truncated_count

    def to_list(self) -> List[str]:
        if not self.truncated_count:
            return list(self.messages)
        return [*self.messages, f"...and {self.truncated_count} more"]


@dataclass
class ImportSummary:
    operation_id: str
    status: OperationStatus = OperationStatus.INIT
    processed_records: int = 0
    success_records: int = 0
    failed_records: int = 0
    skipped_records: int = 0
    errors: ErrorCollector = field(default_factory=ErrorCollector)
    error_message: Optional[str] = None
    cancel_reason: Optional[str] = None

    def add_batch(self, rows: int, batch: BatchSaveResult) -> None:
        self.processed_records += rows
        self.success_records += batch.success
        self.failed_records += batch.failed
        self.skipped_records += batch.skipped
        self.errors.extend(batch.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "status": self.status.value,
            "processed_records": self.processed_records,
            "success_records": self.success_records,
            "failed_records": self.failed_records,
            "skipped_records": self.skipped_records,
            "errors": self.errors.to_list(),
            "stored_errors": self.errors.to_list(),
            "truncated_error_count": self.errors.truncated_count,
            "error_message": self.error_message,
            "cancel_reason": self.cancel_reason,
        }


class ImportContext:
    """Mutable state of one running operation; dropped once it ends."""

    def __init__(self, operation_id: str, request: ImportRequest):
        self.operation_id = operation_id
        self.request = request
        self.status = OperationStatus.INIT
        self.lock = threading.Lock()
        self.cancel_requested = threading.Event()
        self.cancel_reason: Optional[str] = None
        self.strategy: Optional[DuplicateStrategy] = None
        self.summary = ImportSummary(operation_id=operation_id)


class ImportOrchestrator:
    """
    Runs import operations against a repository and a status store.

    ``submit`` registers an operation and ``run`` processes it; the HTTP layer
    calls ``run`` from a background task. ``import_file`` does both.
    """

    def __init__(
        self,
        repository: EntityRepository,
        status_store: OperationStatusStore,
        tracker: Optional[ProgressTracker] = None,
        registry: Optional[TransformerRegistry] = None,
    ):
        self.repository = repository
        self.status_store = status_store
        self.tracker = tracker or ProgressTracker(status_store)
        self.registry = registry or default_registry
        self._contexts: Dict[str, ImportContext] = {}
        self._contexts_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Readers and analysis
    # ------------------------------------------------------------------

    def _open_reader(
        self, file_name: str, content: bytes, options: ImportSettings
    ) -> Tuple[Any, Optional[DialectDescriptor]]:
        if is_excel(file_name):
            reader = ExcelRowReader(content, file_name, options.header_row, options.data_start_row)
            return reader, None

        dialect = analyze_dialect(content).with_overrides(
            encoding=options.charset,
            delimiter=options.delimiter,
            quote_char=options.quote_char,
            escape_char=options.escape_char,
        )
        for warning in dialect.warnings:
            logger.warning("%s: %s", file_name, warning)
        reader = CsvRowReader(content, dialect, options.header_row, options.data_start_row)
        return reader, dialect

    def analyze(
        self,
        file_name: str,
        content: bytes,
        entity_type: Any = PRIMARY_ENTITY_TYPE,
        options: Optional[ImportSettings] = None,
        composite: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Detect the dialect and headers of a file and suggest a mapping.

        Raises:
            EmptyFileError, UnsupportedFileError: If the file cannot be read
            UnsupportedEntityTypeError: If ``entity_type`` is unknown
        """
        entity_type = parse_entity_type(entity_type)
        options = options or ImportSettings()
        validate_upload(file_name, content)
        reader, dialect = self._open_reader(file_name, content, options)
        if composite is None:
            composite = entity_type == PRIMARY_ENTITY_TYPE
        return {
            "file_name": file_name,
            "file_hash": calculate_file_hash(content),
            "entity_type": entity_type.value,
            "headers": reader.headers,
            "dialect": dialect.to_dict() if dialect else None,
            "suggested_mapping": suggest_mapping(reader.headers, entity_type, composite=composite),
            "estimated_rows": reader.estimated_rows,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def submit(self, request: ImportRequest) -> str:
        """
        Check the upload, create the operation in INIT and return its id.

        The entity type is resolved when the operation starts, so an unknown
        type ends the operation FAILED instead of rejecting the upload.
        """
        validate_upload(request.file_name, request.file_content)
        entity_type = getattr(request.entity_type, "value", request.entity_type)

        operation_id = self.status_store.create_operation(
            client_id=request.client_id,
            entity_type=str(entity_type)[:50],
            file_name=request.file_name,
            file_hash=calculate_file_hash(request.file_content),
            duplicate_handling=request.options.duplicate_handling.value,
        )
        with self._contexts_lock:
            self._contexts[operation_id] = ImportContext(operation_id, request)
        return operation_id

    def import_file(self, request: ImportRequest) -> ImportSummary:
        """Submit and run an import synchronously."""
        return self.run(self.submit(request))

    def run(self, operation_id: str) -> ImportSummary:
        ctx = self._context(operation_id)
        if ctx is None:
            raise OperationNotFoundError(operation_id)

        try:
            self._execute(ctx)
        except ImportCancelled:
            self._finish_cancelled(ctx)
        except ImportPipelineError as e:
            logger.warning("Import %s failed: %s", operation_id, e.message)
            self._finish_failed(ctx, e.message)
        except Exception as e:
            logger.exception("Import %s failed with an unexpected error", operation_id)
            self._finish_failed(ctx, str(e))
        finally:
            self.tracker.discard(operation_id)
            with self._contexts_lock:
                self._contexts.pop(operation_id, None)

        return ctx.summary

    def _context(self, operation_id: str) -> Optional[ImportContext]:
        with self._contexts_lock:
            return self._contexts.get(operation_id)

    def _transition(self, ctx: ImportContext, new_status: OperationStatus) -> None:
        with ctx.lock:
            if ctx.cancel_requested.is_set():
                raise ImportCancelled()
            if not self.status_store.try_transition(ctx.operation_id, ctx.status, new_status):
                stored = self.status_store.get_operation(ctx.operation_id)
                current = stored["status"] if stored else "UNKNOWN"
                raise InvalidStateTransitionError(ctx.operation_id, current, new_status.value)
            logger.info("Import %s: %s -> %s", ctx.operation_id, ctx.status.value, new_status.value)
            ctx.status = new_status
            ctx.summary.status = new_status

    def _check_cancelled(self, ctx: ImportContext) -> None:
        if ctx.cancel_requested.is_set():
            raise ImportCancelled()

    def _resolve_mapping(self, request: ImportRequest, headers: List[str]) -> FieldMapping:
        if request.mapping:
            mapping = request.mapping
        else:
            composite = request.entity_type == PRIMARY_ENTITY_TYPE
            suggested = suggest_mapping(headers, request.entity_type, composite=composite)
            mapping = FieldMapping.from_dict(suggested, request.entity_type)
            logger.info("Using suggested mapping for %s: %s", request.file_name, suggested)

        if mapping.is_composite and mapping.default_type != PRIMARY_ENTITY_TYPE:
            raise MappingValidationError(
                f"Mappings spanning several entity types require a {PRIMARY_ENTITY_TYPE.value} import"
            )
        return mapping

    def _execute(self, ctx: ImportContext) -> None:
        request = ctx.request
        options = request.options

        self._transition(ctx, OperationStatus.ANALYZING)
        request.entity_type = parse_entity_type(request.entity_type)
        reader, _ = self._open_reader(request.file_name, request.file_content, options)
        self.tracker.init_progress(ctx.operation_id, reader.estimated_rows)

        self._transition(ctx, OperationStatus.MAPPING)
        mapping = self._resolve_mapping(request, reader.headers)

        self._transition(ctx, OperationStatus.VALIDATING_HEADERS)
        mapping.validate(reader.headers)

        self._transition(ctx, OperationStatus.PROCESSING)
        strategy = get_strategy(options.duplicate_handling, self.repository)
        ctx.strategy = strategy
        assembler = RowAssembler(
            mapping,
            request.client_id,
            operation_id=ctx.operation_id,
            registry=self.registry,
            composite=mapping.is_composite,
        )

        for chunk in reader.iter_chunks(options.batch_size):
            self._check_cancelled(ctx)
            self._process_chunk(ctx, assembler, strategy, chunk)

        self._transition(ctx, OperationStatus.FINALIZING)
        self.tracker.complete_progress(ctx.operation_id, exact=True)
        summary = ctx.summary
        summary.status = OperationStatus.COMPLETED
        self.status_store.mark_completed(ctx.operation_id, summary.to_dict())
        ctx.status = OperationStatus.COMPLETED
        logger.info(
            "Import %s completed: processed=%d success=%d failed=%d skipped=%d",
            ctx.operation_id,
            summary.processed_records,
            summary.success_records,
            summary.failed_records,
            summary.skipped_records,
        )

    def _process_chunk(
        self,
        ctx: ImportContext,
        assembler: RowAssembler,
        strategy: DuplicateStrategy,
        chunk: RowChunk,
    ) -> None:
        request = ctx.request
        options = request.options
        summary = ctx.summary

        holder = RelationshipHolder()
        batch = BatchSaveResult()
        for row_number, raw in chunk:
            assembled = assembler.assemble(row_number, raw)
            batch.errors.extend(assembled.warnings)
            if not assembled.ok:
                batch.failed += 1
                batch.add_error(assembled.error)
                continue
            holder.add_row(assembled.row)

        if len(holder):
            with ClientLockManager.acquire(request.client_id):
                batch.merge(strategy.process_combined(holder, request.client_id))
        holder.clear()

        summary.add_batch(len(chunk), batch)
        if options.error_handling == ErrorHandling.REPORT:
            for message in batch.errors:
                logger.warning("Import %s: %s", ctx.operation_id, message)
        elif batch.errors:
            logger.debug("Import %s: %d row errors in chunk", ctx.operation_id, len(batch.errors))

        self.tracker.increment_progress(ctx.operation_id, len(chunk))
        self._persist_counts(ctx)

        if batch.batch_error and options.error_handling == ErrorHandling.STOP:
            raise ImportPipelineError(batch.batch_error)

    def _persist_counts(self, ctx: ImportContext) -> None:
        summary = ctx.summary
        try:
            self.status_store.update_counts(
                ctx.operation_id,
                success=summary.success_records,
                failed=summary.failed_records,
                skipped=summary.skipped_records,
            )
        except Exception as exc:
            logger.warning("Unable to update counts of import %s: %s", ctx.operation_id, exc)

    def _finish_failed(self, ctx: ImportContext, message: str) -> None:
        summary = ctx.summary
        summary.error_message = message
        allowed = (*ACTIVE_STATUSES, OperationStatus.FINALIZING)
        if not self.status_store.try_transition(ctx.operation_id, allowed, OperationStatus.FAILED):
            logger.warning("Import %s already ended; not marking it failed", ctx.operation_id)
            return
        summary.status = OperationStatus.FAILED
        ctx.status = OperationStatus.FAILED
        self.status_store.mark_failed(ctx.operation_id, message, summary.to_dict())

    def _finish_cancelled(self, ctx: ImportContext) -> None:
        summary = ctx.summary
        summary.cancel_reason = ctx.cancel_reason
        strategy = ctx.strategy or get_strategy(ctx.request.options.duplicate_handling, self.repository)
        try:
            strategy.rollback(ctx.operation_id)
        except Exception as e:
            logger.error("Rollback of cancelled import %s failed: %s", ctx.operation_id, e)
            summary.errors.add(f"Rollback failed: {e}")

        if not self.status_store.try_transition(ctx.operation_id, ACTIVE_STATUSES, OperationStatus.CANCELLED):
            logger.warning("Import %s already ended; not marking it cancelled", ctx.operation_id)
            return
        summary.status = OperationStatus.CANCELLED
        ctx.status = OperationStatus.CANCELLED
        self.status_store.mark_cancelled(ctx.operation_id, ctx.cancel_reason, summary.to_dict())
        logger.info("Import %s cancelled (%s)", ctx.operation_id, ctx.cancel_reason or "no reason given")

    def cancel(self, operation_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Request cancellation of an operation.

        A running operation stops at its next chunk boundary. An operation
        that is registered in the store but has no worker here is cancelled
        directly.

        Raises:
            OperationNotFoundError: If the operation does not exist
            InvalidStateTransitionError: If it is finalizing or already ended
        """
        ctx = self._context(operation_id)
        if ctx is not None:
            with ctx.lock:
                if ctx.status == OperationStatus.FINALIZING or ctx.status.is_terminal:
                    raise InvalidStateTransitionError(
                        operation_id, ctx.status.value, OperationStatus.CANCELLED.value
                    )
                ctx.cancel_reason = reason
                ctx.cancel_requested.set()
                status = ctx.status.value
            logger.info("Cancellation requested for import %s", operation_id)
            return {"operation_id": operation_id, "status": status, "cancel_requested": True}

        operation = self.status_store.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)
        if not self.status_store.try_transition(operation_id, ACTIVE_STATUSES, OperationStatus.CANCELLED):
            raise InvalidStateTransitionError(operation_id, operation["status"], OperationStatus.CANCELLED.value)
        self.repository.delete_by_originating_file_id(operation_id)
        self.status_store.mark_cancelled(operation_id, reason)
        return {"operation_id": operation_id, "status": OperationStatus.CANCELLED.value, "cancel_requested": True}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self, operation_id: str) -> Dict[str, Any]:
        """Stored operation row, overlaid with live counters while it runs."""
        operation = self.status_store.get_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)

        ctx = self._context(operation_id)
        if ctx is None or ctx.status.is_terminal:
            return operation

        summary = ctx.summary
        operation.update(
            status=ctx.status.value,
            success_records=summary.success_records,
            failed_records=summary.failed_records,
            skipped_records=summary.skipped_records,
            errors=summary.errors.to_list(),
            truncated_error_count=summary.errors.truncated_count,
        )
        snapshot = self.tracker.get_progress(operation_id)
        if snapshot is not None:
            operation.update(
                processed_records=snapshot.processed_records,
                total_records=snapshot.total_records,
                progress=calculate_percent(snapshot.processed_records, snapshot.total_records),
            )
        return operation

    def list_operations(
        self, client_id: Optional[int] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        return self.status_store.list_operations(client_id=client_id, limit=limit, offset=offset)
