"""
Durable status storage for import operations.

Rows live in the ``import_operations`` table. Every status change that ends
or finalizes an operation goes through :meth:`OperationStatusStore.try_transition`,
a single conditional UPDATE, so a cancel request and a finishing worker can
never both win.
"""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import text

from price_import.db.models import create_import_tables
from price_import.db.session import get_engine

logger = logging.getLogger(__name__)


class OperationStatus(str, Enum):
    INIT = "INIT"
    ANALYZING = "ANALYZING"
    MAPPING = "MAPPING"
    VALIDATING_HEADERS = "VALIDATING_HEADERS"
    PROCESSING = "PROCESSING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, OperationStatus) else str(status)


def _json_payload(value: Optional[List[str]]) -> str:
    return json.dumps(value or [])


def _load_json(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


def _row_to_operation(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "client_id": row["client_id"],
        "file_name": row["file_name"],
        "file_hash": row["file_hash"],
        "entity_type": row["entity_type"],
        "duplicate_handling": row["duplicate_handling"],
        "status": row["status"],
        "total_records": row["total_records"] or 0,
        "processed_records": row["processed_records"] or 0,
        "progress": row["progress"] or 0,
        "success_records": row["success_records"] or 0,
        "failed_records": row["failed_records"] or 0,
        "skipped_records": row["skipped_records"] or 0,
        "errors": _load_json(row["errors"]),
        "truncated_error_count": row["truncated_error_count"] or 0,
        "error_message": row["error_message"],
        "cancel_reason": row["cancel_reason"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "completed_at": row["completed_at"],
    }


class OperationStatusStore:
    def __init__(self, engine=None, ensure_table: bool = True):
        self.engine = engine or get_engine()
        if ensure_table:
            create_import_tables(self.engine)

    def create_operation(
        self,
        *,
        client_id: int,
        entity_type: str,
        file_name: Optional[str] = None,
        file_hash: Optional[str] = None,
        duplicate_handling: Optional[str] = None,
        total_hint: int = 0,
    ) -> str:
        """Persist a new operation in INIT state and return its id."""
        operation_id = str(uuid.uuid4())
        now = _utcnow()
        insert_sql = """
        INSERT INTO import_operations (
            id, client_id, file_name, file_hash, entity_type, duplicate_handling, status,
            total_records, processed_records, progress, success_records, failed_records,
            skipped_records, errors, truncated_error_count, created_at, updated_at
        )
        VALUES (
            :id, :client_id, :file_name, :file_hash, :entity_type, :duplicate_handling, :status,
            :total_records, 0, 0, 0, 0, 0, :errors, 0, :now, :now
        )
        """
        params = {
            "id": operation_id,
            "client_id": client_id,
            "file_name": file_name,
            "file_hash": file_hash,
            "entity_type": entity_type,
            "duplicate_handling": duplicate_handling,
            "status": OperationStatus.INIT.value,
            "total_records": max(0, total_hint or 0),
            "errors": _json_payload([]),
            "now": now,
        }
        with self.engine.begin() as conn:
            conn.execute(text(insert_sql), params)
        logger.info("Created import operation %s for client %s (%s)", operation_id, client_id, file_name)
        return operation_id

    def _update(self, operation_id: str, values: Dict[str, Any], where_status: Optional[Iterable[str]] = None) -> bool:
        update_parts = ["updated_at = :now"]
        params: Dict[str, Any] = {"operation_id": operation_id, "now": _utcnow()}
        for column, value in values.items():
            update_parts.append(f"{column} = :{column}")
            params[column] = value

        where = "id = :operation_id"
        if where_status is not None:
            statuses = list(where_status)
            placeholders = []
            for index, status in enumerate(statuses):
                params[f"expected_{index}"] = status
                placeholders.append(f":expected_{index}")
            where += f" AND status IN ({', '.join(placeholders)})"

        update_sql = f"""
        UPDATE import_operations
        SET {", ".join(update_parts)}
        WHERE {where}
        """
        with self.engine.begin() as conn:
            result = conn.execute(text(update_sql), params)
            return (result.rowcount or 0) == 1

    def update_progress(self, operation_id: str, processed: int, total: int, percent: int) -> None:
        self._update(
            operation_id,
            {"processed_records": processed, "total_records": total, "progress": percent},
        )

    def update_counts(self, operation_id: str, *, success: int, failed: int, skipped: int) -> None:
        self._update(
            operation_id,
            {"success_records": success, "failed_records": failed, "skipped_records": skipped},
        )

    def try_transition(self, operation_id: str, expected: Any, new: Any) -> bool:
        """
        Move ``operation_id`` to ``new`` only if it is currently in ``expected``.

        Args:
            operation_id: Operation to update
            expected: A status or a collection of acceptable current statuses
            new: Target status

        Returns:
            True when this call performed the transition
        """
        if isinstance(expected, (list, tuple, set, frozenset)):
            expected_values = [_status_value(status) for status in expected]
        else:
            expected_values = [_status_value(expected)]
        changed = self._update(operation_id, {"status": _status_value(new)}, where_status=expected_values)
        if not changed:
            logger.debug(
                "Transition of %s from %s to %s rejected", operation_id, expected_values, _status_value(new)
            )
        return changed

    def _finish(self, operation_id: str, status: OperationStatus, summary: Optional[Dict[str, Any]], **extra: Any) -> None:
        values: Dict[str, Any] = {"status": status.value, "completed_at": _utcnow()}
        if summary:
            values.update(
                {
                    "processed_records": summary.get("processed_records", 0),
                    "success_records": summary.get("success_records", 0),
                    "failed_records": summary.get("failed_records", 0),
                    "skipped_records": summary.get("skipped_records", 0),
                    "errors": _json_payload(summary.get("stored_errors", [])),
                    "truncated_error_count": summary.get("truncated_error_count", 0),
                }
            )
        values.update({key: value for key, value in extra.items() if value is not None})
        self._update(operation_id, values)

    def mark_completed(self, operation_id: str, summary: Optional[Dict[str, Any]] = None) -> None:
        self._finish(operation_id, OperationStatus.COMPLETED, summary, progress=100)

    def mark_failed(
        self, operation_id: str, error_message: str, summary: Optional[Dict[str, Any]] = None
    ) -> None:
        self._finish(operation_id, OperationStatus.FAILED, summary, error_message=error_message)

    def mark_cancelled(
        self, operation_id: str, reason: Optional[str] = None, summary: Optional[Dict[str, Any]] = None
    ) -> None:
        self._finish(operation_id, OperationStatus.CANCELLED, summary, cancel_reason=reason)

    def get_operation(self, operation_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT * FROM import_operations WHERE id = :operation_id"),
                {"operation_id": operation_id},
            )
            row = result.mappings().first()
            return _row_to_operation(row) if row else None

    def list_operations(
        self, *, client_id: Optional[int] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """List operations, newest first, optionally for one client."""
        where_clause = "WHERE client_id = :client_id" if client_id is not None else ""
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if client_id is not None:
            params["client_id"] = client_id

        query_sql = f"""
        SELECT *
        FROM import_operations
        {where_clause}
        ORDER BY created_at DESC
        LIMIT :limit OFFSET :offset
        """
        count_sql = f"""
        SELECT COUNT(*)
        FROM import_operations
        {where_clause}
        """
        with self.engine.connect() as conn:
            rows = conn.execute(text(query_sql), params).mappings().all()
            count_params = {"client_id": client_id} if client_id is not None else {}
            total = conn.execute(text(count_sql), count_params).scalar() or 0
        return [_row_to_operation(row) for row in rows], total
