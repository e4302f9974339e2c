from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from price_import.core.config import settings
from price_import.domain.imports.strategies import DuplicateHandling


class ErrorHandling(str, Enum):
    """What the orchestrator does when a chunk cannot be persisted."""
    STOP = "stop"
    CONTINUE = "continue"
    REPORT = "report"


class ImportSettings(BaseModel):
    """Per-operation import configuration; empty dialect fields are detected from the file."""
    delimiter: Optional[str] = None
    quote_char: Optional[str] = None
    escape_char: Optional[str] = None
    charset: Optional[str] = None
    batch_size: int = Field(default_factory=lambda: settings.import_batch_size, gt=0)
    duplicate_handling: DuplicateHandling = Field(
        default_factory=lambda: DuplicateHandling(settings.default_duplicate_handling.upper())
    )
    error_handling: ErrorHandling = Field(
        default_factory=lambda: ErrorHandling(settings.default_error_handling.lower())
    )
    header_row: int = Field(default=0, ge=0)
    data_start_row: Optional[int] = Field(default=None, ge=1)

    @field_validator("delimiter", "quote_char", "escape_char", mode="before")
    def validate_single_char(cls, value: Optional[str]) -> Optional[str]:
        """Dialect characters are single characters; ``\\t`` is accepted for tab."""
        if value is None or value == "":
            return None
        if value == "\\t":
            return "\t"
        if len(value) != 1:
            raise ValueError("must be a single character")
        return value

    @field_validator("charset", mode="before")
    def validate_charset(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("duplicate_handling", mode="before")
    def normalize_duplicate_handling(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("error_handling", mode="before")
    def normalize_error_handling(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class DialectInfo(BaseModel):
    encoding: str
    delimiter: str
    quote_char: str
    escape_char: str
    headers: List[str]
    estimated_lines: int
    file_size: int
    sample_lines: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    has_headers: bool = True


class AnalyzeResponse(BaseModel):
    """Result of sniffing an uploaded file before import."""
    success: bool
    file_name: str
    file_hash: str
    entity_type: str
    headers: List[str]
    dialect: Optional[DialectInfo] = None
    suggested_mapping: Dict[str, str] = Field(default_factory=dict)
    estimated_rows: int = 0


class ImportStartResponse(BaseModel):
    success: bool
    operation_id: str
    status: str
    message: str


class ImportOperationInfo(BaseModel):
    """Status and summary of one import operation."""
    id: str
    client_id: int
    file_name: Optional[str] = None
    file_hash: Optional[str] = None
    entity_type: str
    duplicate_handling: Optional[str] = None
    status: str
    total_records: int = 0
    processed_records: int = 0
    progress: int = 0
    success_records: int = 0
    failed_records: int = 0
    skipped_records: int = 0
    errors: List[str] = Field(default_factory=list)
    truncated_error_count: int = 0
    error_message: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportStatusResponse(BaseModel):
    success: bool
    operation: ImportOperationInfo


class ImportListResponse(BaseModel):
    success: bool
    operations: List[ImportOperationInfo]
    total_count: int
    limit: int
    offset: int


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class CancelResponse(BaseModel):
    success: bool
    operation_id: str
    status: str
    message: str


class FieldInfo(BaseModel):
    name: str
    display_name: str
    type: str
    required: bool = False


class EntityFieldsResponse(BaseModel):
    entity_type: str
    fields: List[FieldInfo]
