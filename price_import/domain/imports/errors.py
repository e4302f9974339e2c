"""
Exceptions raised by the import pipeline before or between row processing.

Row-level problems never raise; they are collected as messages and counted
as failed rows. Only setup problems that make the whole file unusable, and
misuse of the operation lifecycle, surface as exceptions.
"""
from typing import List, Optional


class ImportPipelineError(Exception):
    """Base class for fatal import errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class EmptyFileError(ImportPipelineError):
    """Raised when a file has no parseable lines."""

    def __init__(self, file_name: Optional[str] = None, message: str = None):
        self.file_name = file_name
        super().__init__(message or "File is empty or unreadable")


class UnsupportedFileError(ImportPipelineError):
    """Raised when a file fails the pre-import checks (name, extension, size)."""


class UnsupportedEntityTypeError(ImportPipelineError):
    def __init__(self, entity_type: str, message: str = None):
        self.entity_type = entity_type
        super().__init__(message or f"Unsupported entity type '{entity_type}'")


class MappingValidationError(ImportPipelineError):
    """Raised when a field mapping is unusable, e.g. a required field has no header."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None):
        self.missing_fields = list(missing_fields or [])
        super().__init__(message)


class OperationNotFoundError(ImportPipelineError):
    def __init__(self, operation_id: str, message: str = None):
        self.operation_id = operation_id
        super().__init__(message or f"Import operation '{operation_id}' not found")


class InvalidStateTransitionError(ImportPipelineError):
    """Raised when an operation cannot move to the requested status."""

    def __init__(self, operation_id: str, current: str, requested: str, message: str = None):
        self.operation_id = operation_id
        self.current = current
        self.requested = requested
        super().__init__(
            message
            or f"Import operation '{operation_id}' cannot move from {current} to {requested}"
        )
