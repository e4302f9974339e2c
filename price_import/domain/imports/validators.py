"""
Pre-import checks on the uploaded file itself.
"""
import hashlib
import logging
import os
from typing import List, Optional

from price_import.core.config import settings
from price_import.domain.imports.errors import EmptyFileError, UnsupportedFileError

logger = logging.getLogger(__name__)

EXCEL_EXTENSIONS = {"xls", "xlsx"}


def calculate_file_hash(file_content: bytes) -> str:
    """Calculate SHA-256 hash of file content for audit and duplicate detection."""
    return hashlib.sha256(file_content).hexdigest()


def file_extension(file_name: Optional[str]) -> str:
    if not file_name:
        return ""
    return os.path.splitext(file_name)[1].lstrip(".").lower()


def is_excel(file_name: Optional[str]) -> bool:
    return file_extension(file_name) in EXCEL_EXTENSIONS


def validate_upload(
    file_name: Optional[str],
    file_content: bytes,
    allowed_extensions: Optional[List[str]] = None,
    max_size_mb: Optional[int] = None,
) -> None:
    """
    Reject files that cannot be imported before an operation is created.

    Args:
        file_name: Original file name (the extension decides the reader)
        file_content: Raw file bytes
        allowed_extensions: Accepted extensions (defaults to settings)
        max_size_mb: Size limit in megabytes (defaults to settings)

    Raises:
        EmptyFileError: If the file has no content
        UnsupportedFileError: If the name is missing, the extension is not
            accepted, or the file is too large
    """
    allowed = [ext.lower() for ext in (allowed_extensions or settings.import_allowed_extensions)]
    limit_mb = max_size_mb or settings.import_max_file_size_mb

    if not file_content:
        raise EmptyFileError(file_name)
    if not file_name or not file_name.strip():
        raise UnsupportedFileError("File name is missing")

    extension = file_extension(file_name)
    if extension not in allowed:
        raise UnsupportedFileError(
            f"Unsupported file type '.{extension}'. Allowed: {', '.join(sorted(allowed))}"
        )

    size_mb = len(file_content) / (1024 * 1024)
    if size_mb > limit_mb:
        raise UnsupportedFileError(f"File is too large ({size_mb:.1f} MB). Maximum size is {limit_mb} MB")

    logger.debug("Upload %s passed validation (%.2f MB)", file_name, size_mb)
