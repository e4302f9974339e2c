"""
Delimited-text dialect detection.

Sniffs encoding, delimiter, quote and escape characters plus the header row
from a small byte sample, so the row reader can stream the rest of the file
without guessing again.
"""
from __future__ import annotations

import codecs
import io
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, BinaryIO, Dict, List, Optional, Union

import chardet

from price_import.core.config import settings
from price_import.domain.imports.errors import EmptyFileError

logger = logging.getLogger(__name__)

DELIMITER_CANDIDATES = [",", ";", "\t", "|", ":"]
QUOTE_CANDIDATES = ['"', "'"]
FALLBACK_ENCODINGS = ["utf-8", "windows-1251", "iso-8859-1"]
DEFAULT_ENCODING = "utf-8"
DEFAULT_DELIMITER = ","
DEFAULT_QUOTE_CHAR = '"'
BACKSLASH = "\\"
REPLACEMENT_CHAR = "\ufffd"
SAMPLE_LINES_KEPT = 5

ByteSource = Union[bytes, bytearray, BinaryIO]


@dataclass
class DialectDescriptor:
    """Everything the reader needs to tokenize a delimited file."""

    encoding: str
    delimiter: str
    quote_char: str
    escape_char: str
    headers: List[str]
    estimated_lines: int
    file_size: int
    sample_lines: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    has_headers: bool = True

    @property
    def doublequote(self) -> bool:
        """True when quotes inside quoted fields are escaped by doubling them."""
        return self.escape_char == self.quote_char

    def with_overrides(
        self,
        encoding: Optional[str] = None,
        delimiter: Optional[str] = None,
        quote_char: Optional[str] = None,
        escape_char: Optional[str] = None,
    ) -> "DialectDescriptor":
        """
        Return a copy using caller-forced dialect settings.

        Forced values always win. A forced encoding or delimiter that differs
        from the detected one is kept but reported as a warning, because it
        usually means the caller's configuration does not match the file.
        """
        warnings = list(self.warnings)
        updates: Dict[str, Any] = {}

        if encoding and _normalize_encoding(encoding) != self.encoding:
            warnings.append(
                f"Configured encoding '{encoding}' differs from detected encoding '{self.encoding}'"
            )
            updates["encoding"] = _normalize_encoding(encoding) or encoding
        if delimiter and delimiter != self.delimiter:
            warnings.append(
                f"Configured delimiter {delimiter!r} differs from detected delimiter {self.delimiter!r}"
            )
            updates["delimiter"] = delimiter
        if quote_char and quote_char != self.quote_char:
            updates["quote_char"] = quote_char
        if escape_char and escape_char != self.escape_char:
            updates["escape_char"] = escape_char

        if not updates:
            return self

        updated = replace(self, warnings=warnings, **updates)
        if updated.sample_lines and ("delimiter" in updates or "quote_char" in updates or "escape_char" in updates):
            updated.headers = parse_delimited_line(
                updated.sample_lines[0], updated.delimiter, updated.quote_char, updated.escape_char
            )
        return updated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encoding": self.encoding,
            "delimiter": self.delimiter,
            "quote_char": self.quote_char,
            "escape_char": self.escape_char,
            "headers": list(self.headers),
            "estimated_lines": self.estimated_lines,
            "file_size": self.file_size,
            "sample_lines": list(self.sample_lines),
            "warnings": list(self.warnings),
            "has_headers": self.has_headers,
        }


def _normalize_encoding(name: Optional[str]) -> Optional[str]:
    """Return the canonical codec name, or None when Python has no such codec."""
    if not name:
        return None
    try:
        return codecs.lookup(name).name
    except LookupError:
        return None


def _read_sample(source: ByteSource, sample_bytes: int) -> tuple:
    """Read up to ``sample_bytes`` from the start of the source and report the total size."""
    if isinstance(source, (bytes, bytearray)):
        return bytes(source[:sample_bytes]), len(source)

    source.seek(0, io.SEEK_END)
    file_size = source.tell()
    source.seek(0)
    raw = source.read(sample_bytes)
    source.seek(0)
    return raw, file_size


def _first_line(text: str) -> str:
    lines = text.splitlines()
    return lines[0] if lines else ""


def detect_encoding(raw: bytes) -> str:
    """
    Detect the character encoding of a raw byte sample.

    The frequency-based detector is consulted first. When it cannot decide,
    names an encoding Python does not support, or produces replacement
    characters in the first line, a fixed candidate list is tried in order.

    Args:
        raw: Raw bytes from the start of the file

    Returns:
        Canonical Python codec name
    """
    if raw.startswith(codecs.BOM_UTF8):
        return "utf-8-sig"

    detected = chardet.detect(raw) if raw else {}
    candidate = _normalize_encoding(detected.get("encoding"))
    if candidate == "ascii":
        # ASCII samples are valid UTF-8 and later rows may not stay ASCII.
        candidate = DEFAULT_ENCODING
    if candidate:
        decoded = raw.decode(candidate, errors="replace")
        if REPLACEMENT_CHAR not in _first_line(decoded):
            logger.debug("Charset detector chose %s (confidence %s)", candidate, detected.get("confidence"))
            return candidate
        logger.debug("Detected charset %s produced replacement characters; trying fallbacks", candidate)

    for encoding in FALLBACK_ENCODINGS:
        decoded = raw.decode(encoding, errors="replace")
        if REPLACEMENT_CHAR not in _first_line(decoded):
            return _normalize_encoding(encoding)

    return DEFAULT_ENCODING


def detect_delimiter(lines: List[str]) -> str:
    """
    Pick the delimiter whose occurrences are the most frequent and consistent.

    Each candidate scores ``total_occurrences * 10 + consistent_lines`` where a
    line is consistent when it holds as many occurrences as the first line.
    Ties keep the earlier candidate.
    """
    best_delimiter = DEFAULT_DELIMITER
    best_score = 0

    for candidate in DELIMITER_CANDIDATES:
        counts = [line.count(candidate) for line in lines]
        total = sum(counts)
        if total == 0:
            continue
        expected = counts[0]
        consistent = sum(1 for count in counts if count == expected)
        score = total * 10 + consistent
        if score > best_score:
            best_score = score
            best_delimiter = candidate

    return best_delimiter


def detect_quote_char(lines: List[str], delimiter: str) -> str:
    for candidate in QUOTE_CANDIDATES:
        for line in lines:
            for part in line.split(delimiter):
                token = part.strip()
                if len(token) >= 2 and token.startswith(candidate) and token.endswith(candidate):
                    return candidate
    return DEFAULT_QUOTE_CHAR


def detect_escape_char(lines: List[str], quote_char: str) -> str:
    doubled = quote_char * 2
    if any(doubled in line for line in lines):
        return quote_char
    if any(BACKSLASH + quote_char in line for line in lines):
        return BACKSLASH
    return quote_char


def parse_delimited_line(line: str, delimiter: str, quote_char: str, escape_char: str) -> List[str]:
    """
    Split one line into trimmed fields, honouring quotes and escapes.

    Args:
        line: A single line of text without the line terminator
        delimiter: Field separator
        quote_char: Character that opens and closes quoted fields
        escape_char: Either the quote character (doubled-quote escaping) or a backslash

    Returns:
        List of field values
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    length = len(line)

    while i < length:
        ch = line[i]
        nxt = line[i + 1] if i + 1 < length else None

        if in_quotes:
            if escape_char != quote_char and ch == escape_char and nxt in (quote_char, escape_char):
                current.append(nxt)
                i += 2
                continue
            if ch == quote_char:
                if nxt == quote_char:
                    current.append(quote_char)
                    i += 2
                    continue
                in_quotes = False
            else:
                current.append(ch)
        elif ch == quote_char:
            in_quotes = True
        elif ch == delimiter:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1

    fields.append("".join(current).strip())
    return fields


def estimate_line_count(lines: List[str], encoding: str, file_size: int) -> int:
    if not lines or file_size <= 0:
        return 0
    total_bytes = sum(len(line.encode(encoding, errors="replace")) for line in lines)
    average = total_bytes / len(lines)
    return int(math.floor(file_size / (average + 2) + 0.5))


def analyze_dialect(
    source: ByteSource,
    sample_bytes: Optional[int] = None,
    max_lines: Optional[int] = None,
) -> DialectDescriptor:
    """
    Analyze the start of a delimited text file.

    Args:
        source: Raw file bytes or a seekable binary stream (rewound afterwards)
        sample_bytes: Sample budget in bytes (defaults to settings)
        max_lines: Maximum number of non-empty lines to inspect (defaults to settings)

    Returns:
        DialectDescriptor for the file

    Raises:
        EmptyFileError: If the sample contains no non-empty line
    """
    sample_bytes = sample_bytes or settings.dialect_sample_bytes
    max_lines = max_lines or settings.dialect_sample_lines

    raw, file_size = _read_sample(source, sample_bytes)
    if not raw:
        raise EmptyFileError()

    encoding = detect_encoding(raw)
    text = raw.decode(encoding, errors="replace")
    all_lines = text.splitlines()
    if file_size > len(raw) and len(all_lines) > 1:
        # The sample ends mid-line; the last fragment would skew the counts.
        all_lines = all_lines[:-1]

    lines = [line for line in all_lines if line.strip()][:max_lines]
    if not lines:
        raise EmptyFileError()

    delimiter = detect_delimiter(lines)
    quote_char = detect_quote_char(lines, delimiter)
    escape_char = detect_escape_char(lines, quote_char)
    headers = parse_delimited_line(lines[0], delimiter, quote_char, escape_char)
    estimated_lines = estimate_line_count(lines, encoding, file_size)

    logger.info(
        "Detected dialect: encoding=%s delimiter=%r quote=%r escape=%r headers=%d estimated_lines=%d",
        encoding,
        delimiter,
        quote_char,
        escape_char,
        len(headers),
        estimated_lines,
    )

    return DialectDescriptor(
        encoding=encoding,
        delimiter=delimiter,
        quote_char=quote_char,
        escape_char=escape_char,
        headers=headers,
        estimated_lines=estimated_lines,
        file_size=file_size,
        sample_lines=lines[:SAMPLE_LINES_KEPT],
    )
