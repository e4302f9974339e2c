import codecs
import io

import pytest

from price_import.domain.imports.dialect import (
    analyze_dialect,
    detect_delimiter,
    detect_encoding,
    detect_escape_char,
    detect_quote_char,
    estimate_line_count,
    parse_delimited_line,
)
from price_import.domain.imports.errors import EmptyFileError


def test_detects_semicolon_with_comma_decimals():
    lines = [
        "ID товара;Город;Цена в регионе",
        "A1;North;10,50",
        "A1;South;20,00",
    ]
    assert detect_delimiter(lines) == ";"


def test_delimiter_detection_is_stable():
    lines = ["a|b|c", "1|2|3", "4|5|6"]
    assert detect_delimiter(lines) == detect_delimiter(lines) == "|"


def test_delimiter_defaults_to_comma_without_candidates():
    assert detect_delimiter(["single", "column"]) == ","


def test_tab_delimiter():
    assert detect_delimiter(["a\tb\tc", "1\t2\t3"]) == "\t"


def test_quote_and_escape_detection():
    lines = ['"name","note"', '"A","say ""hi"""']
    assert detect_quote_char(lines, ",") == '"'
    assert detect_escape_char(lines, '"') == '"'

    backslashed = ['"name","note"', '"A","say \\"hi\\" ok"']
    assert detect_escape_char(backslashed, '"') == "\\"


def test_single_quote_detected():
    lines = ["'a';'b'", "'1';'2'"]
    assert detect_quote_char(lines, ";") == "'"


def test_parse_line_with_doubled_quotes():
    fields = parse_delimited_line('"A, B","say ""hi""", plain ', ",", '"', '"')
    assert fields == ["A, B", 'say "hi"', "plain"]


def test_parse_line_with_backslash_escape():
    fields = parse_delimited_line('"x \\"y\\"";2', ";", '"', "\\")
    assert fields == ['x "y"', "2"]


def test_utf8_bom_detected():
    raw = codecs.BOM_UTF8 + "ID товара;Модель\n".encode("utf-8")
    assert detect_encoding(raw) == "utf-8-sig"


def test_ascii_reported_as_utf8():
    assert detect_encoding(b"id,name\n1,widget\n") == "utf-8"


def test_analyze_dialect_reads_headers():
    content = "ID товара;Модель;Цена\nA1;Phone;10,50\nA2;Tablet;20,00\n".encode("utf-8")

    dialect = analyze_dialect(content)

    assert dialect.delimiter == ";"
    assert dialect.quote_char == '"'
    assert dialect.headers == ["ID товара", "Модель", "Цена"]
    assert len(dialect.headers) == dialect.sample_lines[0].count(";") + 1
    assert dialect.estimated_lines >= 0
    assert dialect.file_size == len(content)


def test_analyze_dialect_accepts_stream_and_rewinds():
    stream = io.BytesIO(b"a,b\n1,2\n")
    dialect = analyze_dialect(stream)
    assert dialect.headers == ["a", "b"]
    assert stream.tell() == 0


def test_analyze_dialect_ignores_partial_last_line_of_sample():
    content = ("a;b\n" + "1;2\n" * 200).encode("utf-8")
    dialect = analyze_dialect(content, sample_bytes=30)
    assert all(line in ("a;b", "1;2") for line in dialect.sample_lines)
    assert dialect.estimated_lines > 5


def test_empty_or_blank_file_raises():
    with pytest.raises(EmptyFileError):
        analyze_dialect(b"")
    with pytest.raises(EmptyFileError):
        analyze_dialect(b"\n  \n\n")


def test_estimate_line_count():
    lines = ["abcd", "efgh"]
    # 4 bytes per line plus 2 for the terminator
    assert estimate_line_count(lines, "utf-8", 60) == 10
    assert estimate_line_count([], "utf-8", 60) == 0


def test_overrides_warn_on_mismatch():
    dialect = analyze_dialect(b"a;b\n1;2\n")

    forced = dialect.with_overrides(delimiter=",", encoding="windows-1251")

    assert forced.delimiter == ","
    assert forced.encoding == "cp1251"
    assert forced.headers == ["a;b"]
    assert len(forced.warnings) == 2
    assert dialect.warnings == []


def test_matching_overrides_are_silent():
    dialect = analyze_dialect(b"a;b\n1;2\n")
    assert dialect.with_overrides(delimiter=";", encoding="utf-8") is dialect
