import sys
from datetime import date, datetime, time
from enum import Enum

from price_import.domain.imports.entities import DataSourceType
from price_import.domain.imports.transformers import (
    TransformerRegistry,
    build_default_registry,
    default_registry,
    pattern_to_strftime,
    merge_params,
    parse_params,
)


class StockStatus(Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"


def test_parse_params_keeps_values_with_equals():
    params = parse_params("class=DataSourceType|mapping=файл=FILE,отчет=REPORT")
    assert params == {"class": "DataSourceType", "mapping": "файл=FILE,отчет=REPORT"}


def test_merge_params_later_wins():
    assert parse_params(merge_params("pattern=0.00|decimal=.", "decimal=,")) == {
        "pattern": "0.00",
        "decimal": ",",
    }


def test_date_patterns_translate():
    assert pattern_to_strftime("dd.MM.yyyy HH:mm") == "%d.%m.%Y %H:%M"


def test_blank_values_and_defaults():
    assert default_registry.transform("integer", "") is None
    assert default_registry.transform("integer", "   ") is None
    assert default_registry.transform("integer", None, "default=7") == 7


def test_numbers_with_comma_decimals_and_grouping():
    assert default_registry.transform("double", "10,50") == 10.5
    assert default_registry.transform("double", "1 234,56") == 1234.56
    assert default_registry.transform("double", "1,234.56") == 1234.56
    assert default_registry.transform("double", "1.234,56") == 1234.56
    assert default_registry.transform("double", "1.234", "locale=ru") == 1234.0
    assert default_registry.transform("integer", "1 000") == 1000
    assert default_registry.transform("integer", "12.5") is None


def test_invalid_values_return_none_instead_of_raising():
    assert default_registry.transform("double", "abc") is None
    assert default_registry.transform("date", "31.02.2024") is None
    assert default_registry.transform("boolean", "maybe") is None
    assert default_registry.can_transform("double", "abc") is False
    assert default_registry.can_transform("double", "") is True


def test_booleans():
    assert default_registry.transform("boolean", "Да") is True
    assert default_registry.transform("boolean", "выкл") is False
    assert default_registry.transform("boolean", "есть", "true=есть") is True
    assert default_registry.to_string("boolean", True, "true=да|false=нет") == "да"


def test_dates_and_times():
    assert default_registry.transform("date", "05.03.2024") == date(2024, 3, 5)
    assert default_registry.transform("date", "2024-03-05") == date(2024, 3, 5)
    assert default_registry.transform("date", "03/05/2024", "pattern=MM/dd/yyyy") == date(2024, 3, 5)
    assert default_registry.transform("time", "14:30") == time(14, 30)
    assert default_registry.transform("time", "02:30 PM") == time(14, 30)
    assert default_registry.transform("datetime", "05.03.2024 14:30:15") == datetime(2024, 3, 5, 14, 30, 15)
    assert default_registry.transform("datetime", "2024-03-05T14:30:15") == datetime(2024, 3, 5, 14, 30, 15)


def test_round_trips():
    cases = [
        ("integer", 1234, ""),
        ("double", 10.5, "decimal=,"),
        ("double", 20.0, "pattern=0.00"),
        ("boolean", False, ""),
        ("date", date(2024, 12, 31), ""),
        ("time", time(8, 5, 9), ""),
        ("datetime", datetime(2024, 1, 2, 3, 4, 5), ""),
    ]
    for type_key, value, params in cases:
        text = default_registry.to_string(type_key, value, params)
        assert default_registry.transform(type_key, text, params) == value


def test_double_formatting():
    assert default_registry.to_string("double", 10.5, "pattern=0.00|decimal=,") == "10,50"
    assert default_registry.to_string("double", 3.25, "locale=ru") == "3,25"


def test_enum_by_registered_name_and_alias():
    params = "class=DataSourceType|mapping=файл=FILE,задание=TASK"
    assert default_registry.transform("enum", "Файл", params) is DataSourceType.FILE
    assert default_registry.transform("enum", "report", params) is DataSourceType.REPORT
    assert default_registry.to_string("enum", DataSourceType.TASK, params) == "задание"


def test_registered_enum_by_dotted_path():
    registry = build_default_registry()
    registry.register_enum(StockStatus)
    params = f"class={StockStatus.__module__}.StockStatus"
    assert registry.transform("enum", "in_stock", params) is StockStatus.IN_STOCK
    assert registry.transform("enum", "OUT_OF_STOCK", params) is StockStatus.OUT_OF_STOCK


def test_unregistered_enum_path_is_not_imported(monkeypatch):
    monkeypatch.delitem(sys.modules, "smtplib", raising=False)
    params = f"class={StockStatus.__module__}.StockStatus"

    assert default_registry.transform("enum", "x", "class=smtplib.SMTP") is None
    assert default_registry.transform("enum", "in_stock", params) is None
    assert "smtplib" not in sys.modules


def test_enum_without_class_fails_softly():
    assert default_registry.transform("enum", "FILE") is None
    assert default_registry.transform("enum", "FILE", "class=NoSuchEnum") is None


def test_aliases_and_unknown_types():
    registry = build_default_registry()
    assert registry.get("long") is registry.get("integer")
    assert registry.get("float") is registry.get("double")
    assert registry.transform("no-such-type", "  kept  ") == "kept"
    assert registry.transform("string", "  kept  ", "trim=false") == "  kept  "


def test_registry_accepts_custom_transformers():
    from price_import.domain.imports.transformers import ValueTransformer

    class UpperTransformer(ValueTransformer):
        type_key = "upper"

        def parse(self, value, options):
            return value.strip().upper()

    registry = TransformerRegistry()
    registry.register(UpperTransformer(), "caps")
    assert registry.transform("caps", " abc ") == "ABC"
