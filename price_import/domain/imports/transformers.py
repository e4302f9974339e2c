"""
String <-> typed value converters used when filling entities from file cells.

Every transformer follows the same contract:

    transform(raw, params)     -> typed value or None
    can_transform(raw, params) -> bool
    to_string(value, params)   -> str

``params`` is a flat ``key=value`` list joined by ``|`` (for example
``pattern=dd.MM.yyyy|default=01.01.2000``). Transformation failures are
logged and turn into ``None``; they never raise, so one bad cell cannot
abort a whole row.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

logger = logging.getLogger(__name__)

DATE_PATTERNS = ["dd.MM.yyyy", "yyyy-MM-dd", "MM/dd/yyyy", "dd/MM/yyyy", "yyyy/MM/dd"]
TIME_PATTERNS = ["HH:mm:ss", "HH:mm", "hh:mm:ss a", "hh:mm a"]
DATETIME_PATTERNS = [
    "dd.MM.yyyy HH:mm:ss",
    "yyyy-MM-dd HH:mm:ss",
    "dd.MM.yyyy HH:mm",
    "yyyy-MM-dd HH:mm",
    "dd/MM/yyyy HH:mm:ss",
    "MM/dd/yyyy HH:mm:ss",
]

TRUE_VALUES = {"true", "yes", "y", "1", "да", "д", "истина", "вкл", "on", "включено"}
FALSE_VALUES = {"false", "no", "n", "0", "нет", "н", "ложь", "выкл", "off", "выключено"}

# Locales whose decimal separator is a comma.
COMMA_DECIMAL_LANGUAGES = {"ru", "be", "uk", "kk", "de", "fr", "es", "it", "pl", "cs", "pt", "nl"}

_DATE_TOKENS = {
    "yyyy": "%Y",
    "yy": "%y",
    "MM": "%m",
    "dd": "%d",
    "HH": "%H",
    "hh": "%I",
    "mm": "%M",
    "ss": "%S",
    "SSS": "%f",
    "a": "%p",
}
_DATE_TOKEN_RE = re.compile(r"yyyy|yy|MM|dd|HH|hh|mm|ss|SSS|a")


def parse_params(params: Optional[str]) -> Dict[str, str]:
    """
    Parse a ``key=value|key2=value2`` parameter string.

    Only the first ``=`` separates key from value, so values such as
    ``mapping=a=A,b=B`` survive intact.
    """
    result: Dict[str, str] = {}
    if not params:
        return result
    for part in params.split("|"):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        key = key.strip()
        if key:
            result[key] = value.strip()
    return result


def merge_params(*param_strings: Optional[str]) -> str:
    """Combine parameter strings; later strings override earlier keys."""
    merged: Dict[str, str] = {}
    for params in param_strings:
        merged.update(parse_params(params))
    return "|".join(f"{key}={value}" for key, value in merged.items())


def pattern_to_strftime(pattern: str) -> str:
    """Translate a ``dd.MM.yyyy HH:mm`` style pattern into strptime directives."""
    if "%" in pattern:
        return pattern
    converted = _DATE_TOKEN_RE.sub(lambda match: _DATE_TOKENS[match.group(0)], pattern)
    return converted.replace("'", "")


class ValueTransformer:
    """Base class handling blank input, defaults and failure logging."""

    type_key = "string"
    python_type: Optional[type] = None

    def transform(self, value: Optional[str], params: Optional[str] = None) -> Any:
        options = parse_params(params)
        if value is None or str(value).strip() == "":
            default = options.get("default")
            if default is None or default.strip() == "":
                return None
            value = default
        try:
            return self.parse(str(value), options)
        except (ValueError, TypeError, OverflowError, InvalidOperation, LookupError) as e:
            logger.debug("Cannot convert %r to %s: %s", value, self.type_key, e)
            return None

    def can_transform(self, value: Optional[str], params: Optional[str] = None) -> bool:
        if value is None or str(value).strip() == "":
            return True
        return self.transform(value, params) is not None

    def to_string(self, value: Any, params: Optional[str] = None) -> str:
        if value is None:
            return ""
        return self.format(value, parse_params(params))

    def parse(self, value: str, options: Dict[str, str]) -> Any:
        raise NotImplementedError

    def format(self, value: Any, options: Dict[str, str]) -> str:
        return str(value)


class StringTransformer(ValueTransformer):
    type_key = "string"
    python_type = str

    def parse(self, value: str, options: Dict[str, str]) -> str:
        if options.get("trim", "true").lower() == "false":
            return value
        return value.strip()


def _uses_comma_decimal(options: Dict[str, str]) -> bool:
    locale_name = options.get("locale", "")
    language = re.split(r"[_-]", locale_name)[0].lower() if locale_name else ""
    return language in COMMA_DECIMAL_LANGUAGES


def normalize_number(value: str, options: Optional[Dict[str, str]] = None) -> str:
    """
    Normalize a human-written number to ``1234.56`` form.

    Spaces (including non-breaking) are treated as grouping. A comma is the
    decimal separator when the locale says so, when it is the only separator
    present, or when it comes after the last dot.
    """
    options = options or {}
    cleaned = value.strip().replace("\u00a0", "").replace("\u202f", "").replace(" ", "")
    if _uses_comma_decimal(options):
        return cleaned.replace(".", "").replace(",", ".")
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            return cleaned.replace(".", "").replace(",", ".")
        return cleaned.replace(",", "")
    if "," in cleaned:
        return cleaned.replace(",", ".")
    return cleaned


def _output_decimal_separator(options: Dict[str, str]) -> str:
    if options.get("decimal"):
        return options["decimal"]
    return "," if _uses_comma_decimal(options) else "."


class IntegerTransformer(ValueTransformer):
    type_key = "integer"
    python_type = int

    def parse(self, value: str, options: Dict[str, str]) -> int:
        number = Decimal(normalize_number(value, options))
        if number != number.to_integral_value():
            raise ValueError(f"{value!r} is not a whole number")
        return int(number)

    def format(self, value: Any, options: Dict[str, str]) -> str:
        return str(int(value))


class DoubleTransformer(ValueTransformer):
    type_key = "double"
    python_type = float

    def parse(self, value: str, options: Dict[str, str]) -> float:
        number = float(Decimal(normalize_number(value, options)))
        if number != number or number in (float("inf"), float("-inf")):
            raise ValueError(f"{value!r} is not a finite number")
        return number

    def format(self, value: Any, options: Dict[str, str]) -> str:
        pattern = options.get("pattern", "")
        if "." in pattern:
            decimals = len(pattern.split(".", 1)[1])
            text = f"{float(value):.{decimals}f}"
        else:
            text = repr(float(value))
        return text.replace(".", _output_decimal_separator(options))


class BooleanTransformer(ValueTransformer):
    type_key = "boolean"
    python_type = bool

    def parse(self, value: str, options: Dict[str, str]) -> bool:
        lowered = value.strip().lower()
        if options.get("true") and lowered == options["true"].lower():
            return True
        if options.get("false") and lowered == options["false"].lower():
            return False
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise ValueError(f"{value!r} is not a recognised boolean")

    def format(self, value: Any, options: Dict[str, str]) -> str:
        if value:
            return options.get("true", "true")
        return options.get("false", "false")


class _PatternTransformer(ValueTransformer):
    """Shared logic for date, time and datetime parsing against ordered patterns."""

    default_patterns: List[str] = []

    def _patterns(self, options: Dict[str, str]) -> List[str]:
        patterns = list(self.default_patterns)
        if options.get("pattern"):
            patterns.insert(0, options["pattern"])
        return patterns

    def _convert(self, parsed: datetime) -> Any:
        return parsed

    def _iso_fallback(self, value: str) -> Any:
        raise ValueError(f"{value!r} does not match any known {self.type_key} pattern")

    def parse(self, value: str, options: Dict[str, str]) -> Any:
        text = value.strip()
        for pattern in self._patterns(options):
            try:
                return self._convert(datetime.strptime(text, pattern_to_strftime(pattern)))
            except ValueError:
                continue
        return self._iso_fallback(text)

    def format(self, value: Any, options: Dict[str, str]) -> str:
        pattern = options.get("pattern") or self.default_patterns[0]
        return value.strftime(pattern_to_strftime(pattern))


class DateTransformer(_PatternTransformer):
    type_key = "date"
    python_type = date
    default_patterns = DATE_PATTERNS

    def _convert(self, parsed: datetime) -> date:
        return parsed.date()


class TimeTransformer(_PatternTransformer):
    type_key = "time"
    python_type = time
    default_patterns = TIME_PATTERNS

    def _convert(self, parsed: datetime) -> time:
        return parsed.time()


class DateTimeTransformer(_PatternTransformer):
    type_key = "datetime"
    python_type = datetime
    default_patterns = DATETIME_PATTERNS

    def _iso_fallback(self, value: str) -> datetime:
        return datetime.fromisoformat(value)


class EnumTransformer(ValueTransformer):
    """
    Single transformer for every enumeration.

    The concrete enum is named by the ``class=`` parameter. Only enums added
    with :meth:`register` resolve, by short name or by dotted path. An optional
    ``mapping=alias=MEMBER,alias2=MEMBER2`` table translates file values
    (matched case-insensitively) into member names.
    """

    type_key = "enum"
    python_type = Enum

    def __init__(self):
        self._enum_types: Dict[str, Type[Enum]] = {}

    def register(self, enum_cls: Type[Enum]) -> None:
        self._enum_types[enum_cls.__name__] = enum_cls
        self._enum_types[f"{enum_cls.__module__}.{enum_cls.__qualname__}"] = enum_cls

    def resolve(self, class_name: Optional[str]) -> Type[Enum]:
        if not class_name:
            raise LookupError("Enum transformer requires a class= parameter")
        enum_cls = self._enum_types.get(class_name)
        if enum_cls is None:
            raise LookupError(f"Unknown enum type '{class_name}'")
        return enum_cls

    @staticmethod
    def _alias_table(options: Dict[str, str]) -> Dict[str, str]:
        table: Dict[str, str] = {}
        for pair in options.get("mapping", "").split(","):
            if "=" not in pair:
                continue
            alias, member = pair.split("=", 1)
            table[alias.strip().lower()] = member.strip()
        return table

    def parse(self, value: str, options: Dict[str, str]) -> Enum:
        enum_cls = self.resolve(options.get("class"))
        text = value.strip()
        text = self._alias_table(options).get(text.lower(), text)
        for member in enum_cls:
            if member.name.lower() == text.lower() or str(member.value).lower() == text.lower():
                return member
        raise ValueError(f"{value!r} is not a member of {enum_cls.__name__}")

    def format(self, value: Any, options: Dict[str, str]) -> str:
        name = value.name if isinstance(value, Enum) else str(value)
        for alias, member in self._alias_table(options).items():
            if member == name:
                return alias
        return name


class TransformerRegistry:
    """Type-keyed table of transformers; unknown types fall back to strings."""

    def __init__(self):
        self._transformers: Dict[str, ValueTransformer] = {}
        self._fallback: ValueTransformer = StringTransformer()

    def register(self, transformer: ValueTransformer, *aliases: str) -> None:
        for key in (transformer.type_key,) + aliases:
            self._transformers[key.lower()] = transformer

    def get(self, type_key: Optional[str]) -> ValueTransformer:
        if not type_key:
            return self._fallback
        return self._transformers.get(type_key.lower(), self._fallback)

    def has(self, type_key: str) -> bool:
        return type_key.lower() in self._transformers

    @property
    def enums(self) -> EnumTransformer:
        transformer = self._transformers.get("enum")
        if not isinstance(transformer, EnumTransformer):
            raise LookupError("No enum transformer registered")
        return transformer

    def register_enum(self, enum_cls: Type[Enum]) -> None:
        self.enums.register(enum_cls)

    def transform(self, type_key: str, value: Optional[str], params: Optional[str] = None) -> Any:
        return self.get(type_key).transform(value, params)

    def can_transform(self, type_key: str, value: Optional[str], params: Optional[str] = None) -> bool:
        return self.get(type_key).can_transform(value, params)

    def to_string(self, type_key: str, value: Any, params: Optional[str] = None) -> str:
        return self.get(type_key).to_string(value, params)


_DEFAULT_FACTORIES: List[Callable[[], ValueTransformer]] = [
    StringTransformer,
    IntegerTransformer,
    DoubleTransformer,
    BooleanTransformer,
    DateTransformer,
    TimeTransformer,
    DateTimeTransformer,
    EnumTransformer,
]

_ALIASES = {
    "string": ("str", "text"),
    "integer": ("int", "long"),
    "double": ("float", "decimal", "number"),
    "boolean": ("bool",),
    "datetime": ("localdatetime", "timestamp"),
}


def build_default_registry() -> TransformerRegistry:
    registry = TransformerRegistry()
    for factory in _DEFAULT_FACTORIES:
        transformer = factory()
        registry.register(transformer, *_ALIASES.get(transformer.type_key, ()))
    return registry


default_registry = build_default_registry()
