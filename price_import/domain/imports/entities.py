"""
Importable entity variants: the product (primary record) plus its regional
and competitor prices (dependent records).

Each variant declares its fields once in a ``FIELDS`` table. That table
drives mapping suggestion (display names), cell conversion (transformer
type and default params) and persistence (attribute names match the ORM
columns). Variants are resolved by :class:`EntityType` through
:func:`entity_class_for`, never by class name lookups.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import date, datetime, time
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

from price_import.domain.imports.errors import UnsupportedEntityTypeError
from price_import.domain.imports.transformers import (
    TransformerRegistry,
    default_registry,
    merge_params,
)

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    PRODUCT = "product"
    REGION = "region"
    COMPETITOR = "competitor"

    @property
    def prefix(self) -> str:
        return self.value


class DataSourceType(str, Enum):
    FILE = "FILE"
    TASK = "TASK"
    REPORT = "REPORT"


default_registry.register_enum(DataSourceType)


@dataclass(frozen=True)
class FieldSpec:
    """Declaration of one importable field."""

    name: str
    display_name: str
    type_key: str = "string"
    params: str = ""
    required: bool = False


def _is_blank(value: Optional[str]) -> bool:
    return value is None or str(value).strip() == ""


class ImportableEntity:
    """Behaviour shared by every importable variant."""

    ENTITY_TYPE: ClassVar[EntityType]
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = ()
    # Field that must be present for a dependent group to count as data.
    DISCRIMINATOR: ClassVar[Optional[str]] = None

    @classmethod
    def field_specs(cls) -> Dict[str, FieldSpec]:
        return {spec.name: spec for spec in cls.FIELDS}

    @classmethod
    def field_mappings(cls) -> Dict[str, str]:
        """Display name -> field name, in declaration order."""
        return {spec.display_name: spec.name for spec in cls.FIELDS}

    @classmethod
    def field_names(cls) -> List[str]:
        return [spec.name for spec in cls.FIELDS]

    @classmethod
    def required_fields(cls) -> List[str]:
        return [spec.name for spec in cls.FIELDS if spec.required]

    @classmethod
    def resolve_field(cls, key: str) -> Optional[str]:
        """Accept a field name or a display name (case-insensitive)."""
        specs = cls.field_specs()
        if key in specs:
            return key
        lowered = key.strip().lower()
        for spec in cls.FIELDS:
            if spec.display_name.lower() == lowered or spec.name.lower() == lowered:
                return spec.name
        return None

    def __post_init__(self):
        self.fill_errors: List[str] = []

    def fill_from_map(
        self,
        data: Dict[str, Optional[str]],
        registry: Optional[TransformerRegistry] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> bool:
        """
        Fill fields from raw cell values keyed by field or display name.

        Blank values are skipped. A value that cannot be converted leaves its
        field unset, is described in ``fill_errors`` and makes the call
        return False.

        Args:
            data: Raw values keyed by field name or display name
            registry: Transformer registry (defaults to the shared one)
            params: Per-field transformer params overriding the field defaults

        Returns:
            True when every non-blank value converted successfully
        """
        registry = registry or default_registry
        params = params or {}
        specs = self.field_specs()
        success = True

        for key, raw in data.items():
            if _is_blank(raw):
                continue
            name = self.resolve_field(key)
            if name is None:
                continue
            spec = specs[name]
            field_params = merge_params(spec.params, params.get(name))
            value = registry.transform(spec.type_key, raw, field_params)
            if value is None:
                self.fill_errors.append(
                    f"Cannot convert value '{raw}' of field '{spec.display_name}' to {spec.type_key}"
                )
                success = False
                continue
            setattr(self, name, value)

        return success

    def validate(self) -> Optional[str]:
        return None

    def has_discriminator(self) -> bool:
        if not self.DISCRIMINATOR:
            return True
        return not _is_blank(getattr(self, self.DISCRIMINATOR, None))

    def to_record(self) -> Dict[str, Any]:
        """Column values for persistence (storage ids excluded)."""
        record = {}
        for item in dataclass_fields(self):
            if item.name == "storage_id":
                continue
            value = getattr(self, item.name)
            if isinstance(value, Enum):
                value = value.value
            record[item.name] = value
        return record


@dataclass
class Product(ImportableEntity):
    ENTITY_TYPE: ClassVar[EntityType] = EntityType.PRODUCT
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        FieldSpec("product_id", "ID товара", required=True),
        FieldSpec("product_name", "Модель"),
        FieldSpec("product_brand", "Бренд"),
        FieldSpec("product_bar", "Штрихкод"),
        FieldSpec("product_description", "Описание"),
        FieldSpec("product_url", "Ссылка"),
        FieldSpec("product_category1", "Категория товара 1"),
        FieldSpec("product_category2", "Категория товара 2"),
        FieldSpec("product_category3", "Категория товара 3"),
        FieldSpec("product_price", "Цена", "double"),
        FieldSpec("product_analog", "Аналог"),
        FieldSpec("product_additional1", "Дополнительное поле 1"),
        FieldSpec("product_additional2", "Дополнительное поле 2"),
        FieldSpec("product_additional3", "Дополнительное поле 3"),
        FieldSpec("product_additional4", "Дополнительное поле 4"),
        FieldSpec("product_additional5", "Дополнительное поле 5"),
        FieldSpec(
            "data_source",
            "Источник",
            "enum",
            "class=DataSourceType|mapping=файл=FILE,задание=TASK,отчет=REPORT",
        ),
    )

    product_id: Optional[str] = None
    product_name: Optional[str] = None
    product_brand: Optional[str] = None
    product_bar: Optional[str] = None
    product_description: Optional[str] = None
    product_url: Optional[str] = None
    product_category1: Optional[str] = None
    product_category2: Optional[str] = None
    product_category3: Optional[str] = None
    product_price: Optional[float] = None
    product_analog: Optional[str] = None
    product_additional1: Optional[str] = None
    product_additional2: Optional[str] = None
    product_additional3: Optional[str] = None
    product_additional4: Optional[str] = None
    product_additional5: Optional[str] = None
    data_source: Optional[DataSourceType] = None
    client_id: Optional[int] = None
    operation_id: Optional[str] = None
    storage_id: Optional[int] = None

    @property
    def external_id(self) -> Optional[str]:
        return self.product_id

    def validate(self) -> Optional[str]:
        if _is_blank(self.product_id):
            return "Product ID is missing"
        return None


@dataclass
class DependentEntity(ImportableEntity):
    """A record owned by exactly one product."""

    @property
    def semantic_key(self) -> Optional[str]:
        value = getattr(self, self.DISCRIMINATOR, None)
        return value.strip() if isinstance(value, str) else value

    def link_to(self, product_id: Optional[str], storage_id: Optional[int] = None) -> None:
        self.product_id = product_id
        if storage_id is not None:
            self.product_storage_id = storage_id


@dataclass
class Region(DependentEntity):
    ENTITY_TYPE: ClassVar[EntityType] = EntityType.REGION
    DISCRIMINATOR: ClassVar[Optional[str]] = "region"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        FieldSpec("product_id", "ID товара"),
        FieldSpec("region", "Город", required=True),
        FieldSpec("region_address", "Адрес"),
        FieldSpec("region_price", "Цена в регионе", "double"),
    )

    product_id: Optional[str] = None
    region: Optional[str] = None
    region_address: Optional[str] = None
    region_price: Optional[float] = None
    client_id: Optional[int] = None
    operation_id: Optional[str] = None
    product_storage_id: Optional[int] = None
    storage_id: Optional[int] = None

    def validate(self) -> Optional[str]:
        if _is_blank(self.region):
            return "Region name is missing"
        return None


@dataclass
class Competitor(DependentEntity):
    ENTITY_TYPE: ClassVar[EntityType] = EntityType.COMPETITOR
    DISCRIMINATOR: ClassVar[Optional[str]] = "competitor_name"
    FIELDS: ClassVar[Tuple[FieldSpec, ...]] = (
        FieldSpec("product_id", "ID товара"),
        FieldSpec("competitor_name", "Сайт", required=True),
        FieldSpec("competitor_price", "Цена конкурента", "double"),
        FieldSpec("competitor_promotional_price", "Акционная цена", "double"),
        FieldSpec("competitor_time", "Время", "time"),
        FieldSpec("competitor_date", "Дата", "date"),
        FieldSpec("competitor_local_date_time", "Дата:Время", "datetime"),
        FieldSpec("competitor_stock_status", "Статус"),
        FieldSpec("competitor_additional_price", "Дополнительная цена конкурента", "double"),
        FieldSpec("competitor_commentary", "Комментарий"),
        FieldSpec("competitor_product_name", "Наименование товара конкурента"),
        FieldSpec("competitor_additional", "Дополнительное поле"),
        FieldSpec("competitor_additional2", "Дополнительное поле конкурента 2"),
        FieldSpec("competitor_url", "Ссылка конкурента"),
        FieldSpec("competitor_web_cache_url", "Скриншот"),
    )

    product_id: Optional[str] = None
    competitor_name: Optional[str] = None
    competitor_price: Optional[float] = None
    competitor_promotional_price: Optional[float] = None
    competitor_time: Optional[time] = None
    competitor_date: Optional[date] = None
    competitor_local_date_time: Optional[datetime] = None
    competitor_stock_status: Optional[str] = None
    competitor_additional_price: Optional[float] = None
    competitor_commentary: Optional[str] = None
    competitor_product_name: Optional[str] = None
    competitor_additional: Optional[str] = None
    competitor_additional2: Optional[str] = None
    competitor_url: Optional[str] = None
    competitor_web_cache_url: Optional[str] = None
    client_id: Optional[int] = None
    operation_id: Optional[str] = None
    product_storage_id: Optional[int] = None
    storage_id: Optional[int] = None

    def validate(self) -> Optional[str]:
        if _is_blank(self.competitor_name):
            return "Competitor site name is missing"
        return None


ENTITY_CLASSES: Dict[EntityType, Type[ImportableEntity]] = {
    EntityType.PRODUCT: Product,
    EntityType.REGION: Region,
    EntityType.COMPETITOR: Competitor,
}

PRIMARY_ENTITY_TYPE = EntityType.PRODUCT
DEPENDENT_ENTITY_TYPES: Tuple[EntityType, ...] = (EntityType.REGION, EntityType.COMPETITOR)


def parse_entity_type(value: Any) -> EntityType:
    if isinstance(value, EntityType):
        return value
    try:
        return EntityType(str(value).strip().lower())
    except ValueError:
        raise UnsupportedEntityTypeError(str(value))


def entity_class_for(entity_type: Any) -> Type[ImportableEntity]:
    return ENTITY_CLASSES[parse_entity_type(entity_type)]


def create_entity(entity_type: Any, **values: Any) -> ImportableEntity:
    """Instantiate the variant registered for ``entity_type``."""
    return entity_class_for(entity_type)(**values)
