import pytest

from price_import.domain.imports.entities import EntityType
from price_import.domain.imports.errors import MappingValidationError
from price_import.domain.imports.mapping import (
    FieldMapping,
    display_fields,
    split_target,
    suggest_mapping,
)


def test_split_target():
    assert split_target("region.region_price", EntityType.PRODUCT) == (EntityType.REGION, "region_price")
    assert split_target("product_name", EntityType.PRODUCT) == (EntityType.PRODUCT, "product_name")


def test_exact_matches_win_over_partial_ones():
    headers = ["ID товара", "Цена", "Цена в регионе", "Город"]

    suggestion = suggest_mapping(headers, EntityType.PRODUCT, composite=True)

    assert suggestion == {
        "ID товара": "product.product_id",
        "Цена": "product.product_price",
        "Цена в регионе": "region.region_price",
        "Город": "region.region",
    }


def test_partial_matches_use_scores_and_never_reuse_targets():
    suggestion = suggest_mapping(["Штрихкод товара", "Бренд производителя", "Штрихкод (EAN)"])

    assert suggestion["Штрихкод товара"] == "product_bar"
    assert suggestion["Бренд производителя"] == "product_brand"
    assert "Штрихкод (EAN)" not in suggestion


def test_unrelated_headers_stay_unmapped():
    assert suggest_mapping(["foo", "bar"]) == {}


def test_flat_dependent_suggestion_includes_product_id():
    suggestion = suggest_mapping(["ID товара", "Город", "Адрес"], EntityType.REGION)
    assert suggestion == {"ID товара": "product_id", "Город": "region", "Адрес": "region_address"}


def test_composite_detection_and_grouping():
    mapping = FieldMapping.from_dict(
        {
            "ID": "product_id",
            "Город": "region.region",
            "Сайт": "competitor.competitor_name",
            "Ignored": "",
        }
    )

    assert mapping.is_composite is True
    assert mapping.entity_types() == [EntityType.PRODUCT, EntityType.REGION, EntityType.COMPETITOR]
    assert mapping.split_by_entity() == {
        EntityType.PRODUCT: {"ID": "product_id"},
        EntityType.REGION: {"Город": "region"},
        EntityType.COMPETITOR: {"Сайт": "competitor_name"},
    }
    assert "Ignored" not in mapping.to_dict()


def test_params_grouped_by_entity():
    mapping = FieldMapping.from_dict(
        {"Цена": "region.region_price"}, params={"region.region_price": "locale=ru"}
    )
    assert mapping.params_by_entity() == {EntityType.REGION: {"region_price": "locale=ru"}}


def test_validate_passes_for_complete_mapping():
    mapping = FieldMapping.from_dict({"ID": "product_id", "Город": "region.region"})
    mapping.validate(["ID", "Город", "Other"])


def test_validate_reports_missing_required_field():
    mapping = FieldMapping.from_dict({"Модель": "product_name"})

    with pytest.raises(MappingValidationError) as exc_info:
        mapping.validate(["Модель"])

    assert exc_info.value.missing_fields == ["product.product_id"]


def test_validate_reports_unknown_targets_and_absent_headers():
    mapping = FieldMapping.from_dict({"ID": "product_id", "X": "product.nope", "Y": "warehouse.size"})

    with pytest.raises(MappingValidationError) as exc_info:
        mapping.validate(["ID", "X"])

    message = exc_info.value.message
    assert "unknown field 'product.nope'" in message
    assert "Unsupported entity type 'warehouse'" in message


def test_flat_dependent_import_requires_product_id():
    mapping = FieldMapping.from_dict({"Город": "region"}, EntityType.REGION)

    with pytest.raises(MappingValidationError) as exc_info:
        mapping.validate(["Город"])

    assert exc_info.value.missing_fields == ["region.product_id"]


def test_display_fields():
    fields = display_fields("region")
    assert fields[1] == {"name": "region", "display_name": "Город", "type": "string", "required": True}
