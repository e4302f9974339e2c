from datetime import date

import pytest

from price_import.domain.imports.entities import (
    Competitor,
    DataSourceType,
    EntityType,
    Product,
    Region,
    create_entity,
    entity_class_for,
    parse_entity_type,
)
from price_import.domain.imports.errors import UnsupportedEntityTypeError


def test_factory_resolves_variants_by_type():
    assert entity_class_for("product") is Product
    assert entity_class_for(EntityType.REGION) is Region
    assert entity_class_for(" Competitor ") is Competitor
    region = create_entity("region", region="North", client_id=1)
    assert isinstance(region, Region)
    assert region.region == "North"


def test_unknown_entity_type_raises():
    with pytest.raises(UnsupportedEntityTypeError):
        parse_entity_type("warehouse")


def test_fill_from_display_names_and_field_names():
    product = Product(client_id=1)

    filled = product.fill_from_map(
        {
            "ID товара": " A1 ",
            "модель": "Phone",
            "product_price": "1 299,90",
            "Источник": "отчет",
            "Бренд": "",
        }
    )

    assert filled is True
    assert product.product_id == "A1"
    assert product.product_name == "Phone"
    assert product.product_price == 1299.9
    assert product.data_source is DataSourceType.REPORT
    assert product.product_brand is None
    assert product.validate() is None


def test_failed_conversion_leaves_field_empty():
    competitor = Competitor()

    filled = competitor.fill_from_map({"Сайт": "shop.example", "Цена конкурента": "n/a", "Дата": "01.02.2024"})

    assert filled is False
    assert competitor.competitor_price is None
    assert competitor.competitor_date == date(2024, 2, 1)
    assert competitor.competitor_name == "shop.example"
    assert "Цена конкурента" in competitor.fill_errors[0]


def test_params_override_field_defaults():
    region = Region()
    region.fill_from_map({"region_price": "1.234"}, params={"region_price": "locale=de"})
    assert region.region_price == 1234.0


def test_validation_messages():
    assert Product().validate() == "Product ID is missing"
    assert Product(product_id="  ").validate() == "Product ID is missing"
    assert Region().validate() == "Region name is missing"
    assert Competitor().validate() == "Competitor site name is missing"


def test_discriminators():
    assert Region(region_address="Main st").has_discriminator() is False
    assert Region(region="North").has_discriminator() is True
    assert Competitor(competitor_name="shop").has_discriminator() is True
    assert Product().has_discriminator() is True


def test_link_to_sets_product_reference():
    region = Region(region=" North ")
    region.link_to("A1", 42)
    assert region.product_id == "A1"
    assert region.product_storage_id == 42
    assert region.semantic_key == "North"


def test_record_excludes_storage_id_and_flattens_enums():
    product = Product(product_id="A1", client_id=3, data_source=DataSourceType.FILE, storage_id=9)
    record = product.to_record()
    assert "storage_id" not in record
    assert record["data_source"] == "FILE"
    assert record["client_id"] == 3


def test_field_catalogue():
    assert Product.required_fields() == ["product_id"]
    assert Region.field_mappings()["Цена в регионе"] == "region_price"
    assert "competitor_web_cache_url" in Competitor.field_names()
    assert Competitor.resolve_field("СКРИНШОТ") == "competitor_web_cache_url"
    assert Competitor.resolve_field("unknown") is None
