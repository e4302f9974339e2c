import random

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from price_import.db.models import ProductRecord, RegionRecord
from price_import.domain.imports.assembler import RelationshipHolder, RowAssembler
from price_import.domain.imports.entities import EntityType, Product, Region
from price_import.domain.imports.mapping import FieldMapping
from price_import.domain.imports.repository import EntityRepository, SqlAlchemyEntityRepository
from price_import.domain.imports.strategies import (
    DuplicateHandling,
    IgnoreDuplicatesStrategy,
    OverrideDuplicatesStrategy,
    SkipDuplicatesStrategy,
    get_strategy,
)

CLIENT_ID = 1

MAPPING = FieldMapping.from_dict(
    {
        "productId": "product_id",
        "name": "product_name",
        "region": "region.region",
        "price": "region.region_price",
    }
)


def _holder(rows, operation_id="op-1", mapping=MAPPING):
    assembler = RowAssembler(mapping, CLIENT_ID, operation_id=operation_id)
    holder = RelationshipHolder()
    errors = []
    for number, raw in enumerate(rows, start=2):
        result = assembler.assemble(number, raw)
        if result.ok:
            holder.add_row(result.row)
        else:
            errors.append(result.error)
    return holder, errors


def _regions(engine, product_id=None):
    with Session(engine) as session:
        stmt = select(RegionRecord).order_by(RegionRecord.id)
        if product_id is not None:
            stmt = stmt.where(RegionRecord.product_id == product_id)
        return list(session.scalars(stmt))


def _products(engine):
    with Session(engine) as session:
        return list(session.scalars(select(ProductRecord).order_by(ProductRecord.id)))


def _seed_product_with_region(repository, product_id, region, operation_id="seed"):
    holder, _ = _holder([{"productId": product_id, "region": region}], operation_id=operation_id)
    result = IgnoreDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)
    assert result.saved == 1


def test_get_strategy_by_name(repository):
    assert isinstance(get_strategy("ignore", repository), IgnoreDuplicatesStrategy)
    assert isinstance(get_strategy(DuplicateHandling.SKIP, repository), SkipDuplicatesStrategy)
    assert isinstance(get_strategy(" override ", repository), OverrideDuplicatesStrategy)
    with pytest.raises(ValueError):
        get_strategy("merge", repository)


def test_ignore_attaches_both_regions_to_one_product(engine, repository):
    holder, _ = _holder(
        [
            {"productId": "A1", "region": "North", "price": "10,50"},
            {"productId": "A1", "region": "South", "price": "20,00"},
        ]
    )

    result = IgnoreDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert result.saved == 2
    assert result.failed == 0
    assert result.dependents_saved == 2
    products = _products(engine)
    assert [p.product_id for p in products] == ["A1"]
    regions = _regions(engine)
    assert [(r.region, r.region_price) for r in regions] == [("North", 10.5), ("South", 20.0)]
    assert {r.product_storage_id for r in regions} == {products[0].id}


def test_ignore_inserts_even_when_product_exists(engine, repository):
    _seed_product_with_region(repository, "A1", "East")
    holder, _ = _holder([{"productId": "A1", "region": "North"}])

    result = IgnoreDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert result.saved == 1
    assert len(_products(engine)) == 2


def test_skip_leaves_existing_products_untouched(engine, repository):
    repository.save_batch([Product(product_id="A1", client_id=CLIENT_ID)], EntityType.PRODUCT)
    holder, _ = _holder(
        [
            {"productId": "A1", "region": "North", "price": "10,50"},
            {"productId": "A1", "region": "South", "price": "20,00"},
        ]
    )

    result = SkipDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert result.skipped == 2
    assert result.saved == 0
    assert _regions(engine) == []
    assert len(_products(engine)) == 1


def test_skip_saves_only_new_rows(engine, repository):
    repository.save_batch([Product(product_id="A1", client_id=CLIENT_ID)], EntityType.PRODUCT)
    holder, _ = _holder(
        [
            {"productId": "A1", "region": "North"},
            {"productId": "B2", "region": "South"},
        ]
    )

    result = SkipDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert (result.saved, result.skipped) == (1, 1)
    assert [r.region for r in _regions(engine)] == ["South"]


def test_skip_is_scoped_to_the_client(engine, repository):
    repository.save_batch([Product(product_id="A1", client_id=99)], EntityType.PRODUCT)
    holder, _ = _holder([{"productId": "A1", "region": "North"}])

    result = SkipDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert result.saved == 1


def test_override_replaces_dependents_with_last_occurrence(engine, repository):
    _seed_product_with_region(repository, "B2", "East")
    holder, _ = _holder(
        [
            {"productId": "B2", "name": "Old name", "region": "North"},
            {"productId": "B2", "name": "New name", "region": "South"},
        ],
        operation_id="op-2",
    )

    result = OverrideDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert result.updated == 1
    assert result.skipped == 1
    assert result.dependents_deleted == 1
    products = _products(engine)
    assert len(products) == 1
    assert products[0].product_name == "New name"
    assert products[0].operation_id == "seed"
    assert [r.region for r in _regions(engine)] == ["South"]


def test_override_does_not_touch_dependents_of_new_products(engine, repository):
    _seed_product_with_region(repository, "A1", "East")
    holder, _ = _holder([{"productId": "C3", "region": "West"}])

    result = OverrideDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert (result.saved, result.updated, result.dependents_deleted) == (1, 0, 0)
    assert sorted(r.region for r in _regions(engine)) == ["East", "West"]


def test_override_keeps_existing_values_for_blank_cells(engine, repository):
    holder, _ = _holder([{"productId": "D4", "name": "Kept"}])
    OverrideDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    holder, _ = _holder([{"productId": "D4", "name": ""}])
    result = OverrideDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert result.updated == 1
    assert _products(engine)[0].product_name == "Kept"


class BrokenDependentsRepository(SqlAlchemyEntityRepository):
    def save_batch(self, entities, entity_type, upsert=False):
        if entity_type == EntityType.REGION:
            raise RuntimeError("disk full")
        return super().save_batch(entities, entity_type, upsert)


def test_batch_failure_counts_every_row_and_leaves_nothing_behind(engine):
    repository = BrokenDependentsRepository(engine)
    holder, _ = _holder(
        [
            {"productId": "A1", "region": "North"},
            {"productId": "B2", "region": "South"},
        ]
    )

    result = IgnoreDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert result.failed == 2
    assert result.batch_error == "Batch save failed: disk full"
    assert _products(engine) == []


class FailingDeleteRepository(SqlAlchemyEntityRepository):
    def delete_by_primary_storage_ids(self, storage_ids, entity_types=None):
        raise RuntimeError("lock timeout")


def test_override_delete_failure_does_not_abort_update(engine):
    repository = FailingDeleteRepository(engine)
    _seed_product_with_region(repository, "B2", "East")
    holder, _ = _holder([{"productId": "B2", "name": "Renamed", "region": "South"}])

    result = OverrideDuplicatesStrategy(repository).process_combined(holder, CLIENT_ID)

    assert result.updated == 1
    assert result.batch_error is None
    assert any("lock timeout" in error for error in result.errors)
    assert _products(engine)[0].product_name == "Renamed"


def test_flat_region_import_links_to_stored_products(engine, repository):
    repository.save_batch([Product(product_id="A1", client_id=CLIENT_ID)], EntityType.PRODUCT)
    regions = [
        Region(product_id="A1", region="North", client_id=CLIENT_ID),
        Region(product_id="Z9", region="South", client_id=CLIENT_ID),
    ]

    result = IgnoreDuplicatesStrategy(repository).process(regions, "region", CLIENT_ID)

    assert (result.saved, result.failed) == (1, 1)
    assert "product 'Z9' not found" in result.errors[0]
    assert [r.region for r in _regions(engine)] == ["North"]


def test_flat_region_skip_and_override_use_region_name(engine, repository):
    repository.save_batch([Product(product_id="A1", client_id=CLIENT_ID)], EntityType.PRODUCT)
    IgnoreDuplicatesStrategy(repository).process(
        [Region(product_id="A1", region="North", region_price=1.0, client_id=CLIENT_ID)], "region", CLIENT_ID
    )

    skipped = SkipDuplicatesStrategy(repository).process(
        [Region(product_id="A1", region="North", region_price=2.0, client_id=CLIENT_ID)], "region", CLIENT_ID
    )
    assert skipped.skipped == 1
    assert [r.region_price for r in _regions(engine)] == [1.0]

    replaced = OverrideDuplicatesStrategy(repository).process(
        [Region(product_id="A1", region="North", region_price=3.0, client_id=CLIENT_ID)], "region", CLIENT_ID
    )
    assert replaced.updated == 1
    assert [r.region_price for r in _regions(engine)] == [3.0]


def test_rollback_removes_records_of_the_operation(engine, repository):
    _seed_product_with_region(repository, "A1", "East", operation_id="keep")
    holder, _ = _holder([{"productId": "B2", "region": "North"}], operation_id="undo")
    strategy = IgnoreDuplicatesStrategy(repository)
    strategy.process_combined(holder, CLIENT_ID)

    deleted = strategy.rollback("undo")

    assert deleted == 2
    assert [p.product_id for p in _products(engine)] == ["A1"]
    assert [r.region for r in _regions(engine)] == ["East"]


class RecordingRepository(EntityRepository):
    """In-memory repository that remembers every entity it was asked to save."""

    def __init__(self):
        self.saved = {entity_type: [] for entity_type in EntityType}
        self._next_id = 1

    def save_batch(self, entities, entity_type, upsert=False):
        ids = []
        for entity in entities:
            entity.storage_id = self._next_id
            ids.append(self._next_id)
            self._next_id += 1
        self.saved[EntityType(entity_type)].extend(entities)
        return ids

    def find_storage_ids(self, client_id, external_ids):
        stored = {p.product_id: p.storage_id for p in self.saved[EntityType.PRODUCT]}
        return {value: stored[value] for value in external_ids if value in stored}

    def delete_by_primary_storage_ids(self, storage_ids, entity_types=None):
        return 0

    def delete_by_originating_file_id(self, operation_id):
        return 0

    def find_existing_dependent_keys(self, entity_type, storage_ids):
        return set()

    def delete_dependents_by_keys(self, entity_type, keys):
        return 0


@pytest.mark.parametrize("handling", list(DuplicateHandling))
def test_dependents_of_invalid_products_are_never_saved(handling):
    rng = random.Random(20240501)
    rows = []
    for index in range(200):
        valid = rng.random() < 0.6
        product_id = f"P{rng.randint(1, 40)}" if valid else rng.choice(["", "  "])
        rows.append({"productId": product_id, "region": f"orphan-{index}" if not valid else f"R{index}"})

    repository = RecordingRepository()
    holder, errors = _holder(rows)
    result = get_strategy(handling, repository).process_combined(holder, CLIENT_ID)

    saved_regions = [region.region for region in repository.saved[EntityType.REGION]]
    assert errors
    assert not any(name.startswith("orphan-") for name in saved_regions)
    assert result.total == len(holder)
