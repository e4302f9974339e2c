"""
Duplicate-handling strategies.

A strategy receives the rows of one chunk and decides, per row, whether the
product is inserted, updated or skipped, then persists dependents linked to
the product's storage id. All writes of one chunk share a repository batch
scope, so a persistence error leaves no partial chunk behind.

Counts in :class:`BatchSaveResult` are per row: ``saved`` and ``updated``
rows succeeded, ``skipped`` rows were deliberately not written and
``failed`` rows could not be written.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Type

from price_import.domain.imports.assembler import ImportRow, RelationshipHolder
from price_import.domain.imports.entities import (
    DEPENDENT_ENTITY_TYPES,
    PRIMARY_ENTITY_TYPE,
    DependentEntity,
    EntityType,
    ImportableEntity,
    Product,
    parse_entity_type,
)
from price_import.domain.imports.repository import EntityRepository

logger = logging.getLogger(__name__)


class DuplicateHandling(str, Enum):
    IGNORE = "IGNORE"
    SKIP = "SKIP"
    OVERRIDE = "OVERRIDE"


@dataclass
class BatchSaveResult:
    saved: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    dependents_saved: int = 0
    dependents_deleted: int = 0
    errors: List[str] = field(default_factory=list)
    batch_error: Optional[str] = None

    @property
    def success(self) -> int:
        return self.saved + self.updated

    @property
    def total(self) -> int:
        return self.saved + self.updated + self.skipped + self.failed

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def merge(self, other: "BatchSaveResult") -> "BatchSaveResult":
        self.saved += other.saved
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.dependents_saved += other.dependents_saved
        self.dependents_deleted += other.dependents_deleted
        self.errors.extend(other.errors)
        if other.batch_error:
            self.batch_error = other.batch_error
        return self


def _unique_in_order(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(value for value in values if value))


class DuplicateStrategy(ABC):
    handling: DuplicateHandling

    def __init__(self, repository: EntityRepository):
        self.repository = repository

    def process(
        self, entities: List[ImportableEntity], entity_type, client_id: int
    ) -> BatchSaveResult:
        """
        Persist entities of a single type.

        Dependents must carry ``product_id``; they are linked to the stored
        product with that external id.
        """
        entity_type = parse_entity_type(entity_type)
        holder = RelationshipHolder()
        for index, entity in enumerate(entities, start=1):
            if entity_type == PRIMARY_ENTITY_TYPE:
                holder.add_row(ImportRow(row_number=index, product=entity, product_id=entity.product_id))
            else:
                row = ImportRow(row_number=index, product_id=entity.product_id)
                row.add_dependent(entity)
                holder.add_row(row)
        return self.process_combined(holder, client_id)

    def process_combined(self, holder: RelationshipHolder, client_id: int) -> BatchSaveResult:
        """Persist every row held by ``holder``."""
        rows = holder.get_all_rows()
        result = BatchSaveResult()
        if not rows:
            return result

        primary_rows = [row for row in rows if row.product is not None]
        linked_rows = [row for row in rows if row.product is None]

        try:
            with self.repository.batch_scope():
                if primary_rows:
                    self._save_primary_rows(holder, primary_rows, client_id, result)
                if linked_rows:
                    self._save_linked_rows(linked_rows, client_id, result)
        except Exception as e:
            message = f"Batch save failed: {e}"
            logger.error("%s strategy: %s (%d rows)", self.handling.value, message, len(rows))
            return BatchSaveResult(failed=len(rows), errors=[message], batch_error=message)

        logger.debug(
            "%s strategy saved=%d updated=%d skipped=%d failed=%d dependents=%d",
            self.handling.value,
            result.saved,
            result.updated,
            result.skipped,
            result.failed,
            result.dependents_saved,
        )
        return result

    def rollback(self, operation_id: str) -> int:
        """Delete everything the operation inserted."""
        deleted = self.repository.delete_by_originating_file_id(operation_id)
        logger.info("Rolled back operation %s: %d records deleted", operation_id, deleted)
        return deleted

    @abstractmethod
    def _save_primary_rows(
        self, holder: RelationshipHolder, rows: List[ImportRow], client_id: int, result: BatchSaveResult
    ) -> None:
        ...

    @abstractmethod
    def _save_linked_dependents(
        self, rows: List[ImportRow], entity_type: EntityType, result: BatchSaveResult
    ) -> None:
        ...

    def _insert_rows(self, holder: RelationshipHolder, rows: List[ImportRow], result: BatchSaveResult) -> None:
        """Insert one product per external id, then every dependent of ``rows``."""
        products: Dict[str, Product] = {}
        for row in rows:
            products.setdefault(row.product_id, row.product)

        self.repository.save_batch(list(products.values()), PRIMARY_ENTITY_TYPE)
        storage_ids = {
            product_id: product.storage_id
            for product_id, product in products.items()
            if product.storage_id is not None
        }

        if not storage_ids:
            result.failed += len(rows)
            result.add_error(f"No products were stored; dependents of {len(rows)} rows were not saved")
            return

        stored_rows = [row for row in rows if row.product_id in storage_ids]
        result.saved += len(stored_rows)
        result.failed += len(rows) - len(stored_rows)
        self._persist_dependents(holder, stored_rows, storage_ids, result)

    def _persist_dependents(
        self,
        holder: RelationshipHolder,
        rows: List[ImportRow],
        storage_ids: Dict[str, int],
        result: BatchSaveResult,
    ) -> None:
        unresolved = holder.establish_relationships(storage_ids, rows)
        if unresolved:
            result.add_error(f"{len(unresolved)} dependent records could not be linked to a product")

        for entity_type in DEPENDENT_ENTITY_TYPES:
            entities = [
                entity
                for entity in holder.get_dependents(entity_type, rows)
                if entity.product_storage_id is not None
            ]
            if entities:
                self.repository.save_batch(entities, entity_type)
                result.dependents_saved += len(entities)

    def _save_linked_rows(self, rows: List[ImportRow], client_id: int, result: BatchSaveResult) -> None:
        """Dependent-only rows: link to already stored products by external id."""
        storage_ids = self.repository.find_storage_ids(
            client_id, _unique_in_order(row.product_id for row in rows)
        )
        resolvable: List[ImportRow] = []
        for row in rows:
            storage_id = storage_ids.get(row.product_id)
            if storage_id is None:
                result.failed += 1
                result.add_error(f"Row {row.row_number}: product '{row.product_id}' not found")
                continue
            for entity in row.all_dependents():
                entity.link_to(row.product_id, storage_id)
            resolvable.append(row)

        for entity_type in DEPENDENT_ENTITY_TYPES:
            typed_rows = [row for row in resolvable if row.dependents_of(entity_type)]
            if typed_rows:
                self._save_linked_dependents(typed_rows, entity_type, result)

    @staticmethod
    def _row_keys(rows: List[ImportRow], entity_type: EntityType) -> List[Tuple[ImportRow, Tuple[int, str]]]:
        keyed = []
        for row in rows:
            for entity in row.dependents_of(entity_type):
                keyed.append((row, (entity.product_storage_id, entity.semantic_key)))
        return keyed


class IgnoreDuplicatesStrategy(DuplicateStrategy):
    """Every row is new; nothing is looked up."""

    handling = DuplicateHandling.IGNORE

    def _save_primary_rows(self, holder, rows, client_id, result):
        self._insert_rows(holder, rows, result)

    def _save_linked_dependents(self, rows, entity_type, result):
        entities = [entity for row in rows for entity in row.dependents_of(entity_type)]
        self.repository.save_batch(entities, entity_type)
        result.saved += len(rows)
        result.dependents_saved += len(entities)


class SkipDuplicatesStrategy(DuplicateStrategy):
    """Rows whose product already exists for the client are left untouched."""

    handling = DuplicateHandling.SKIP

    def _save_primary_rows(self, holder, rows, client_id, result):
        existing = self.repository.find_existing_external_ids(
            client_id, _unique_in_order(row.product_id for row in rows)
        )
        new_rows = [row for row in rows if row.product_id not in existing]
        result.skipped += len(rows) - len(new_rows)
        if new_rows:
            self._insert_rows(holder, new_rows, result)

    def _save_linked_dependents(self, rows, entity_type, result):
        keyed = self._row_keys(rows, entity_type)
        existing = self.repository.find_existing_dependent_keys(
            entity_type, {key[0] for _, key in keyed}
        )
        to_save: List[DependentEntity] = []
        for row, key in keyed:
            if key in existing:
                result.skipped += 1
                continue
            existing.add(key)
            to_save.extend(row.dependents_of(entity_type))
            result.saved += 1
        if to_save:
            self.repository.save_batch(to_save, entity_type)
            result.dependents_saved += len(to_save)


class OverrideDuplicatesStrategy(DuplicateStrategy):
    """
    The file is authoritative: existing products are updated and their stored
    dependents are replaced by those of the last row carrying the same id.
    """

    handling = DuplicateHandling.OVERRIDE

    def _save_primary_rows(self, holder, rows, client_id, result):
        product_ids = _unique_in_order(row.product_id for row in rows)
        latest_rows = [holder.get_row(product_id) for product_id in product_ids]
        result.skipped += len(rows) - len(latest_rows)

        existing = self.repository.find_existing_external_ids(client_id, product_ids)
        products = [row.product for row in latest_rows]
        self.repository.save_batch(products, PRIMARY_ENTITY_TYPE, upsert=True)

        storage_ids = {
            product.product_id: product.storage_id for product in products if product.storage_id is not None
        }
        stored_rows = [row for row in latest_rows if row.product_id in storage_ids]
        updated_rows = [row for row in stored_rows if row.product_id in existing]
        result.updated += len(updated_rows)
        result.saved += len(stored_rows) - len(updated_rows)
        result.failed += len(latest_rows) - len(stored_rows)

        if updated_rows:
            self._delete_old_dependents([storage_ids[row.product_id] for row in updated_rows], result)

        self._persist_dependents(holder, stored_rows, storage_ids, result)

    def _delete_old_dependents(self, storage_ids: List[int], result: BatchSaveResult) -> None:
        try:
            deleted = self.repository.delete_by_primary_storage_ids(storage_ids, DEPENDENT_ENTITY_TYPES)
            result.dependents_deleted += deleted
            logger.debug("Deleted %d old dependents of %d updated products", deleted, len(storage_ids))
        except Exception as e:
            logger.error("Failed to delete old dependents of %d updated products: %s", len(storage_ids), e)
            result.add_error(f"Old related records were not removed: {e}")

    def _save_linked_dependents(self, rows, entity_type, result):
        latest: Dict[Tuple[int, str], ImportRow] = {}
        for row, key in self._row_keys(rows, entity_type):
            if key in latest:
                result.skipped += 1
            latest[key] = row

        existing = self.repository.find_existing_dependent_keys(entity_type, {key[0] for key in latest})
        replaced = [key for key in latest if key in existing]
        if replaced:
            result.dependents_deleted += self.repository.delete_dependents_by_keys(entity_type, replaced)

        to_save = [entity for row in latest.values() for entity in row.dependents_of(entity_type)]
        self.repository.save_batch(to_save, entity_type)
        result.updated += len(replaced)
        result.saved += len(latest) - len(replaced)
        result.dependents_saved += len(to_save)


STRATEGIES: Dict[DuplicateHandling, Type[DuplicateStrategy]] = {
    DuplicateHandling.IGNORE: IgnoreDuplicatesStrategy,
    DuplicateHandling.SKIP: SkipDuplicatesStrategy,
    DuplicateHandling.OVERRIDE: OverrideDuplicatesStrategy,
}


def get_strategy(handling, repository: EntityRepository) -> DuplicateStrategy:
    """Instantiate the strategy for an IGNORE/SKIP/OVERRIDE policy name."""
    if not isinstance(handling, DuplicateHandling):
        handling = DuplicateHandling(str(handling).strip().upper())
    return STRATEGIES[handling](repository)
