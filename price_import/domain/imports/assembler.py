"""
Turns decoded file rows into typed entities and keeps track of which
dependents belong to which product until the product has a storage id.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from price_import.domain.imports.entities import (
    DEPENDENT_ENTITY_TYPES,
    PRIMARY_ENTITY_TYPE,
    DependentEntity,
    EntityType,
    Product,
    entity_class_for,
)
from price_import.domain.imports.mapping import FieldMapping
from price_import.domain.imports.transformers import TransformerRegistry, default_registry

logger = logging.getLogger(__name__)


@dataclass
class ImportRow:
    """Entities assembled from one file row."""

    row_number: int
    product: Optional[Product] = None
    product_id: Optional[str] = None
    dependents: Dict[EntityType, List[DependentEntity]] = field(default_factory=dict)

    def add_dependent(self, entity: DependentEntity) -> None:
        self.dependents.setdefault(entity.ENTITY_TYPE, []).append(entity)

    def dependents_of(self, entity_type: EntityType) -> List[DependentEntity]:
        return self.dependents.get(entity_type, [])

    def all_dependents(self) -> List[DependentEntity]:
        return [entity for entities in self.dependents.values() for entity in entities]

    def has_entities(self) -> bool:
        return self.product is not None or any(self.dependents.values())


class RelationshipHolder:
    """
    Rows of one chunk, indexed by the product's external id.

    Every row stays queued in file order. The index keeps the last row seen
    for each external id, which is what OVERRIDE persists.
    """

    def __init__(self):
        self._rows: List[ImportRow] = []
        self._rows_by_product_id: Dict[str, ImportRow] = {}

    def add_row(self, row: ImportRow) -> bool:
        if not row.has_entities():
            return False
        self._rows.append(row)
        if row.product_id:
            self._rows_by_product_id[row.product_id] = row
        return True

    def __len__(self) -> int:
        return len(self._rows)

    def get_all_rows(self) -> List[ImportRow]:
        return list(self._rows)

    def get_row(self, product_id: str) -> Optional[ImportRow]:
        return self._rows_by_product_id.get(product_id)

    def get_dependents(
        self, entity_type: EntityType, rows: Optional[Iterable[ImportRow]] = None
    ) -> List[DependentEntity]:
        source = self._rows if rows is None else rows
        return [entity for row in source for entity in row.dependents_of(entity_type)]

    def establish_relationships(
        self, storage_ids: Dict[str, int], rows: Optional[Iterable[ImportRow]] = None
    ) -> List[DependentEntity]:
        """
        Point every dependent at its product's storage id.

        Args:
            storage_ids: External id -> storage id of persisted products
            rows: Rows to link (defaults to all rows)

        Returns:
            Dependents that could not be linked
        """
        unresolved: List[DependentEntity] = []
        source = self._rows if rows is None else rows
        for row in source:
            storage_id = storage_ids.get(row.product_id) if row.product_id else None
            for entity in row.all_dependents():
                if storage_id is None:
                    unresolved.append(entity)
                    continue
                entity.link_to(row.product_id, storage_id)
        return unresolved

    def clear(self) -> None:
        self._rows.clear()
        self._rows_by_product_id.clear()


@dataclass
class AssemblyResult:
    row: Optional[ImportRow] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.row is not None and self.error is None


class RowAssembler:
    """
    Builds an :class:`ImportRow` from raw cells using a field mapping.

    For a composite import the product group decides the fate of the row: if
    it does not fill or validate, nothing from the row is kept. Dependent
    groups without their discriminator (region name, competitor site) are
    treated as absent. For a flat import the single entity group must be
    valid on its own.
    """

    def __init__(
        self,
        mapping: FieldMapping,
        client_id: int,
        operation_id: Optional[str] = None,
        registry: Optional[TransformerRegistry] = None,
        composite: Optional[bool] = None,
    ):
        self.mapping = mapping
        self.client_id = client_id
        self.operation_id = operation_id
        self.registry = registry or default_registry
        self.composite = mapping.is_composite if composite is None else composite
        self._groups = mapping.split_by_entity()
        self._params = mapping.params_by_entity()

    def _group_values(self, entity_type: EntityType, raw: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        return {
            field_name: raw.get(header)
            for header, field_name in self._groups.get(entity_type, {}).items()
        }

    def _build(self, entity_type: EntityType, values: Dict[str, Optional[str]]):
        entity = entity_class_for(entity_type)(client_id=self.client_id, operation_id=self.operation_id)
        filled = entity.fill_from_map(values, self.registry, self._params.get(entity_type))
        return entity, filled

    def assemble(self, row_number: int, raw: Dict[str, Optional[str]]) -> AssemblyResult:
        if self.composite:
            return self._assemble_composite(row_number, raw)
        return self._assemble_flat(row_number, raw)

    def _assemble_composite(self, row_number: int, raw: Dict[str, Optional[str]]) -> AssemblyResult:
        product, filled = self._build(PRIMARY_ENTITY_TYPE, self._group_values(PRIMARY_ENTITY_TYPE, raw))
        if not filled:
            return AssemblyResult(error=f"Row {row_number}: " + "; ".join(product.fill_errors))
        problem = product.validate()
        if problem:
            return AssemblyResult(error=f"Row {row_number}: {problem}")

        product_id = product.product_id.strip()
        product.product_id = product_id
        row = ImportRow(row_number=row_number, product=product, product_id=product_id)
        result = AssemblyResult(row=row)

        for entity_type in DEPENDENT_ENTITY_TYPES:
            if entity_type not in self._groups:
                continue
            values = self._group_values(entity_type, raw)
            dependent, filled = self._build(entity_type, values)
            if not dependent.has_discriminator():
                continue
            problem = dependent.validate()
            if not filled or problem:
                details = "; ".join(dependent.fill_errors) if not filled else problem
                result.warnings.append(f"Row {row_number}: {entity_type.value} skipped: {details}")
                continue
            dependent.link_to(product_id)
            row.add_dependent(dependent)

        return result

    def _assemble_flat(self, row_number: int, raw: Dict[str, Optional[str]]) -> AssemblyResult:
        entity_type = self.mapping.default_type
        entity, filled = self._build(entity_type, self._group_values(entity_type, raw))
        if not filled:
            return AssemblyResult(error=f"Row {row_number}: " + "; ".join(entity.fill_errors))
        problem = entity.validate()
        if problem:
            return AssemblyResult(error=f"Row {row_number}: {problem}")

        if entity_type == PRIMARY_ENTITY_TYPE:
            entity.product_id = entity.product_id.strip()
            return AssemblyResult(
                row=ImportRow(row_number=row_number, product=entity, product_id=entity.product_id)
            )

        product_id = (entity.product_id or "").strip()
        if not product_id:
            return AssemblyResult(error=f"Row {row_number}: Product ID is required to link {entity_type.value}")
        entity.link_to(product_id)
        row = ImportRow(row_number=row_number, product_id=product_id)
        row.add_dependent(entity)
        return AssemblyResult(row=row)
