"""
Persistence capability used by the duplicate-handling strategies.

:class:`EntityRepository` is the contract; :class:`SqlAlchemyEntityRepository`
implements it on the ORM tables in :mod:`price_import.db.models`.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from price_import.db.models import CompetitorRecord, ProductRecord, RegionRecord
from price_import.db.session import get_engine
from price_import.domain.imports.entities import (
    DEPENDENT_ENTITY_TYPES,
    EntityType,
    ImportableEntity,
    entity_class_for,
    parse_entity_type,
)

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 1000
LOOKUP_BATCH_SIZE = 1000

RECORD_CLASSES = {
    EntityType.PRODUCT: ProductRecord,
    EntityType.REGION: RegionRecord,
    EntityType.COMPETITOR: CompetitorRecord,
}

# Product columns that identify the row and are never overwritten by an update.
_PRODUCT_IDENTITY_COLUMNS = {"client_id", "product_id", "operation_id"}


def _chunks(values: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class EntityRepository(ABC):
    """Storage operations the import pipeline depends on."""

    @contextmanager
    def batch_scope(self):
        """Group the calls made inside the block into one unit of work."""
        yield

    @abstractmethod
    def save_batch(
        self, entities: List[ImportableEntity], entity_type, upsert: bool = False
    ) -> List[int]:
        """Insert (or, with ``upsert``, insert-or-update) entities and assign storage ids."""

    @abstractmethod
    def find_storage_ids(self, client_id: int, external_ids: Iterable[str]) -> Dict[str, int]:
        """External id -> storage id of the client's stored products."""

    def find_existing_external_ids(self, client_id: int, external_ids: Iterable[str]) -> Set[str]:
        return set(self.find_storage_ids(client_id, external_ids))

    @abstractmethod
    def delete_by_primary_storage_ids(
        self, storage_ids: Iterable[int], entity_types: Optional[Iterable[EntityType]] = None
    ) -> int:
        """Delete dependents owned by the given products."""

    @abstractmethod
    def delete_by_originating_file_id(self, operation_id: str) -> int:
        """Delete every record inserted by an import operation."""

    @abstractmethod
    def find_existing_dependent_keys(
        self, entity_type, storage_ids: Iterable[int]
    ) -> Set[Tuple[int, str]]:
        """(product storage id, semantic key) pairs already stored."""

    @abstractmethod
    def delete_dependents_by_keys(self, entity_type, keys: Iterable[Tuple[int, str]]) -> int:
        """Delete dependents matching (product storage id, semantic key) pairs."""


class SqlAlchemyEntityRepository(EntityRepository):
    """
    Repository over the products, region_data and competitor_data tables.

    Calls made inside :meth:`batch_scope` share one session and transaction;
    outside a scope each call commits on its own. The session is cleared when
    the scope ends so ORM objects of a finished chunk are released.
    """

    def __init__(self, engine=None):
        self.engine = engine or get_engine()
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._local = threading.local()

    @contextmanager
    def batch_scope(self):
        if getattr(self._local, "session", None) is not None:
            yield
            return

        session = self._session_factory()
        self._local.session = session
        try:
            yield
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.expunge_all()
            session.close()
            self._local.session = None

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = getattr(self._local, "session", None)
        if session is not None:
            yield session
            return
        with self.batch_scope():
            yield self._local.session

    def _record_for(self, entity: ImportableEntity, record_cls):
        columns = set(record_cls.__table__.columns.keys())
        values = {key: value for key, value in entity.to_record().items() if key in columns}
        return record_cls(**values)

    def save_batch(self, entities, entity_type, upsert=False):
        entity_type = parse_entity_type(entity_type)
        record_cls = RECORD_CLASSES[entity_type]
        if not entities:
            return []

        ids: List[int] = []
        with self._session() as session:
            existing: Dict[Tuple[int, str], ProductRecord] = {}
            if upsert and entity_type == EntityType.PRODUCT:
                existing = self._load_products(session, entities)

            for group in _chunks(list(entities), INSERT_BATCH_SIZE):
                pending = []
                for entity in group:
                    record = existing.get((entity.client_id, entity.product_id)) if existing else None
                    if record is not None:
                        for key, value in entity.to_record().items():
                            if key not in _PRODUCT_IDENTITY_COLUMNS and value is not None:
                                setattr(record, key, value)
                    else:
                        record = self._record_for(entity, record_cls)
                        session.add(record)
                    pending.append((entity, record))
                session.flush()
                for entity, record in pending:
                    entity.storage_id = record.id
                    ids.append(record.id)

        logger.debug("Saved %d %s records", len(ids), entity_type.value)
        return ids

    def _load_products(self, session: Session, products) -> Dict[Tuple[int, str], ProductRecord]:
        by_client: Dict[int, List[str]] = {}
        for product in products:
            by_client.setdefault(product.client_id, []).append(product.product_id)

        loaded: Dict[Tuple[int, str], ProductRecord] = {}
        for client_id, external_ids in by_client.items():
            for group in _chunks(list(dict.fromkeys(external_ids)), LOOKUP_BATCH_SIZE):
                stmt = (
                    select(ProductRecord)
                    .where(ProductRecord.client_id == client_id, ProductRecord.product_id.in_(group))
                    .order_by(ProductRecord.id)
                )
                for record in session.scalars(stmt):
                    loaded.setdefault((record.client_id, record.product_id), record)
        return loaded

    def find_storage_ids(self, client_id, external_ids):
        unique_ids = list(dict.fromkeys(value for value in external_ids if value))
        found: Dict[str, int] = {}
        if not unique_ids:
            return found
        with self._session() as session:
            for group in _chunks(unique_ids, LOOKUP_BATCH_SIZE):
                stmt = (
                    select(ProductRecord.product_id, func.min(ProductRecord.id))
                    .where(ProductRecord.client_id == client_id, ProductRecord.product_id.in_(group))
                    .group_by(ProductRecord.product_id)
                )
                for product_id, storage_id in session.execute(stmt):
                    found[product_id] = storage_id
        return found

    def delete_by_primary_storage_ids(self, storage_ids, entity_types=None):
        ids = list(dict.fromkeys(storage_ids))
        if not ids:
            return 0
        types = [parse_entity_type(t) for t in (entity_types or DEPENDENT_ENTITY_TYPES)]
        deleted = 0
        with self._session() as session:
            # Savepoint so a failed delete does not poison the surrounding chunk.
            with session.begin_nested():
                for entity_type in types:
                    record_cls = RECORD_CLASSES[entity_type]
                    for group in _chunks(ids, LOOKUP_BATCH_SIZE):
                        result = session.execute(
                            delete(record_cls).where(record_cls.product_storage_id.in_(group))
                        )
                        deleted += result.rowcount or 0
        return deleted

    def delete_by_originating_file_id(self, operation_id):
        deleted = 0
        with self._session() as session:
            for entity_type in DEPENDENT_ENTITY_TYPES:
                record_cls = RECORD_CLASSES[entity_type]
                result = session.execute(delete(record_cls).where(record_cls.operation_id == operation_id))
                deleted += result.rowcount or 0
            # Dependents added by later imports to these products go with them.
            product_ids = select(ProductRecord.id).where(ProductRecord.operation_id == operation_id)
            for entity_type in DEPENDENT_ENTITY_TYPES:
                record_cls = RECORD_CLASSES[entity_type]
                result = session.execute(
                    delete(record_cls).where(record_cls.product_storage_id.in_(product_ids))
                )
                deleted += result.rowcount or 0
            result = session.execute(delete(ProductRecord).where(ProductRecord.operation_id == operation_id))
            deleted += result.rowcount or 0
        return deleted

    def find_existing_dependent_keys(self, entity_type, storage_ids):
        entity_type = parse_entity_type(entity_type)
        record_cls = RECORD_CLASSES[entity_type]
        key_column = getattr(record_cls, entity_class_for(entity_type).DISCRIMINATOR)
        ids = [value for value in dict.fromkeys(storage_ids) if value is not None]
        found: Set[Tuple[int, str]] = set()
        if not ids:
            return found
        with self._session() as session:
            for group in _chunks(ids, LOOKUP_BATCH_SIZE):
                stmt = select(record_cls.product_storage_id, key_column).where(
                    record_cls.product_storage_id.in_(group)
                )
                for storage_id, key in session.execute(stmt):
                    found.add((storage_id, key.strip() if isinstance(key, str) else key))
        return found

    def delete_dependents_by_keys(self, entity_type, keys):
        entity_type = parse_entity_type(entity_type)
        record_cls = RECORD_CLASSES[entity_type]
        key_column = getattr(record_cls, entity_class_for(entity_type).DISCRIMINATOR)
        pairs = list(dict.fromkeys(keys))
        if not pairs:
            return 0
        deleted = 0
        with self._session() as session:
            for group in _chunks(pairs, LOOKUP_BATCH_SIZE):
                condition = or_(
                    *[
                        and_(record_cls.product_storage_id == storage_id, key_column == key)
                        for storage_id, key in group
                    ]
                )
                result = session.execute(delete(record_cls).where(condition))
                deleted += result.rowcount or 0
        return deleted

    def count(self, entity_type, **filters) -> int:
        """Number of stored records of a type matching column filters."""
        record_cls = RECORD_CLASSES[parse_entity_type(entity_type)]
        stmt = select(func.count()).select_from(record_cls)
        for column, value in filters.items():
            stmt = stmt.where(getattr(record_cls, column) == value)
        with self._session() as session:
            return session.scalar(stmt) or 0
