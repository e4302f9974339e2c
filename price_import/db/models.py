"""
ORM tables for imported products, their regional and competitor prices,
and the import operations that produced them.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
)

from price_import.db.session import Base, get_engine


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class ProductRecord(Base):
    __tablename__ = "products"
    __table_args__ = (
        Index("ix_products_client_product", "client_id", "product_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, nullable=False)
    product_id = Column(String(255), nullable=False)
    product_name = Column(String(500))
    product_brand = Column(String(255))
    product_bar = Column(String(255))
    product_description = Column(Text)
    product_url = Column(String(1000))
    product_category1 = Column(String(255))
    product_category2 = Column(String(255))
    product_category3 = Column(String(255))
    product_price = Column(Float)
    product_analog = Column(String(500))
    product_additional1 = Column(String(500))
    product_additional2 = Column(String(500))
    product_additional3 = Column(String(500))
    product_additional4 = Column(String(500))
    product_additional5 = Column(String(500))
    data_source = Column(String(50))
    operation_id = Column(String(36), index=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class RegionRecord(Base):
    __tablename__ = "region_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_storage_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id = Column(Integer, nullable=False)
    product_id = Column(String(255))
    region = Column(String(255), nullable=False)
    region_address = Column(String(1000))
    region_price = Column(Float)
    operation_id = Column(String(36), index=True)


class CompetitorRecord(Base):
    __tablename__ = "competitor_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_storage_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id = Column(Integer, nullable=False)
    product_id = Column(String(255))
    competitor_name = Column(String(400), nullable=False)
    competitor_price = Column(Float)
    competitor_promotional_price = Column(Float)
    competitor_additional_price = Column(Float)
    competitor_time = Column(Time)
    competitor_date = Column(Date)
    competitor_local_date_time = Column(DateTime)
    competitor_stock_status = Column(String(255))
    competitor_commentary = Column(Text)
    competitor_product_name = Column(String(500))
    competitor_additional = Column(String(500))
    competitor_additional2 = Column(String(500))
    competitor_url = Column(String(1100))
    competitor_web_cache_url = Column(String(1100))
    operation_id = Column(String(36), index=True)


class ImportOperation(Base):
    __tablename__ = "import_operations"

    id = Column(String(36), primary_key=True)
    client_id = Column(Integer, nullable=False, index=True)
    file_name = Column(String(500))
    file_hash = Column(String(64))
    entity_type = Column(String(50), nullable=False)
    duplicate_handling = Column(String(20))
    status = Column(String(20), nullable=False, default="INIT", index=True)
    total_records = Column(Integer, default=0)
    processed_records = Column(Integer, default=0)
    progress = Column(Integer, default=0)
    success_records = Column(Integer, default=0)
    failed_records = Column(Integer, default=0)
    skipped_records = Column(Integer, default=0)
    errors = Column(JSON)
    truncated_error_count = Column(Integer, default=0)
    error_message = Column(Text)
    cancel_reason = Column(Text)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime)


def create_import_tables(engine=None) -> None:
    """Create all pipeline tables if they do not exist yet."""
    Base.metadata.create_all(bind=engine or get_engine())
