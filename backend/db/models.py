"""SQLAlchemy models for the data bank and scoring weights. Use Alembic for migrations."""
from __future__ import annotations

from datetime import datetime, timezone
from sqlalchemy import Column, Date, DateTime, Float, ForeignKey, Integer, JSON, LargeBinary, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .session import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp; DateTime columns are stored without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DataBankDocument(Base):
    __tablename__ = "data_bank_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column("user_id", String, nullable=False, index=True)
    filename = Column(String, nullable=False)
    content_type = Column("content_type", String, nullable=True)
    file_bytes = Column("file_bytes", LargeBinary, nullable=True)
    document_type = Column("document_type", String, nullable=False, default="unknown")
    extraction_status = Column("extraction_status", String, nullable=False, default="pending")
    pipeline_stage = Column("pipeline_stage", String, nullable=True)
    extraction_data = Column("extraction_data", JSONType, nullable=True)
    warnings = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    record_count = Column("record_count", Integer, nullable=True)
    source_firm = Column("source_firm", String, nullable=True)
    publication_date = Column("publication_date", String, nullable=True)
    created_at = Column("created_at", DateTime, default=utcnow)
    updated_at = Column("updated_at", DateTime, default=utcnow, onupdate=utcnow)

    sales_comps = relationship("SalesComp", back_populates="document", cascade="all, delete-orphan")
    pipeline_projects = relationship("PipelineProject", back_populates="document", cascade="all, delete-orphan")
    sentiment_signals = relationship(
        "MarketSentimentSignal", back_populates="document", cascade="all, delete-orphan"
    )


class SalesComp(Base):
    __tablename__ = "sales_comps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(
        "document_id", Integer, ForeignKey("data_bank_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column("user_id", String, nullable=False, index=True)
    property_name = Column("property_name", String, nullable=True)
    market = Column(String, nullable=True)
    metro = Column(String, nullable=True)
    submarket = Column(String, nullable=True)
    county = Column(String, nullable=True)
    state = Column(String, nullable=True)
    address = Column(String, nullable=True)
    property_type = Column("property_type", String, nullable=True)
    sale_date = Column("sale_date", Date, nullable=True)
    year_built = Column("year_built", Integer, nullable=True)
    year_renovated = Column("year_renovated", Integer, nullable=True)
    units = Column(Integer, nullable=True)
    avg_unit_sf = Column("avg_unit_sf", Float, nullable=True)
    avg_eff_rent = Column("avg_eff_rent", Float, nullable=True)
    sale_price = Column("sale_price", Float, nullable=True)
    price_per_unit = Column("price_per_unit", Float, nullable=True)
    price_per_sf = Column("price_per_sf", Float, nullable=True)
    cap_rate = Column("cap_rate", Float, nullable=True)  # decimal, 0.055
    cap_rate_qualifier = Column("cap_rate_qualifier", String, nullable=True)
    occupancy = Column(Float, nullable=True)  # decimal
    buyer = Column(String, nullable=True)
    seller = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column("created_at", DateTime, default=utcnow)

    document = relationship("DataBankDocument", back_populates="sales_comps")


class PipelineProject(Base):
    __tablename__ = "pipeline_projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(
        "document_id", Integer, ForeignKey("data_bank_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column("user_id", String, nullable=False, index=True)
    project_name = Column("project_name", String, nullable=True)
    address = Column(String, nullable=True)
    county = Column(String, nullable=True)
    metro = Column(String, nullable=True)
    submarket = Column(String, nullable=True)
    units = Column(Integer, nullable=True)
    status = Column(String, nullable=True)  # ProjectStatus value
    developer = Column(String, nullable=True)
    delivery_quarter = Column("delivery_quarter", String, nullable=True)
    start_quarter = Column("start_quarter", String, nullable=True)
    property_type = Column("property_type", String, nullable=True)
    created_at = Column("created_at", DateTime, default=utcnow)

    document = relationship("DataBankDocument", back_populates="pipeline_projects")


class SubmarketInventory(Base):
    __tablename__ = "submarket_inventory"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column("user_id", String, nullable=False, index=True)
    metro = Column(String, nullable=True)
    submarket = Column(String, nullable=False)
    total_units = Column("total_units", Integer, nullable=False)
    created_at = Column("created_at", DateTime, default=utcnow)
    updated_at = Column("updated_at", DateTime, default=utcnow, onupdate=utcnow)


class MarketSentimentSignal(Base):
    __tablename__ = "market_sentiment_signals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(
        "document_id", Integer, ForeignKey("data_bank_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column("user_id", String, nullable=False, index=True)
    signal_type = Column("signal_type", String, nullable=False)
    direction = Column(String, nullable=False)
    magnitude = Column(String, nullable=False)
    geography_source_label = Column("geography_source_label", String, nullable=True)
    geography_metro = Column("geography_metro", String, nullable=True)
    geography_submarket = Column("geography_submarket", String, nullable=True)
    time_reference = Column("time_reference", String, nullable=True)
    quantitative_value = Column("quantitative_value", String, nullable=True)
    narrative_summary = Column("narrative_summary", Text, nullable=False)
    verbatim_excerpt = Column("verbatim_excerpt", Text, nullable=True)
    confidence = Column(String, nullable=True)
    created_at = Column("created_at", DateTime, default=utcnow)

    document = relationship("DataBankDocument", back_populates="sentiment_signals")


class UserScoringWeights(Base):
    __tablename__ = "user_scoring_weights"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column("user_id", String, nullable=False, unique=True)
    economic_occupancy_weight = Column("economic_occupancy_weight", Integer, nullable=False, default=35)
    opex_ratio_weight = Column("opex_ratio_weight", Integer, nullable=False, default=30)
    supply_pipeline_weight = Column("supply_pipeline_weight", Integer, nullable=False, default=35)
    layer1_weight = Column("layer1_weight", Integer, nullable=False, default=30)
    layer2_weight = Column("layer2_weight", Integer, nullable=False, default=20)
    layer3_weight = Column("layer3_weight", Integer, nullable=False, default=50)
    preset_name = Column("preset_name", String, nullable=True)
    created_at = Column("created_at", DateTime, default=utcnow)
    updated_at = Column("updated_at", DateTime, default=utcnow, onupdate=utcnow)
