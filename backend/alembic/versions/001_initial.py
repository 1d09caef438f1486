"""Initial schema: data bank documents, sales comps, pipeline projects, inventory, sentiment signals, scoring weights

Revision ID: 001
Revises:
Create Date: 2025-01-01 00:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "data_bank_documents",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=True),
        sa.Column("file_bytes", sa.LargeBinary(), nullable=True),
        sa.Column("document_type", sa.String(), nullable=False),
        sa.Column("extraction_status", sa.String(), nullable=False),
        sa.Column("pipeline_stage", sa.String(), nullable=True),
        sa.Column("extraction_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("warnings", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("record_count", sa.Integer(), nullable=True),
        sa.Column("source_firm", sa.String(), nullable=True),
        sa.Column("publication_date", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_data_bank_documents_user_id", "data_bank_documents", ["user_id"])

    op.create_table(
        "sales_comps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("document_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("property_name", sa.String(), nullable=True),
        sa.Column("market", sa.String(), nullable=True),
        sa.Column("metro", sa.String(), nullable=True),
        sa.Column("submarket", sa.String(), nullable=True),
        sa.Column("county", sa.String(), nullable=True),
        sa.Column("state", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("property_type", sa.String(), nullable=True),
        sa.Column("sale_date", sa.Date(), nullable=True),
        sa.Column("year_built", sa.Integer(), nullable=True),
        sa.Column("year_renovated", sa.Integer(), nullable=True),
        sa.Column("units", sa.Integer(), nullable=True),
        sa.Column("avg_unit_sf", sa.Float(), nullable=True),
        sa.Column("avg_eff_rent", sa.Float(), nullable=True),
        sa.Column("sale_price", sa.Float(), nullable=True),
        sa.Column("price_per_unit", sa.Float(), nullable=True),
        sa.Column("price_per_sf", sa.Float(), nullable=True),
        sa.Column("cap_rate", sa.Float(), nullable=True),
        sa.Column("cap_rate_qualifier", sa.String(), nullable=True),
        sa.Column("occupancy", sa.Float(), nullable=True),
        sa.Column("buyer", sa.String(), nullable=True),
        sa.Column("seller", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["document_id"], ["data_bank_documents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_comps_document_id", "sales_comps", ["document_id"])
    op.create_index("ix_sales_comps_user_id", "sales_comps", ["user_id"])

    op.create_table(
        "pipeline_projects",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("document_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("project_name", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("county", sa.String(), nullable=True),
        sa.Column("metro", sa.String(), nullable=True),
        sa.Column("submarket", sa.String(), nullable=True),
        sa.Column("units", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("developer", sa.String(), nullable=True),
        sa.Column("delivery_quarter", sa.String(), nullable=True),
        sa.Column("start_quarter", sa.String(), nullable=True),
        sa.Column("property_type", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["document_id"], ["data_bank_documents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_projects_document_id", "pipeline_projects", ["document_id"])
    op.create_index("ix_pipeline_projects_user_id", "pipeline_projects", ["user_id"])

    op.create_table(
        "submarket_inventory",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("metro", sa.String(), nullable=True),
        sa.Column("submarket", sa.String(), nullable=False),
        sa.Column("total_units", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_submarket_inventory_user_id", "submarket_inventory", ["user_id"])

    op.create_table(
        "market_sentiment_signals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("document_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("signal_type", sa.String(), nullable=False),
        sa.Column("direction", sa.String(), nullable=False),
        sa.Column("magnitude", sa.String(), nullable=False),
        sa.Column("geography_source_label", sa.String(), nullable=True),
        sa.Column("geography_metro", sa.String(), nullable=True),
        sa.Column("geography_submarket", sa.String(), nullable=True),
        sa.Column("time_reference", sa.String(), nullable=True),
        sa.Column("quantitative_value", sa.String(), nullable=True),
        sa.Column("narrative_summary", sa.Text(), nullable=False),
        sa.Column("verbatim_excerpt", sa.Text(), nullable=True),
        sa.Column("confidence", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["document_id"], ["data_bank_documents.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_market_sentiment_signals_document_id", "market_sentiment_signals", ["document_id"])
    op.create_index("ix_market_sentiment_signals_user_id", "market_sentiment_signals", ["user_id"])

    op.create_table(
        "user_scoring_weights",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("economic_occupancy_weight", sa.Integer(), nullable=False),
        sa.Column("opex_ratio_weight", sa.Integer(), nullable=False),
        sa.Column("supply_pipeline_weight", sa.Integer(), nullable=False),
        sa.Column("layer1_weight", sa.Integer(), nullable=False),
        sa.Column("layer2_weight", sa.Integer(), nullable=False),
        sa.Column("layer3_weight", sa.Integer(), nullable=False),
        sa.Column("preset_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_scoring_weights_user_id", "user_scoring_weights", ["user_id"], unique=True)


def downgrade() -> None:
    op.drop_table("user_scoring_weights")
    op.drop_table("market_sentiment_signals")
    op.drop_table("submarket_inventory")
    op.drop_table("pipeline_projects")
    op.drop_table("sales_comps")
    op.drop_table("data_bank_documents")
