"""outbound ledger initial schema

Revision ID: 4b2f0c1d9a10
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4b2f0c1d9a10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TZ = sa.DateTime(timezone=True)

demand_status = sa.Enum("pending", "shipped", "cancelled", name="demand_status")
box_type = sa.Enum("whole_box", "mixed_box", name="box_type")
inventory_status = sa.Enum(
    "pending_outbound", "partially_outbound", "fully_outbound", "cancelled", name="inventory_status"
)
shipment_status = sa.Enum("preparing", "shipped", "cancelled", name="shipment_status")
completion_status = sa.Enum("partial", "complete", name="completion_status")
session_state = sa.Enum("open", "finalized", name="session_state")
resolution = sa.Enum("add", "replace", "new", name="resolution")


def upgrade() -> None:
    op.create_table(
        "demand_lines",
        sa.Column("record_num", sa.BigInteger(), primary_key=True),
        sa.Column("need_num", sa.String(32), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("country", sa.String(64), nullable=False),
        sa.Column("marketplace", sa.String(64), nullable=False),
        sa.Column("shipping_method", sa.String(64), nullable=False),
        sa.Column("deadline", sa.Date()),
        sa.Column("status", demand_status, nullable=False),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("updated_at", TZ, nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_demand_quantity_pos"),
    )
    op.create_index("ix_demand_lines_need_num", "demand_lines", ["need_num"])
    op.create_index("ix_demand_sku_country_marketplace", "demand_lines", ["sku", "country", "marketplace"])

    op.create_table(
        "inventory_units",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("country", sa.String(64), nullable=False),
        sa.Column("marketplace", sa.String(64)),
        sa.Column("box_type", box_type, nullable=False),
        sa.Column("mix_box_num", sa.String(64)),
        sa.Column("total_quantity", sa.Integer(), nullable=False),
        sa.Column("total_boxes", sa.Integer(), nullable=False),
        sa.Column("shipped_quantity", sa.Integer(), nullable=False),
        sa.Column("status", inventory_status, nullable=False),
        sa.Column("operator", sa.String(64)),
        sa.Column("packer", sa.String(64)),
        sa.Column("packed_at", TZ, nullable=False),
        sa.Column("shipped_at", TZ),
        sa.Column("last_updated_at", TZ, nullable=False),
        sa.Column("remark", sa.Text()),
        sa.CheckConstraint("total_quantity > 0", name="ck_unit_total_pos"),
        sa.CheckConstraint("total_boxes >= 0", name="ck_unit_boxes_nonneg"),
        sa.CheckConstraint("shipped_quantity >= 0", name="ck_unit_shipped_nonneg"),
        sa.CheckConstraint("shipped_quantity <= total_quantity", name="ck_unit_shipped_le_total"),
    )
    op.create_index("ix_inventory_units_mix_box_num", "inventory_units", ["mix_box_num"])
    op.create_index("ix_unit_sku_country_status", "inventory_units", ["sku", "country", "status"])

    op.create_table(
        "shipment_records",
        sa.Column("shipment_id", sa.BigInteger(), primary_key=True),
        sa.Column("shipment_number", sa.String(32), nullable=False, unique=True),
        sa.Column("operator", sa.String(64), nullable=False),
        sa.Column("total_boxes", sa.Integer(), nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False),
        sa.Column("status", shipment_status, nullable=False),
        sa.Column("shipping_method", sa.String(64)),
        sa.Column("logistics_provider", sa.String(128)),
        sa.Column("remark", sa.Text()),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("updated_at", TZ, nullable=False),
    )
    op.create_index("ix_shipment_records_created", "shipment_records", ["created_at"])

    op.create_table(
        "shipment_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "shipment_id",
            sa.BigInteger(),
            sa.ForeignKey("shipment_records.shipment_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("order_item_id", sa.BigInteger(), sa.ForeignKey("demand_lines.record_num", ondelete="RESTRICT")),
        sa.Column("manual_sentinel", sa.Integer()),
        sa.Column("need_num", sa.String(64), nullable=False),
        sa.Column("local_sku", sa.String(64), nullable=False),
        sa.Column("amz_sku", sa.String(64), nullable=False),
        sa.Column("country", sa.String(64), nullable=False),
        sa.Column("marketplace", sa.String(64)),
        sa.Column("requested_quantity", sa.Integer(), nullable=False),
        sa.Column("shipped_quantity", sa.Integer(), nullable=False),
        sa.Column("whole_boxes", sa.Integer(), nullable=False),
        sa.Column("mixed_box_quantity", sa.Integer(), nullable=False),
        sa.Column("created_at", TZ, nullable=False),
        sa.CheckConstraint("shipped_quantity > 0", name="ck_shipment_line_qty_pos"),
        sa.CheckConstraint("requested_quantity >= 0", name="ck_shipment_line_requested_nonneg"),
    )
    op.create_index("ix_shipment_lines_shipment_id", "shipment_lines", ["shipment_id"])
    op.create_index("ix_shipment_lines_order_item_id", "shipment_lines", ["order_item_id"])

    op.create_table(
        "shipment_allocations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "shipment_line_id",
            sa.BigInteger(),
            sa.ForeignKey("shipment_lines.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "unit_id",
            sa.BigInteger(),
            sa.ForeignKey("inventory_units.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_allocation_qty_pos"),
    )
    op.create_index("ix_shipment_allocations_shipment_line_id", "shipment_allocations", ["shipment_line_id"])
    op.create_index("ix_shipment_allocations_unit_id", "shipment_allocations", ["unit_id"])

    op.create_table(
        "order_shipment_relations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("need_num", sa.String(64), nullable=False),
        sa.Column(
            "shipment_id",
            sa.BigInteger(),
            sa.ForeignKey("shipment_records.shipment_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("total_requested", sa.Integer(), nullable=False),
        sa.Column("total_shipped", sa.Integer(), nullable=False),
        sa.Column("completion_status", completion_status, nullable=False),
        sa.Column("manual_sentinel", sa.Integer()),
        sa.Column("created_at", TZ, nullable=False),
        sa.UniqueConstraint("shipment_id", "need_num", name="uq_relation_shipment_need"),
    )
    op.create_index("ix_order_shipment_relations_need_num", "order_shipment_relations", ["need_num"])
    op.create_index("ix_order_shipment_relations_shipment_id", "order_shipment_relations", ["shipment_id"])

    op.create_table(
        "resolution_sessions",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("token", sa.String(36), nullable=False, unique=True),
        sa.Column("country", sa.String(64), nullable=False),
        sa.Column("marketplace", sa.String(64), nullable=False),
        sa.Column("shipping_method", sa.String(64), nullable=False),
        sa.Column("deadline", sa.Date()),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("state", session_state, nullable=False),
        sa.Column("need_num", sa.String(32)),
        sa.Column("created_at", TZ, nullable=False),
        sa.Column("finalized_at", TZ),
    )

    op.create_table(
        "resolution_items",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "session_id",
            sa.BigInteger(),
            sa.ForeignKey("resolution_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("token", sa.String(36), nullable=False, unique=True),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("candidate_quantity", sa.Integer(), nullable=False),
        sa.Column("conflicted", sa.Boolean(), nullable=False),
        sa.Column("existing_record_num", sa.Integer()),
        sa.Column("existing_remaining_quantity", sa.Integer()),
        sa.Column("matched_record_nums", sa.JSON(), nullable=False),
        sa.Column("resolution", resolution),
        sa.Column("result_quantity", sa.Integer()),
        sa.Column("applied_at", TZ),
        sa.Column("last_error", sa.Text()),
        sa.UniqueConstraint("session_id", "position", name="uq_resolution_item_position"),
        sa.CheckConstraint("candidate_quantity > 0", name="ck_resolution_candidate_pos"),
    )
    op.create_index("ix_resolution_items_session_id", "resolution_items", ["session_id"])

    op.create_table(
        "number_sequences",
        sa.Column("scope", sa.String(16), primary_key=True),
        sa.Column("day", sa.String(8), primary_key=True),
        sa.Column("last_value", sa.Integer(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("number_sequences")
    op.drop_table("resolution_items")
    op.drop_table("resolution_sessions")
    op.drop_table("order_shipment_relations")
    op.drop_table("shipment_allocations")
    op.drop_table("shipment_lines")
    op.drop_table("shipment_records")
    op.drop_table("inventory_units")
    op.drop_table("demand_lines")

    bind = op.get_bind()
    for enum in (
        resolution,
        session_state,
        completion_status,
        shipment_status,
        inventory_status,
        box_type,
        demand_status,
    ):
        enum.drop(bind, checkfirst=True)
