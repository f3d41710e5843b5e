"""Create stock ledger, allocation, receipt and audit tables.

Revision ID: 0001_initial_stock_ledger
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from typing import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "0001_initial_stock_ledger"
down_revision = None
branch_labels = None
depends_on = None


LOCATION_KINDS = ("warehouse", "vehicle", "supplier", "job_site", "other")
MOVEMENT_REASONS = ("purchase_receipt", "job_usage", "transfer", "adjustment", "reversal")
ALLOCATION_STATUSES = ("reserved", "consumed", "cancelled")
LABEL_SOURCES = ("catalog_lookup", "manual_relink", "legacy_import")
RECEIPT_STATUSES = ("open", "cleared")
PO_LINE_STATUSES = ("open", "received", "cancelled")


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    return bool(insp.has_table(table_name))


def _enum(name: str, values: Sequence[str]) -> sa.Enum:
    # Stored as VARCHAR + CHECK, matching native_enum=False on the models.
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # ------------------------------------------------------------------
    # Neighbouring records (catalog, fleet, purchasing, planning)
    # ------------------------------------------------------------------
    if not _table_exists("catalog_items"):
        op.create_table(
            "catalog_items",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        )

    if not _table_exists("vehicles"):
        op.create_table(
            "vehicles",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        )

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------
    op.create_table(
        "stock_locations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(64), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("kind", _enum("stock_location_kind_enum", LOCATION_KINDS), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("owner_ref", sa.String(64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_stock_locations_id", "stock_locations", ["id"])
    op.create_index("ix_stock_locations_code", "stock_locations", ["code"])
    op.create_index("ix_stock_locations_kind", "stock_locations", ["kind"])
    op.create_index("ix_stock_locations_is_active", "stock_locations", ["is_active"])
    op.create_index("ix_stock_locations_owner_ref", "stock_locations", ["owner_ref"])
    op.create_index("ix_stock_locations_kind_active", "stock_locations", ["kind", "is_active"])
    op.create_index(
        "uq_stock_locations_active_warehouse",
        "stock_locations",
        ["kind"],
        unique=True,
        sqlite_where=sa.text("kind = 'warehouse' AND is_active = 1"),
        postgresql_where=sa.text("kind = 'warehouse' AND is_active"),
    )

    if not _table_exists("purchase_order_lines"):
        op.create_table(
            "purchase_order_lines",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("purchase_order_ref", sa.String(64), nullable=False),
            sa.Column("item_id", sa.String(64), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column(
                "destination_location_id",
                sa.Integer(),
                sa.ForeignKey("stock_locations.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("status", _enum("purchase_order_line_status_enum", PO_LINE_STATUSES), nullable=False),
        )
        op.create_index("ix_purchase_order_lines_id", "purchase_order_lines", ["id"])
        op.create_index("ix_purchase_order_lines_purchase_order_ref", "purchase_order_lines", ["purchase_order_ref"])
        op.create_index("ix_purchase_order_lines_item_id", "purchase_order_lines", ["item_id"])
        op.create_index("ix_purchase_order_lines_status", "purchase_order_lines", ["status"])
        op.create_index(
            "ix_purchase_order_lines_destination_status",
            "purchase_order_lines",
            ["destination_location_id", "status"],
        )

    if not _table_exists("project_requirement_lines"):
        op.create_table(
            "project_requirement_lines",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("project_id", sa.String(64), nullable=True),
            sa.Column("visit_id", sa.String(64), nullable=True),
            sa.Column(
                "catalog_item_id",
                sa.String(64),
                sa.ForeignKey("catalog_items.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("catalog_item_name", sa.String(255), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("created_by_id", sa.String(64), nullable=True),
            _ts("created_at"),
        )
        op.create_index("ix_project_requirement_lines_project_id", "project_requirement_lines", ["project_id"])
        op.create_index("ix_project_requirement_lines_visit_id", "project_requirement_lines", ["visit_id"])

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    op.create_table(
        "stock_movements",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column(
            "from_location_id",
            sa.Integer(),
            sa.ForeignKey("stock_locations.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column(
            "to_location_id",
            sa.Integer(),
            sa.ForeignKey("stock_locations.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("reason", _enum("stock_movement_reason_enum", MOVEMENT_REASONS), nullable=False),
        sa.Column("reference_type", sa.String(64), nullable=False),
        sa.Column("reference_id", sa.String(128), nullable=False),
        sa.Column(
            "reversal_of_id",
            sa.String(36),
            sa.ForeignKey("stock_movements.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("performed_by_id", sa.String(64), nullable=True),
        sa.Column("performed_by_email", sa.String(255), nullable=True),
        sa.Column("performed_by_name", sa.String(255), nullable=True),
        _ts("performed_at"),
        sa.Column("idempotency_key", sa.String(320), nullable=False),
        _ts("created_at"),
        sa.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        sa.CheckConstraint(
            "from_location_id IS NOT NULL OR to_location_id IS NOT NULL",
            name="ck_stock_movements_has_location",
        ),
        sa.UniqueConstraint("idempotency_key", name="uq_stock_movements_idempotency_key"),
        sa.UniqueConstraint(
            "reference_type", "reference_id", "item_id", name="uq_stock_movements_reference_item"
        ),
    )
    op.create_index("ix_stock_movements_item_id", "stock_movements", ["item_id"])
    op.create_index("ix_stock_movements_reason", "stock_movements", ["reason"])
    op.create_index("ix_stock_movements_reversal_of_id", "stock_movements", ["reversal_of_id"])
    op.create_index("ix_stock_movements_performed_at", "stock_movements", ["performed_at"])
    op.create_index("ix_stock_movements_from_item", "stock_movements", ["from_location_id", "item_id"])
    op.create_index("ix_stock_movements_to_item", "stock_movements", ["to_location_id", "item_id"])
    op.create_index("ix_stock_movements_reference", "stock_movements", ["reference_type", "reference_id"])

    op.create_table(
        "stock_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "location_id",
            sa.Integer(),
            sa.ForeignKey("stock_locations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "last_movement_id",
            sa.String(36),
            sa.ForeignKey("stock_movements.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("updated_at"),
        sa.UniqueConstraint("location_id", "item_id", name="uq_stock_balances_location_item"),
        sa.CheckConstraint("quantity >= 0", name="ck_stock_balances_quantity_non_negative"),
    )
    op.create_index("ix_stock_balances_id", "stock_balances", ["id"])
    op.create_index("ix_stock_balances_location_id", "stock_balances", ["location_id"])
    op.create_index("ix_stock_balances_item_id", "stock_balances", ["item_id"])

    # ------------------------------------------------------------------
    # Allocations / consumptions
    # ------------------------------------------------------------------
    op.create_table(
        "stock_allocations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(64), nullable=True),
        sa.Column("visit_id", sa.String(64), nullable=True),
        sa.Column("item_id", sa.String(64), nullable=True),
        sa.Column("catalog_item_name", sa.String(255), nullable=False),
        sa.Column("qty_allocated", sa.Integer(), nullable=False),
        sa.Column(
            "source_location_id",
            sa.Integer(),
            sa.ForeignKey("stock_locations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", _enum("stock_allocation_status_enum", ALLOCATION_STATUSES), nullable=False),
        sa.Column("needs_relink", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("label_source", _enum("stock_allocation_label_source_enum", LABEL_SOURCES), nullable=True),
        sa.Column(
            "requirement_line_id",
            sa.String(36),
            sa.ForeignKey("project_requirement_lines.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_by_id", sa.String(64), nullable=True),
        sa.Column("created_by_email", sa.String(255), nullable=True),
        sa.Column("created_by_name", sa.String(255), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("qty_allocated > 0", name="ck_stock_allocations_qty_positive"),
        sa.CheckConstraint(
            "project_id IS NOT NULL OR visit_id IS NOT NULL",
            name="ck_stock_allocations_has_owner",
        ),
    )
    op.create_index("ix_stock_allocations_project_id", "stock_allocations", ["project_id"])
    op.create_index("ix_stock_allocations_visit_id", "stock_allocations", ["visit_id"])
    op.create_index("ix_stock_allocations_item_id", "stock_allocations", ["item_id"])
    op.create_index("ix_stock_allocations_status", "stock_allocations", ["status"])
    op.create_index("ix_stock_allocations_needs_relink", "stock_allocations", ["needs_relink"])
    op.create_index("ix_stock_allocations_project_status", "stock_allocations", ["project_id", "status"])

    op.create_table(
        "stock_consumptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "allocation_id",
            sa.String(36),
            sa.ForeignKey("stock_allocations.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("project_id", sa.String(64), nullable=True),
        sa.Column("visit_id", sa.String(64), nullable=True),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("qty_consumed", sa.Integer(), nullable=False),
        sa.Column(
            "consumed_from_location_id",
            sa.Integer(),
            sa.ForeignKey("stock_locations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "movement_id",
            sa.String(36),
            sa.ForeignKey("stock_movements.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("consumed_by_id", sa.String(64), nullable=True),
        sa.Column("consumed_by_email", sa.String(255), nullable=True),
        sa.Column("consumed_by_name", sa.String(255), nullable=True),
        _ts("consumed_at"),
        sa.CheckConstraint("qty_consumed > 0", name="ck_stock_consumptions_qty_positive"),
    )
    op.create_index("ix_stock_consumptions_allocation_id", "stock_consumptions", ["allocation_id"])
    op.create_index("ix_stock_consumptions_project_id", "stock_consumptions", ["project_id"])
    op.create_index("ix_stock_consumptions_visit_id", "stock_consumptions", ["visit_id"])
    op.create_index("ix_stock_consumptions_item_id", "stock_consumptions", ["item_id"])

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------
    op.create_table(
        "stock_receipts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("confirmation_ref", sa.String(128), nullable=True),
        sa.Column("delivery_run_id", sa.String(64), nullable=True),
        sa.Column("project_id", sa.String(64), nullable=True),
        sa.Column(
            "location_id",
            sa.Integer(),
            sa.ForeignKey("stock_locations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", _enum("stock_receipt_status_enum", RECEIPT_STATUSES), nullable=False),
        _ts("received_at"),
        _ts("cleared_at", nullable=True),
        sa.Column("cleared_by_id", sa.String(64), nullable=True),
        sa.Column("cleared_by_email", sa.String(255), nullable=True),
        sa.Column("cleared_by_name", sa.String(255), nullable=True),
        sa.UniqueConstraint("confirmation_ref", name="uq_stock_receipts_confirmation_ref"),
    )
    op.create_index("ix_stock_receipts_delivery_run_id", "stock_receipts", ["delivery_run_id"])
    op.create_index("ix_stock_receipts_project_id", "stock_receipts", ["project_id"])
    op.create_index("ix_stock_receipts_status", "stock_receipts", ["status"])
    op.create_index("ix_stock_receipts_run_status", "stock_receipts", ["delivery_run_id", "status"])

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------
    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("actor_email", sa.String(255), nullable=True),
        sa.Column("actor_name", sa.String(255), nullable=True),
        _ts("occurred_at"),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_audit_events_id", "audit_events", ["id"])
    op.create_index("ix_audit_events_entity_type", "audit_events", ["entity_type"])
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"])
    op.create_index("ix_audit_events_action", "audit_events", ["action"])
    op.create_index("ix_audit_events_actor_id", "audit_events", ["actor_id"])
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_correlation_id", "audit_events", ["correlation_id"])
    op.create_index("ix_audit_events_entity", "audit_events", ["entity_type", "entity_id"])
    op.create_index("ix_audit_events_time_desc", "audit_events", [sa.text("occurred_at DESC")])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("stock_receipts")
    op.drop_table("stock_consumptions")
    op.drop_table("stock_allocations")
    op.drop_table("stock_balances")
    op.drop_table("stock_movements")
    op.drop_table("project_requirement_lines")
    op.drop_table("purchase_order_lines")
    op.drop_table("stock_locations")
    op.drop_table("vehicles")
    op.drop_table("catalog_items")
