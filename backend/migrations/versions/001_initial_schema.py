"""
Alembic migration: initial schema for orders, payments and test rides.

Creates the catalogue tables the ordering core reads (vehicles, dealers,
promo codes), the order and booking aggregates, gateway payment orders and
refunds, stock reservations, idempotency records, the webhook audit log and
in-app notifications.

Revision ID: 001
Revises:
Create Date: 2025-01-15 09:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    "booking_status": ("pending", "confirmed", "cancelled", "completed"),
    "order_status": ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled"),
    "payment_status": ("pending", "paid", "partial_refund", "refunded", "failed"),
    "payment_type": ("full", "partial"),
    "discount_type": ("percentage", "fixed"),
    "payment_entity_type": ("test_ride", "vehicle_order"),
    "payment_order_status": ("created", "captured", "partial", "completed", "failed"),
    "refund_status": ("processing", "processed", "failed"),
}


def enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
        comment="Unique identifier for the record",
    )


def timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def money(name: str, nullable: bool = False, default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default=sa.text("0") if default else None,
    )


def upgrade() -> None:
    """
    Create all tables, enum types, constraints and indexes.
    """
    bind = op.get_bind()
    for name in ENUMS:
        enum(name).create(bind, checkfirst=True)

    op.create_table(
        "vehicles",
        uuid_pk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False, unique=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "colors",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *timestamps(),
        sa.CheckConstraint("stock_quantity >= 0", name="ck_vehicles_stock_non_negative"),
        sa.CheckConstraint("price > 0", name="ck_vehicles_price_positive"),
        comment="Vehicle catalogue with authoritative stock",
    )
    op.create_index("ix_vehicles_is_active", "vehicles", ["is_active"])

    op.create_table(
        "dealers",
        uuid_pk(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("business_name", sa.String(255), nullable=False),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *timestamps(),
    )

    op.create_table(
        "promo_codes",
        uuid_pk(),
        sa.Column("code", sa.String(50), nullable=False, unique=True),
        sa.Column("discount_type", enum("discount_type"), nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        money("max_discount", nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *timestamps(),
        sa.CheckConstraint("discount_value > 0", name="ck_promo_codes_value_positive"),
        sa.CheckConstraint("valid_until > valid_from", name="ck_promo_codes_window"),
    )

    op.create_table(
        "vehicle_orders",
        uuid_pk(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "vehicle_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("vehicles.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "dealer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("dealers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("color", sa.String(50), nullable=False),
        money("unit_price"),
        money("subtotal"),
        money("discount", default=True),
        money("taxes"),
        money("total_amount"),
        sa.Column("promo_code", sa.String(50), nullable=True),
        sa.Column("payment_type", enum("payment_type"), nullable=False),
        money("payment_amount"),
        money("amount_paid", default=True),
        money("refund_amount", default=True),
        sa.Column("stock_committed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("order_status", enum("order_status"), nullable=False),
        sa.Column("payment_status", enum("payment_status"), nullable=False),
        sa.Column("razorpay_order_id", sa.String(64), nullable=True, unique=True),
        sa.Column("razorpay_payment_id", sa.String(64), nullable=True),
        sa.Column("delivery_address", postgresql.JSONB(), nullable=False),
        sa.Column("billing_address", postgresql.JSONB(), nullable=True),
        sa.Column("contact_number", sa.String(20), nullable=False),
        sa.Column("alternate_contact_number", sa.String(20), nullable=True),
        sa.Column("special_instructions", sa.Text(), nullable=True),
        sa.Column("tracking_number", sa.String(100), nullable=True),
        sa.Column("status_notes", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
        sa.CheckConstraint("quantity >= 1", name="ck_vehicle_orders_quantity_positive"),
        sa.CheckConstraint("total_amount >= 0", name="ck_vehicle_orders_total_non_negative"),
        sa.CheckConstraint(
            "payment_amount <= total_amount",
            name="ck_vehicle_orders_payment_within_total",
        ),
        comment="Vehicle purchase orders",
    )
    op.create_index("ix_vehicle_orders_user_id", "vehicle_orders", ["user_id"])
    op.create_index(
        "ix_vehicle_orders_dealer_status", "vehicle_orders", ["dealer_id", "order_status"]
    )

    op.create_table(
        "test_ride_bookings",
        uuid_pk(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "vehicle_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("vehicles.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "dealer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("dealers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("preferred_date", sa.Date(), nullable=False),
        sa.Column("preferred_time", sa.Time(), nullable=False),
        sa.Column("confirmed_date", sa.Date(), nullable=True),
        sa.Column("confirmed_time", sa.Time(), nullable=True),
        sa.Column("status", enum("booking_status"), nullable=False),
        sa.Column("payment_status", enum("payment_status"), nullable=False),
        sa.Column("payment_waived", sa.Boolean(), nullable=False, server_default=sa.false()),
        money("deposit_amount"),
        sa.Column("confirmation_code", sa.String(16), nullable=False, unique=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("customer_phone", sa.String(20), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("dealer_notes", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("razorpay_order_id", sa.String(64), nullable=True, unique=True),
        sa.Column("razorpay_payment_id", sa.String(64), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
        comment="Test ride bookings with optional deposit payment",
    )
    op.create_index(
        "uq_test_ride_bookings_active_slot",
        "test_ride_bookings",
        ["user_id", "vehicle_id", "preferred_date", "preferred_time"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'confirmed')"),
    )
    op.create_index(
        "ix_test_ride_bookings_user_created", "test_ride_bookings", ["user_id", "created_at"]
    )
    op.create_index(
        "ix_test_ride_bookings_dealer_status", "test_ride_bookings", ["dealer_id", "status"]
    )

    op.create_table(
        "stock_reservations",
        uuid_pk(),
        sa.Column(
            "order_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("vehicle_orders.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "vehicle_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("vehicles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("reserved_until", sa.DateTime(timezone=True), nullable=False),
        *timestamps(),
        sa.CheckConstraint("quantity >= 1", name="ck_stock_reservations_quantity"),
    )
    op.create_index(
        "ix_stock_reservations_reserved_until", "stock_reservations", ["reserved_until"]
    )
    op.create_index("ix_stock_reservations_vehicle_id", "stock_reservations", ["vehicle_id"])

    op.create_table(
        "payment_orders",
        sa.Column("id", sa.String(64), primary_key=True, comment="Gateway order id"),
        sa.Column("entity_type", enum("payment_entity_type"), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        money("amount"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("receipt", sa.String(64), nullable=False),
        sa.Column("status", enum("payment_order_status"), nullable=False),
        sa.Column(
            "notes",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("razorpay_payment_id", sa.String(64), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        money("captured_amount", default=True),
        money("amount_paid", default=True),
        money("amount_due", default=True),
        money("refunded_amount", default=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_payment_orders_amount_positive"),
        sa.CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= captured_amount",
            name="ck_payment_orders_refund_bound",
        ),
        comment="Orders created on the payment gateway",
    )
    op.create_index("ix_payment_orders_entity", "payment_orders", ["entity_type", "entity_id"])
    op.create_index(
        "ix_payment_orders_razorpay_payment_id", "payment_orders", ["razorpay_payment_id"]
    )

    op.create_table(
        "refunds",
        sa.Column("id", sa.String(64), primary_key=True, comment="Gateway refund id"),
        sa.Column("payment_id", sa.String(64), nullable=False),
        sa.Column(
            "payment_order_id",
            sa.String(64),
            sa.ForeignKey("payment_orders.id", ondelete="SET NULL"),
            nullable=True,
        ),
        money("amount"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", enum("refund_status"), nullable=False),
        sa.Column("reference_type", enum("payment_entity_type"), nullable=True),
        sa.Column("reference_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("initiated_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("budget_claimed", sa.Boolean(), nullable=False, server_default=sa.true()),
        *timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
    )
    op.create_index("ix_refunds_payment_id", "refunds", ["payment_id"])

    op.create_table(
        "idempotency_records",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("scope", sa.String(50), nullable=False),
        sa.Column("response", postgresql.JSONB(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index(
        "ix_idempotency_records_created_at", "idempotency_records", ["created_at"]
    )

    op.create_table(
        "webhook_events",
        uuid_pk(),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("event_id", sa.String(100), nullable=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("raw_body", sa.Text(), nullable=True),
        sa.Column("handled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error", sa.Text(), nullable=True),
        *timestamps(),
    )
    op.create_index("ix_webhook_events_event_id", "webhook_events", ["event_id"])
    op.create_index(
        "ix_webhook_events_type_created", "webhook_events", ["event_type", "created_at"]
    )

    op.create_table(
        "notifications",
        uuid_pk(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        *timestamps(),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "is_read"])


def downgrade() -> None:
    """
    Drop everything created by ``upgrade``.
    """
    for table in (
        "notifications",
        "webhook_events",
        "idempotency_records",
        "refunds",
        "payment_orders",
        "stock_reservations",
        "test_ride_bookings",
        "vehicle_orders",
        "promo_codes",
        "dealers",
        "vehicles",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        enum(name).drop(bind, checkfirst=True)
