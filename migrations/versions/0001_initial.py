"""Initial schema: bookings, payment_intents, settlements, notification_logs"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bookings",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("item_id", sa.String, nullable=False),
        sa.Column("customer_id", sa.String, nullable=False),
        sa.Column("owner_id", sa.String, nullable=False),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("owner_email", sa.String(255), nullable=True),
        sa.Column("price_per_unit_cents", sa.Integer, nullable=False),
        sa.Column("rental_duration", sa.Integer, nullable=False),
        sa.Column("rental_period_unit", sa.String(10), nullable=False, server_default="day"),
        sa.Column("delivery_charge_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("grand_total_cents", sa.Integer, nullable=False),
        sa.Column("payment_method", sa.String(10), nullable=False),
        sa.Column("pickup_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("return_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("payment_attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cash_confirmed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_bookings_status", "bookings", ["status"])
    op.create_index("idx_bookings_customer", "bookings", ["customer_id"])
    op.create_index("idx_bookings_owner", "bookings", ["owner_id"])
    op.create_index("idx_bookings_item", "bookings", ["item_id"])
    op.create_index("idx_bookings_intent", "bookings", ["payment_intent_id"])
    op.create_index("idx_bookings_return", "bookings", ["return_date"])
    op.create_index("idx_bookings_created", "bookings", ["created_at"])

    op.create_table(
        "payment_intents",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("booking_id", sa.String, nullable=False),
        sa.Column("amount_cents", sa.Integer, nullable=False),
        sa.Column("provider", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("idempotency_key", sa.String(255), unique=True, nullable=False),
        sa.Column("next_action_url", sa.String(1024), nullable=True),
        sa.Column("requires_refund", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_intents_booking", "payment_intents", ["booking_id"])
    op.create_index("idx_intents_status", "payment_intents", ["status"])

    op.create_table(
        "settlements",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.String, unique=True, nullable=False),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("rental_amount_cents", sa.Integer, nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("commission_amount_cents", sa.Integer, nullable=False),
        sa.Column("owner_share_cents", sa.Integer, nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.String, nullable=False),
        sa.Column("recipient_id", sa.String, nullable=False),
        sa.Column("recipient_email", sa.String(255), nullable=True),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("status", sa.String(10), nullable=False, server_default="idle"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_notifications_booking", "notification_logs", ["booking_id"])
    op.create_index("idx_notifications_status", "notification_logs", ["status"])


def downgrade() -> None:
    op.drop_table("notification_logs")
    op.drop_table("settlements")
    op.drop_table("payment_intents")
    op.drop_table("bookings")
