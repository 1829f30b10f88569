from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(10, 2)


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, MONEY, nullable=nullable)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    op.create_table(
        "spaces",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("host_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        _money("rate_per_hour"),
        sa.Column("min_hours", sa.Integer(), nullable=True),
        sa.Column("discount_hours", sa.Integer(), nullable=True),
        sa.Column("time_zone", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_spaces_host_id", "spaces", ["host_id"])

    op.create_table(
        "availabilities",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("space_id", sa.String(), sa.ForeignKey("spaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("day", sa.String(), nullable=False),
        sa.Column("start_time", sa.String(), nullable=False),
        sa.Column("end_time", sa.String(), nullable=False),
    )
    op.create_index("ix_availabilities_space_id", "availabilities", ["space_id"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("host_id", sa.String(), nullable=False),
        sa.Column("space_id", sa.String(), sa.ForeignKey("spaces.id"), nullable=False),
        sa.Column("vehicle_id", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("canceled_by", sa.String(), nullable=True),
        sa.Column("day", sa.String(), nullable=False),
        sa.Column("start_date", sa.String(), nullable=False),
        sa.Column("start_time", sa.String(), nullable=False),
        sa.Column("end_date", sa.String(), nullable=False),
        sa.Column("end_time", sa.String(), nullable=False),
        _money("gross_amount"),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"])
    op.create_index("ix_bookings_host_id", "bookings", ["host_id"])
    op.create_index("ix_bookings_space_id", "bookings", ["space_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_space_dates", "bookings", ["space_id", "start_date", "end_date"])

    op.create_table(
        "booking_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("client_checkin", sa.JSON(), nullable=True),
        sa.Column("host_checkin", sa.JSON(), nullable=True),
        sa.Column("client_checkout", sa.JSON(), nullable=True),
        sa.Column("host_checkout", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    schedule = [
        sa.Column(f"{prefix}_{name}", sa.String(), nullable=False)
        for prefix in ("old", "new")
        for name in ("day", "start_date", "start_time", "end_date", "end_time")
    ]
    op.create_table(
        "time_changes",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("proposed_by", sa.String(), nullable=False),
        sa.Column("proposer_role", sa.String(), nullable=False),
        *schedule,
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("responded_by", sa.String(), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_time_changes_booking_id", "time_changes", ["booking_id"])
    op.create_index(
        "uq_time_changes_one_pending",
        "time_changes",
        ["booking_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.id"), nullable=False, unique=True),
        _money("gross_amount"),
        _money("stripe_fee"),
        _money("platform_fee"),
        _money("tax_fee"),
        _money("total_amount"),
        _money("refund_amount", nullable=True),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(), nullable=True),
        sa.Column("stripe_client_secret", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payments_stripe_payment_intent_id", "payments", ["stripe_payment_intent_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    op.create_table(
        "stripe_accounts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False, unique=True),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "payouts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("stripe_account_id", sa.String(), sa.ForeignKey("stripe_accounts.id"), nullable=False),
        sa.Column("host_id", sa.String(), nullable=False),
        _money("gross_amount"),
        _money("stripe_fee"),
        _money("platform_fee"),
        _money("tax_fee"),
        _money("net_amount"),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("transfer_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("payout_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payouts_stripe_account_id", "payouts", ["stripe_account_id"])
    op.create_index("ix_payouts_host_id", "payouts", ["host_id"])
    op.create_index("ix_payouts_status", "payouts", ["status"])
    op.create_index("ix_payouts_transfer_id", "payouts", ["transfer_id"])

    op.create_table(
        "payout_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("payout_id", sa.String(), sa.ForeignKey("payouts.id"), nullable=False),
        sa.Column("booking_id", sa.String(), sa.ForeignKey("bookings.id"), nullable=False, unique=True),
        _money("gross_amount"),
        _money("stripe_fee"),
        _money("platform_fee"),
        _money("tax_fee"),
        _money("net_amount"),
    )
    op.create_index("ix_payout_items_payout_id", "payout_items", ["payout_id"])


def downgrade():
    op.drop_table("payout_items")
    op.drop_table("payouts")
    op.drop_table("stripe_accounts")
    op.drop_table("payments")
    op.drop_index("uq_time_changes_one_pending", table_name="time_changes")
    op.drop_table("time_changes")
    op.drop_table("booking_logs")
    op.drop_table("bookings")
    op.drop_table("availabilities")
    op.drop_table("spaces")
