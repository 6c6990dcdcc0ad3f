"""Initial schema: pricing catalog, bookings, fleet, trip assignments"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_ASSIGNMENT = sa.text(
    "status IN ('assigned', 'accepted', 'en_route_pickup', 'arrived', 'in_progress')"
)


def upgrade() -> None:
    op.create_table(
        "vehicle_types",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("name", sa.String(50), unique=True, nullable=False),
        sa.Column("passenger_capacity", sa.Integer, nullable=False, server_default="4"),
        sa.Column("luggage_capacity", sa.Integer, nullable=False, server_default="4"),
        sa.Column("minimum_fare", sa.Numeric(10, 2), nullable=True),
        sa.Column("display_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "pricing_rules",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("vehicle_type_id", sa.String, sa.ForeignKey("vehicle_types.id"), nullable=False),
        sa.Column("origin", sa.String(100), nullable=False),
        sa.Column("destination", sa.String(255), nullable=False),
        sa.Column("base_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("no_discount_allowed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_pricing_rules_vehicle_type", "pricing_rules", ["vehicle_type_id"])
    op.create_index("idx_pricing_rules_origin", "pricing_rules", ["origin"])

    op.create_table(
        "hotel_zones",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("hotel_name", sa.String(255), nullable=False),
        sa.Column("zone_code", sa.String(50), nullable=False),
        sa.Column("search_terms", sa.JSON, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("idx_hotel_zones_zone", "hotel_zones", ["zone_code"])

    op.create_table(
        "global_discount_settings",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_global_discount_active", "global_discount_settings", ["is_active"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("reference", sa.String(40), unique=True, nullable=True),
        sa.Column("customer_name", sa.String(255), nullable=False),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column("customer_phone", sa.String(30), nullable=True),
        sa.Column("pickup_location", sa.String(500), nullable=False),
        sa.Column("dropoff_location", sa.String(500), nullable=False),
        sa.Column("pickup_datetime", sa.DateTime(timezone=True), nullable=False),
        sa.Column("passengers", sa.Integer, nullable=False, server_default="1"),
        sa.Column("vehicle_type", sa.String(50), nullable=False, server_default="sedan"),
        sa.Column("vehicle_type_id", sa.String, nullable=True),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(5), server_default="usd"),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("workflow_status", sa.String(30), nullable=True),
        sa.Column("source", sa.String(30), nullable=False, server_default="web"),
        sa.Column("details", sa.JSON, nullable=False),
        sa.Column("payment_details", sa.JSON, nullable=True),
        sa.Column("idempotency_key", sa.String(255), unique=True, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_bookings_status", "bookings", ["status"])
    op.create_index("idx_bookings_payment_status", "bookings", ["payment_status"])
    op.create_index("idx_bookings_workflow_status", "bookings", ["workflow_status"])
    op.create_index("idx_bookings_customer_email", "bookings", ["customer_email"])
    op.create_index("idx_bookings_created", "bookings", ["created_at"])

    op.create_table(
        "vehicles",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("vehicle_type", sa.String(50), nullable=False),
        sa.Column("plate_number", sa.String(20), unique=True, nullable=False),
        sa.Column("capacity", sa.Integer, nullable=False, server_default="4"),
        sa.Column("status", sa.String(20), nullable=False, server_default="available"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_vehicles_type_status", "vehicles", ["vehicle_type", "status"])

    op.create_table(
        "drivers",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("phone", sa.String(20), unique=True, nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("rating", sa.Float, nullable=False, server_default="5.0"),
        sa.Column("vehicle_id", sa.String, sa.ForeignKey("vehicles.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_drivers_status", "drivers", ["status"])

    op.create_table(
        "trip_assignments",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("booking_id", sa.String, sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("driver_id", sa.String, sa.ForeignKey("drivers.id"), nullable=False),
        sa.Column("vehicle_id", sa.String, sa.ForeignKey("vehicles.id"), nullable=False),
        sa.Column("assignment_method", sa.String(20), nullable=False, server_default="auto"),
        sa.Column("assigned_by", sa.String(100), nullable=False, server_default="auto-dispatch-system"),
        sa.Column("status", sa.String(30), nullable=False, server_default="assigned"),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_trip_assignments_booking", "trip_assignments", ["booking_id"])
    op.create_index("idx_trip_assignments_driver", "trip_assignments", ["driver_id"])
    op.create_index("idx_trip_assignments_status", "trip_assignments", ["status"])
    # One active assignment per booking and per driver
    op.create_index(
        "uq_trip_assignments_active_booking",
        "trip_assignments",
        ["booking_id"],
        unique=True,
        postgresql_where=ACTIVE_ASSIGNMENT,
    )
    op.create_index(
        "uq_trip_assignments_active_driver",
        "trip_assignments",
        ["driver_id"],
        unique=True,
        postgresql_where=ACTIVE_ASSIGNMENT,
    )

    op.create_table(
        "trip_logs",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("assignment_id", sa.String, sa.ForeignKey("trip_assignments.id"), nullable=False),
        sa.Column("event_type", sa.String(30), nullable=False, server_default="status_change"),
        sa.Column("event_data", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_trip_logs_assignment", "trip_logs", ["assignment_id"])


def downgrade() -> None:
    op.drop_table("trip_logs")
    op.drop_table("trip_assignments")
    op.drop_table("drivers")
    op.drop_table("vehicles")
    op.drop_table("bookings")
    op.drop_table("global_discount_settings")
    op.drop_table("hotel_zones")
    op.drop_table("pricing_rules")
    op.drop_table("vehicle_types")
