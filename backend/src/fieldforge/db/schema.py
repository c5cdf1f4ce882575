"""Table definitions (SQLAlchemy Core).

The same schema is shipped as an Alembic migration for PostgreSQL
deployments; ``create_all`` is used for SQLite development databases and
tests.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    func,
    true,
)

metadata = MetaData()


def utcnow() -> datetime:
    return datetime.now(UTC)


def _timestamps() -> list[Column]:
    return [
        Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow,
               server_default=func.current_timestamp()),
        Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow,
               onupdate=utcnow, server_default=func.current_timestamp()),
    ]


roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", Text),
    Column("priority", Integer, nullable=False, unique=True),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    *_timestamps(),
)

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("auth0_id", String(255), unique=True),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    *_timestamps(),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_id", String(64), nullable=False, unique=True),
    Column("token_hash", String(255), nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("last_used_at", DateTime(timezone=True)),
    Column("revoked_at", DateTime(timezone=True)),
    Column("revoked_reason", String(50)),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Index("idx_refresh_tokens_user_active", "user_id", "revoked_at"),
    Index("idx_refresh_tokens_expires_at", "expires_at"),
)

customers = Table(
    "customers",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("organization_name", String(255)),
    Column("phone", String(50)),
    Column("status", String(20), nullable=False, default="pending", server_default="pending"),
    Column("notes", Text),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    *_timestamps(),
)

technicians = Table(
    "technicians",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("phone", String(50)),
    Column("license_number", String(100), nullable=False, unique=True),
    Column("status", String(20), nullable=False, default="available", server_default="available"),
    Column("hourly_rate", Numeric(10, 2)),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    *_timestamps(),
)

work_orders = Table(
    "work_orders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("work_order_number", String(100), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("summary", Text),
    Column("customer_id", Integer, ForeignKey("customers.id"), nullable=False),
    Column("assigned_technician_id", Integer, ForeignKey("technicians.id")),
    Column("status", String(20), nullable=False, default="pending", server_default="pending"),
    Column("priority", String(20), nullable=False, default="normal", server_default="normal"),
    Column("scheduled_start", DateTime(timezone=True)),
    Column("scheduled_end", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    *_timestamps(),
    Index("idx_work_orders_customer", "customer_id"),
    Index("idx_work_orders_technician", "assigned_technician_id"),
)

invoices = Table(
    "invoices",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("invoice_number", String(100), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("summary", Text),
    Column("work_order_id", Integer, ForeignKey("work_orders.id"), nullable=False),
    Column("customer_id", Integer, ForeignKey("customers.id"), nullable=False),
    Column("status", String(20), nullable=False, default="draft", server_default="draft"),
    Column("amount", Numeric(12, 2)),
    Column("tax", Numeric(12, 2)),
    Column("total", Numeric(12, 2)),
    Column("due_date", Date),
    Column("paid_at", DateTime(timezone=True)),
    Column("is_active", Boolean, nullable=False, default=True, server_default=true()),
    *_timestamps(),
    Index("idx_invoices_customer", "customer_id"),
)
