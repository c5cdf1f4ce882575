"""Shared fixtures: a seeded SQLite database per test and the wired services."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import insert, select

from fieldforge.api.app import create_app
from fieldforge.auth.hashing import TokenHasher
from fieldforge.auth.permissions import PermissionResolver
from fieldforge.auth.roles import RoleHierarchy
from fieldforge.auth.token_service import TokenService
from fieldforge.auth.types import FEDERATED_PROVIDER, Identity
from fieldforge.core.config import Settings
from fieldforge.db.config import DatabaseConfig
from fieldforge.db.engine import create_db_engine, init_database
from fieldforge.db.schema import customers, invoices, roles, technicians, users, work_orders
from fieldforge.metadata.registry import EntityMetadataRegistry
from fieldforge.query.builder import QueryBuilder
from fieldforge.services.audit import MemoryAuditSink
from fieldforge.services.entity_service import GenericEntityService

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"

# Customer users share ids with their customers rows, technician users with
# their technicians rows; ownership compares the caller's user id.
CUSTOMER_ALICE = 1
CUSTOMER_BOB = 2
CUSTOMER_CAROL = 3
TECH_TOM = 20
TECH_TINA = 21
DISPATCHER = 30
MANAGER = 40
ADMIN = 50
INACTIVE_DISPATCHER = 60

USER_ROLES = {
    CUSTOMER_ALICE: "customer",
    CUSTOMER_BOB: "customer",
    TECH_TOM: "technician",
    DISPATCHER: "dispatcher",
    MANAGER: "manager",
    ADMIN: "admin",
    INACTIVE_DISPATCHER: "dispatcher",
}


def make_identity(user_id: int, role: str | None = None) -> Identity:
    return Identity(
        user_id=user_id,
        subject=f"auth0|{user_id}",
        email=f"user{user_id}@example.com",
        role=role or USER_ROLES[user_id],
        provider=FEDERATED_PROVIDER,
    )


def seed(engine) -> None:
    """Insert a small field-service dataset."""
    with engine.begin() as conn:
        role_ids = dict(conn.execute(select(roles.c.name, roles.c.id)).all())
        conn.execute(
            insert(users),
            [
                {
                    "id": user_id,
                    "email": f"user{user_id}@example.com",
                    "first_name": role.title(),
                    "last_name": str(user_id),
                    "role_id": role_ids[role],
                    "auth0_id": f"auth0|{user_id}",
                    "is_active": user_id != INACTIVE_DISPATCHER,
                }
                for user_id, role in USER_ROLES.items()
            ],
        )
        conn.execute(
            insert(customers),
            [
                {"id": CUSTOMER_ALICE, "email": "alice@example.com", "first_name": "Alice",
                 "last_name": "Anders", "organization_name": "Acme Plumbing", "status": "active"},
                {"id": CUSTOMER_BOB, "email": "bob@example.com", "first_name": "Bob",
                 "last_name": "Baker", "organization_name": "Baker & Sons", "status": "active"},
                {"id": CUSTOMER_CAROL, "email": "carol@example.com", "first_name": "Carol",
                 "last_name": "Chen", "organization_name": None, "status": "pending"},
            ],
        )
        conn.execute(
            insert(technicians),
            [
                {"id": TECH_TOM, "email": "tom@example.com", "first_name": "Tom",
                 "last_name": "Turner", "license_number": "LIC-100",
                 "hourly_rate": Decimal("85.00")},
                {"id": TECH_TINA, "email": "tina@example.com", "first_name": "Tina",
                 "last_name": "Torres", "license_number": "LIC-200",
                 "hourly_rate": Decimal("95.00")},
            ],
        )
        base = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
        conn.execute(
            insert(work_orders),
            [
                {"id": 1, "work_order_number": "WO-1", "name": "Fix leaking sink",
                 "customer_id": CUSTOMER_ALICE, "assigned_technician_id": TECH_TOM,
                 "status": "scheduled", "priority": "high", "created_at": base},
                {"id": 2, "work_order_number": "WO-2", "name": "Install water heater",
                 "customer_id": CUSTOMER_ALICE, "assigned_technician_id": TECH_TINA,
                 "status": "pending", "priority": "normal", "created_at": base.replace(day=2)},
                {"id": 3, "work_order_number": "WO-3", "name": "Replace boiler valve",
                 "customer_id": CUSTOMER_BOB, "assigned_technician_id": TECH_TOM,
                 "status": "completed", "priority": "low", "created_at": base.replace(day=3)},
                {"id": 4, "work_order_number": "WO-4", "name": "Inspect drains",
                 "customer_id": CUSTOMER_CAROL, "assigned_technician_id": None,
                 "status": "pending", "priority": "normal", "created_at": base.replace(day=4)},
                {"id": 5, "work_order_number": "WO-5", "name": "Annual sink service",
                 "customer_id": CUSTOMER_BOB, "assigned_technician_id": TECH_TINA,
                 "status": "scheduled", "priority": "urgent", "created_at": base.replace(day=5)},
            ],
        )
        conn.execute(
            insert(invoices),
            [
                {"id": 1, "invoice_number": "INV-1", "name": "Sink repair",
                 "work_order_id": 1, "customer_id": CUSTOMER_ALICE, "status": "sent",
                 "total": Decimal("120.00")},
                {"id": 2, "invoice_number": "INV-2", "name": "Boiler valve",
                 "work_order_id": 3, "customer_id": CUSTOMER_BOB, "status": "paid",
                 "total": Decimal("340.50")},
            ],
        )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'test.db'}"),
        secret_key=TEST_SECRET,
        hash_rounds=1000,
    )


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.database)
    init_database(engine)
    seed(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def registry():
    return EntityMetadataRegistry.from_path()


@pytest.fixture
def resolver(registry):
    return PermissionResolver(registry, RoleHierarchy.default())


@pytest.fixture
def builder(registry):
    return QueryBuilder(registry)


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def service(engine, registry, resolver, builder, audit):
    return GenericEntityService(engine, registry, resolver, builder, audit)


@pytest.fixture
def token_service(engine):
    return TokenService(engine, TEST_SECRET, hasher=TokenHasher(rounds=1000))


@pytest.fixture
def app_factory(settings, engine, registry, audit):
    """Build an app; keyword overrides are applied to the test settings."""

    def factory(**overrides):
        for key, value in overrides.items():
            setattr(settings, key, value)
        return create_app(settings, engine=engine, registry=registry, audit_sink=audit)

    return factory


@pytest.fixture
def client(app_factory):
    with TestClient(app_factory()) as client:
        yield client


@pytest.fixture
def auth_headers(token_service):
    """Return Authorization headers for a freshly issued access token."""

    def headers(user_id: int, provider: str = FEDERATED_PROVIDER) -> dict[str, str]:
        pair = token_service.generate_token_pair(user_id, provider=provider)
        return {"Authorization": f"Bearer {pair.access_token}"}

    return headers
