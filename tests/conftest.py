"""
Shared fixtures: a small HR-style host schema on in-memory SQLite.

department ──CASCADE──> employee ──CASCADE──> leave_request
                           │  └──CASCADE──> assignment <──CASCADE── project
                           ├──SET NULL──> employee.manager_id, research_grant.owner_id
                           └──RESTRICT──  payroll.employee_id
"""

from datetime import date, datetime
from typing import Any, Dict, List

import pytest
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from safe_delete import (
    GraphRegistry,
    SafeDeleteConfig,
    SafeDeleteService,
    create_tables,
    set_config,
)
from safe_delete.snapshots.models import ManifestDB, SnapshotDB

host_metadata = MetaData()

Table(
    "department",
    host_metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100), nullable=False),
    Column("budget_code", String(20)),
)

Table(
    "employee",
    host_metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100), nullable=False),
    Column("department_id", Integer, ForeignKey("department.id", ondelete="CASCADE")),
    Column("manager_id", Integer, ForeignKey("employee.id", ondelete="SET NULL")),
    Column("hired_on", Date),
    Column("active", Boolean),
    Column("badge_photo", LargeBinary),
)

Table(
    "leave_request",
    host_metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "employee_id",
        Integer,
        ForeignKey("employee.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("starts_on", Date),
    Column("submitted_at", DateTime),
    Column("note", Text),
)

Table(
    "payroll",
    host_metadata,
    Column("id", Integer, primary_key=True),
    Column("employee_id", Integer, ForeignKey("employee.id", ondelete="RESTRICT")),
    Column("amount_cents", Integer),
)

Table(
    "research_grant",
    host_metadata,
    Column("id", Integer, primary_key=True),
    Column("title", String(200)),
    Column("owner_id", Integer, ForeignKey("employee.id", ondelete="SET NULL")),
)

Table(
    "project",
    host_metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100)),
)

Table(
    "assignment",
    host_metadata,
    Column("id", Integer, primary_key=True),
    Column("employee_id", Integer, ForeignKey("employee.id", ondelete="CASCADE")),
    Column("project_id", Integer, ForeignKey("project.id", ondelete="CASCADE")),
    Column("role", String(50)),
)


class HostDatabase:
    """Test helper around the host tables."""

    def __init__(self, engine: Any):
        self.engine = engine
        self.metadata = host_metadata
        self.session_factory = sessionmaker(bind=engine)

    def table(self, name: str) -> Table:
        return self.metadata.tables[name]

    def insert(self, name: str, *rows: Dict[str, Any]) -> None:
        with self.engine.begin() as conn:
            conn.execute(self.table(name).insert(), list(rows))

    def rows(self, name: str) -> List[Dict[str, Any]]:
        table = self.table(name)
        with self.engine.connect() as conn:
            result = conn.execute(select(table).order_by(table.c.id))
            return [dict(row) for row in result.mappings()]

    def ids(self, name: str) -> List[Any]:
        return [row["id"] for row in self.rows(name)]

    def dump(self) -> Dict[str, List[Dict[str, Any]]]:
        """Every host row, for before/after comparisons."""
        return {name: self.rows(name) for name in self.metadata.tables}

    def snapshot_count(self) -> int:
        with self.session_factory() as session:
            return session.query(SnapshotDB).count()

    def manifest_count(self) -> int:
        with self.session_factory() as session:
            return session.query(ManifestDB).count()


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line(
        "markers", "integration: test exercises the full delete/restore cycle"
    )


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    host_metadata.create_all(engine)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """Host database seeded with two departments."""
    database = HostDatabase(engine)
    database.insert(
        "department",
        {"id": 1, "name": "Research", "budget_code": "R-100"},
        {"id": 2, "name": "Finance", "budget_code": None},
    )
    database.insert(
        "employee",
        {
            "id": 1,
            "name": "Alice",
            "department_id": 1,
            "manager_id": None,
            "hired_on": date(2019, 3, 1),
            "active": True,
            "badge_photo": b"\x89PNG\r\n\x1a\n\x00",
        },
        {
            "id": 2,
            "name": "Bob",
            "department_id": 1,
            "manager_id": 1,
            "hired_on": date(2021, 7, 15),
            "active": True,
            "badge_photo": None,
        },
        {
            "id": 3,
            "name": "Carol",
            "department_id": 2,
            "manager_id": None,
            "hired_on": date(2018, 1, 2),
            "active": False,
            "badge_photo": None,
        },
    )
    database.insert(
        "leave_request",
        {
            "id": 1,
            "employee_id": 2,
            "starts_on": date(2024, 8, 1),
            "submitted_at": datetime(2024, 6, 30, 9, 15, 42, 123456),
            "note": "Family trip, back on the 15th",
        },
    )
    return database


@pytest.fixture
def registry():
    """Registry derived from the host schema's foreign keys."""
    return GraphRegistry.from_metadata(host_metadata)


@pytest.fixture
def config():
    """Test configuration, also installed as the global one."""
    config = SafeDeleteConfig(environment="testing", lock_timeout_seconds=0.5)
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def service(db, registry, config):
    """Safe delete service over the seeded host database."""
    return SafeDeleteService(
        db.session_factory, registry, config=config, metadata=host_metadata
    )
