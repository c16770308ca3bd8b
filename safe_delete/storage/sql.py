"""
SQLAlchemy implementation of the primary storage contract.

Works on the host's own tables through SQLAlchemy Core, sharing the ORM
session (and therefore the transaction) with the snapshot and manifest
stores.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from sqlalchemy import MetaData, Table, func, select, text
from sqlalchemy.orm import Session, SessionTransaction

from ..exceptions import IdentityCollision, RegistryError
from ..graph import GraphRegistry
from .base import PrimaryStorage

logger = logging.getLogger(__name__)

# Keep IN lists below common driver parameter limits
_IN_CHUNK_SIZE = 500


class SQLPrimaryStorage(PrimaryStorage):
    """Primary storage backed by tables reachable through a SQLAlchemy session."""

    def __init__(
        self,
        session: Session,
        registry: GraphRegistry,
        metadata: Optional[MetaData] = None,
        supports_identity_override: Optional[bool] = None,
    ):
        """
        Initialize SQL primary storage.

        Args:
            session: SQLAlchemy session shared with the engine's stores
            registry: Graph registry mapping entity types to tables
            metadata: Metadata holding the host tables; missing tables are
                reflected from the database on first use
            supports_identity_override: Force the capability flag instead of
                deriving it from the dialect
        """
        super().__init__(registry)
        self.session = session
        self.metadata = metadata if metadata is not None else MetaData()
        self.dialect = session.get_bind().dialect.name
        if supports_identity_override is not None:
            self.supports_identity_override = supports_identity_override

    def transaction(self) -> SessionTransaction:
        return self.session.begin()

    # ------------------------------------------------------------------
    # Table resolution
    # ------------------------------------------------------------------

    def _table(self, entity_type: str) -> Table:
        table_name = self.registry.get_type(entity_type).table_name
        table = self.metadata.tables.get(table_name)
        if table is None:
            self.metadata.reflect(bind=self.session.connection(), only=[table_name])
            table = self.metadata.tables[table_name]
        return table

    def _identity_column(self, entity_type: str, table: Table) -> Any:
        identity_field = self.registry.get_type(entity_type).identity_field
        if not identity_field:
            raise RegistryError(f"Entity type {entity_type!r} has no identity field")
        return table.c[identity_field]

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def get(self, entity_type: str, identity: Any) -> Optional[Dict[str, Any]]:
        table = self._table(entity_type)
        column = self._identity_column(entity_type, table)
        row = self.session.execute(select(table).where(column == identity)).first()
        return dict(row._mapping) if row is not None else None

    def exists(self, entity_type: str, identity: Any) -> bool:
        table = self._table(entity_type)
        column = self._identity_column(entity_type, table)
        count = self.session.execute(
            select(func.count()).select_from(table).where(column == identity)
        ).scalar_one()
        return count > 0

    def delete(self, entity_type: str, identity: Any) -> bool:
        table = self._table(entity_type)
        column = self._identity_column(entity_type, table)
        result = self.session.execute(table.delete().where(column == identity))
        return bool(result.rowcount)

    def find_referencing(
        self, entity_type: str, field: str, identity: Any
    ) -> List[Dict[str, Any]]:
        table = self._table(entity_type)
        rows = self.session.execute(select(table).where(table.c[field] == identity))
        return [dict(row._mapping) for row in rows]

    def find_referencing_many(
        self, entity_type: str, field: str, identities: Iterable[Any]
    ) -> List[Dict[str, Any]]:
        table = self._table(entity_type)
        values = list(dict.fromkeys(identities))
        results: List[Dict[str, Any]] = []
        for start in range(0, len(values), _IN_CHUNK_SIZE):
            chunk = values[start : start + _IN_CHUNK_SIZE]
            rows = self.session.execute(select(table).where(table.c[field].in_(chunk)))
            results.extend(dict(row._mapping) for row in rows)
        return results

    def columns(self, entity_type: str) -> Optional[Set[str]]:
        return {column.name for column in self._table(entity_type).columns}

    def insert_with_identity(
        self, entity_type: str, identity: Any, attributes: Dict[str, Any]
    ) -> None:
        if self.exists(entity_type, identity):
            raise IdentityCollision(entity_type, identity)

        table = self._table(entity_type)
        column = self._identity_column(entity_type, table)
        values = dict(attributes)
        values[column.name] = identity
        self.session.execute(table.insert().values(**values))

    def insert(self, entity_type: str, attributes: Dict[str, Any]) -> Any:
        table = self._table(entity_type)
        column = self._identity_column(entity_type, table)
        values = {key: value for key, value in attributes.items() if key != column.name}
        result = self.session.execute(table.insert().values(**values))
        return result.inserted_primary_key[0]

    @contextmanager
    def identity_override(self, entity_type: str) -> Iterator[None]:
        """
        Allow explicit identity values for one table.

        SQL Server needs IDENTITY_INSERT toggled around the insert; PostgreSQL
        needs its sequence moved past the re-inserted value afterwards. Other
        dialects accept explicit keys as-is.
        """
        table = self._table(entity_type)
        column = self._identity_column(entity_type, table)
        preparer = self.session.get_bind().dialect.identifier_preparer
        quoted = preparer.format_table(table)

        if self.dialect == "mssql":
            self.session.execute(text(f"SET IDENTITY_INSERT {quoted} ON"))
            try:
                yield
            finally:
                self.session.execute(text(f"SET IDENTITY_INSERT {quoted} OFF"))
            return

        yield

        if self.dialect == "postgresql" and column.autoincrement in (True, "auto"):
            quoted_column = preparer.quote(column.name)
            self.session.execute(
                text(
                    "SELECT setval(pg_get_serial_sequence(:table, :column), "
                    f"COALESCE((SELECT MAX({quoted_column}) FROM {quoted}), 1))"
                ),
                {"table": table.fullname, "column": column.name},
            )
