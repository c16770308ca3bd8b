"""
Graph registry of entity types and their relation edges.

The registry is built once at startup (programmatically, from a YAML/JSON
document, or from SQLAlchemy table metadata), then frozen. Type-level cycles
such as self-referencing hierarchies are allowed; configuration mistakes are
fatal and raise ``RegistryError``.
"""

import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml  # type: ignore[import-untyped]
from pydantic import ValidationError
from sqlalchemy import MetaData

from ..exceptions import RegistryError, UnknownEntityType
from .models import CascadeBehavior, EntityType, RelationEdge

logger = logging.getLogger(__name__)


class GraphRegistry:
    """Declarative description of entity types and relation edges."""

    def __init__(self) -> None:
        self._types: Dict[str, EntityType] = {}
        self._edges: List[RelationEdge] = []
        self._outgoing: Dict[str, List[RelationEdge]] = defaultdict(list)
        self._incoming: Dict[str, List[RelationEdge]] = defaultdict(list)
        self._pending: List[RelationEdge] = []
        self._frozen = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_type(
        self,
        entity_type: EntityType,
        relations: Optional[Iterable[RelationEdge]] = None,
    ) -> None:
        """
        Register an entity type together with its outgoing relation edges.

        Edges may point at types that are registered later; they are checked
        when the registry is frozen.

        Args:
            entity_type: Entity type schema
            relations: Edges whose source is this type

        Raises:
            RegistryError: If the registry is frozen, the type is a duplicate,
                or an edge does not originate from this type
        """
        self._ensure_mutable()

        if entity_type.name in self._types:
            raise RegistryError(f"Entity type {entity_type.name!r} registered twice")

        self._types[entity_type.name] = entity_type

        for edge in relations or []:
            if edge.source_type != entity_type.name:
                raise RegistryError(
                    f"Edge {edge.label()} registered under {entity_type.name!r} "
                    f"but originates from {edge.source_type!r}"
                )
            self._pending.append(edge)

    def add_relation(self, edge: RelationEdge) -> None:
        """Register a single relation edge."""
        self._ensure_mutable()
        self._pending.append(edge)

    def freeze(self) -> "GraphRegistry":
        """
        Validate every pending edge and make the registry read-only.

        Returns:
            The registry itself, for chaining

        Raises:
            RegistryError: If any edge is invalid
        """
        if self._frozen:
            return self

        for edge in self._pending:
            self._validate_edge(edge)
            self._edges.append(edge)
            self._outgoing[edge.source_type].append(edge)
            self._incoming[edge.referenced_type].append(edge)

        self._pending = []
        self._frozen = True

        logger.debug(
            "Graph registry frozen",
            extra={"types": len(self._types), "edges": len(self._edges)},
        )
        return self

    def _validate_edge(self, edge: RelationEdge) -> None:
        for type_name in (edge.source_type, edge.target_type):
            if type_name not in self._types:
                raise RegistryError(
                    f"Edge {edge.label()} references unknown type {type_name!r}"
                )

        if edge.cascade.blocks:
            target = self._types[edge.target_type]
            if not target.identity_field:
                raise RegistryError(
                    f"{edge.cascade.value.upper()} edge {edge.label()} targets "
                    f"{target.name!r}, which has no identity field"
                )

        if edge.cascade.expands:
            for type_name in (edge.source_type, edge.target_type):
                if not self._types[type_name].identity_field:
                    raise RegistryError(
                        f"CASCADE edge {edge.label()} requires {type_name!r} "
                        "to have an identity field"
                    )

        if edge in self._edges:
            raise RegistryError(f"Edge {edge.label()} registered twice")

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise RegistryError("Graph registry is read-only after initialization")

    def _ensure_frozen(self) -> None:
        if not self._frozen:
            self.freeze()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get_type(self, name: str) -> EntityType:
        """
        Look up an entity type by name.

        Raises:
            UnknownEntityType: If the type is not registered
        """
        try:
            return self._types[name]
        except KeyError:
            raise UnknownEntityType(name) from None

    def has_type(self, name: str) -> bool:
        return name in self._types

    def relations(self, type_name: str) -> List[RelationEdge]:
        """Edges whose source is the given type."""
        self._ensure_frozen()
        self.get_type(type_name)
        return list(self._outgoing.get(type_name, ()))

    def incoming(self, type_name: str) -> List[RelationEdge]:
        """Edges whose foreign key stores an identity of the given type."""
        self._ensure_frozen()
        self.get_type(type_name)
        return list(self._incoming.get(type_name, ()))

    def cascade_children(self, type_name: str) -> List[RelationEdge]:
        """CASCADE edges followed when expanding from the given type."""
        return [
            edge
            for edge in self.relations(type_name)
            if edge.cascade == CascadeBehavior.CASCADE
        ]

    def all_types(self) -> List[EntityType]:
        return list(self._types.values())

    def all_edges(self) -> List[RelationEdge]:
        self._ensure_frozen()
        return list(self._edges)

    def identity_of(self, type_name: str, attributes: Dict[str, Any]) -> Any:
        """
        Extract a record's identity from its attribute map.

        Raises:
            RegistryError: If the type has no identity field or it is missing
        """
        entity_type = self.get_type(type_name)
        if not entity_type.identity_field:
            raise RegistryError(f"Entity type {type_name!r} has no identity field")
        if entity_type.identity_field not in attributes:
            raise RegistryError(
                f"Record of {type_name!r} lacks identity field "
                f"{entity_type.identity_field!r}"
            )
        return attributes[entity_type.identity_field]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the registry to the document format ``from_dict`` accepts."""
        self._ensure_frozen()
        return {
            "types": [
                {
                    **entity_type.model_dump(
                        mode="json", exclude={"display_fields"}, exclude_none=True
                    ),
                    "relations": [
                        edge.model_dump(
                            mode="json", exclude={"source_type"}, exclude_none=True
                        )
                        for edge in self._outgoing.get(entity_type.name, ())
                    ],
                }
                for entity_type in self._types.values()
            ]
        }

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphRegistry":
        """
        Build a frozen registry from a document.

        Example document::

            types:
              - name: employee
                identity_field: id
                relations:
                  - target_type: leave_request
                    field: employee_id
                    cascade: cascade

        Args:
            data: Mapping with a ``types`` list

        Returns:
            Frozen registry

        Raises:
            RegistryError: If the document is malformed
        """
        if not isinstance(data, dict) or not isinstance(data.get("types"), list):
            raise RegistryError("Registry document must contain a 'types' list")

        registry = cls()
        try:
            for raw in data["types"]:
                raw = dict(raw)
                relations = raw.pop("relations", None) or []
                entity_type = EntityType(**raw)
                edges = [
                    RelationEdge(source_type=entity_type.name, **relation)
                    for relation in relations
                ]
                registry.register_type(entity_type, edges)
        except ValidationError as e:
            raise RegistryError(f"Invalid registry document: {e}") from e
        except TypeError as e:
            raise RegistryError(f"Invalid registry document: {e}") from e

        return registry.freeze()

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "GraphRegistry":
        """Load a registry from a YAML or JSON file."""
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise RegistryError(f"Cannot read registry file {path}: {e}") from e

        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
        return cls.from_dict(data)

    @classmethod
    def from_metadata(
        cls,
        metadata: MetaData,
        default_ondelete: CascadeBehavior = CascadeBehavior.NO_ACTION,
    ) -> "GraphRegistry":
        """
        Derive a registry from SQLAlchemy table metadata.

        Each table becomes an entity type named after the table. Each
        single-column foreign key becomes an edge whose behavior is taken
        from ``ForeignKey(ondelete=...)``; foreign keys without ``ondelete``
        use ``default_ondelete``.

        Args:
            metadata: SQLAlchemy metadata (declared or reflected)
            default_ondelete: Behavior for foreign keys without ondelete

        Returns:
            Frozen registry
        """
        registry = cls()
        edges: List[RelationEdge] = []

        for table in metadata.sorted_tables:
            pk_columns = list(table.primary_key.columns)
            identity_field = pk_columns[0].name if len(pk_columns) == 1 else None
            registry.register_type(
                EntityType(
                    name=table.name,
                    identity_field=identity_field,
                    table=table.name,
                    attributes={
                        col.name: type(col.type).__name__ for col in table.columns
                    },
                )
            )

            for constraint in table.foreign_key_constraints:
                if len(constraint.elements) != 1:
                    logger.warning(
                        "Skipping composite foreign key on %s", table.name
                    )
                    continue
                fk = constraint.elements[0]
                try:
                    behavior = (
                        CascadeBehavior(
                            fk.ondelete.strip().lower().replace(" ", "_")
                        )
                        if fk.ondelete
                        else default_ondelete
                    )
                except ValueError:
                    raise RegistryError(
                        f"Unsupported ondelete {fk.ondelete!r} on "
                        f"{table.name}.{fk.parent.name}"
                    ) from None
                referenced_table = fk.column.table.name
                if behavior.blocks:
                    edges.append(
                        RelationEdge(
                            source_type=table.name,
                            target_type=referenced_table,
                            field=fk.parent.name,
                            cascade=behavior,
                        )
                    )
                else:
                    edges.append(
                        RelationEdge(
                            source_type=referenced_table,
                            target_type=table.name,
                            field=fk.parent.name,
                            cascade=behavior,
                        )
                    )

        for edge in edges:
            registry.add_relation(edge)
        return registry.freeze()
