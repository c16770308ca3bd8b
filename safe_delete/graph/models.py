"""
Data models for the entity dependency graph.

Entity types and relation edges are static configuration: they are loaded
once, validated by the registry and never mutated at runtime. Record
references identify concrete instances of those types.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CascadeBehavior(str, Enum):
    """What happens to a related record when the record it depends on is deleted."""

    CASCADE = "cascade"  # Dependent is part of the deletion subtree
    RESTRICT = "restrict"  # External reference blocks the deletion
    SET_NULL = "set_null"  # Reference would be nulled, informational only
    NO_ACTION = "no_action"  # Treated like RESTRICT

    @property
    def blocks(self) -> bool:
        """Whether an external reference through this behavior blocks deletion."""
        return self in (CascadeBehavior.RESTRICT, CascadeBehavior.NO_ACTION)

    @property
    def expands(self) -> bool:
        """Whether the subtree expansion follows this behavior."""
        return self == CascadeBehavior.CASCADE


class Cardinality(str, Enum):
    """Cardinality of a relation edge, seen from its source type."""

    ONE_TO_ONE = "one_to_one"
    ONE_TO_MANY = "one_to_many"
    MANY_TO_ONE = "many_to_one"


class EntityType(BaseModel):
    """Schema of one kind of record."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Entity type name", min_length=1, max_length=100)
    identity_field: Optional[str] = Field(
        "id", description="Primary key attribute, None for keyless types"
    )
    table: Optional[str] = Field(
        None, description="Storage table name, defaults to the type name"
    )
    attributes: Dict[str, str] = Field(
        default_factory=dict, description="Attribute name to declared type"
    )
    display_fields: Tuple[str, ...] = Field(
        ("name", "title", "display_name"),
        description="Attributes tried in order for a human-readable label",
    )

    @property
    def table_name(self) -> str:
        """Storage table backing this entity type."""
        return self.table or self.name

    def display_name(self, attributes: Dict[str, Any], identity: Any) -> str:
        """
        Build a human-readable label for a record of this type.

        Args:
            attributes: Record attribute map
            identity: Record identity

        Returns:
            First populated display field, or "<Type> #<identity>"
        """
        for field_name in self.display_fields:
            value = attributes.get(field_name)
            if value not in (None, ""):
                return str(value)
        return f"{self.name} #{identity}"


class RelationEdge(BaseModel):
    """
    Directed dependency between two entity types.

    For CASCADE and SET_NULL edges the source is the parent type and the
    target type carries ``field`` pointing back at the parent. For RESTRICT
    and NO_ACTION edges the source type carries ``field`` pointing at the
    target type.
    """

    model_config = ConfigDict(frozen=True)

    source_type: str = Field(..., min_length=1)
    target_type: str = Field(..., min_length=1)
    field: str = Field(..., description="Foreign key attribute name", min_length=1)
    cascade: CascadeBehavior = Field(CascadeBehavior.CASCADE)
    cardinality: Cardinality = Field(Cardinality.ONE_TO_MANY)
    name: Optional[str] = Field(None, description="Optional label for messages")

    @field_validator("cascade", mode="before")
    @classmethod
    def normalize_cascade(cls, v: Any) -> Any:
        """Accept SQL spellings such as 'SET NULL' or 'NO ACTION'."""
        if isinstance(v, str):
            return v.strip().lower().replace(" ", "_").replace("-", "_")
        return v

    @property
    def referencing_type(self) -> str:
        """Type whose records hold the foreign key attribute."""
        if self.cascade.blocks:
            return self.source_type
        return self.target_type

    @property
    def referenced_type(self) -> str:
        """Type whose identity the foreign key attribute stores."""
        if self.cascade.blocks:
            return self.target_type
        return self.source_type

    @property
    def is_self_reference(self) -> bool:
        return self.source_type == self.target_type

    def label(self) -> str:
        if self.name:
            return self.name
        return (
            f"{self.referencing_type}.{self.field} -> {self.referenced_type} "
            f"[{self.cascade.value}]"
        )


@dataclass(frozen=True)
class RecordRef:
    """Reference to one record instance: (entity type, identity)."""

    entity_type: str
    identity: Any

    def __str__(self) -> str:
        return f"{self.entity_type}#{self.identity}"

    @property
    def sort_key(self) -> Tuple[str, int, float, str]:
        """Globally consistent ordering key, stable across identity types."""
        identity = self.identity
        if isinstance(identity, (int, float)) and not isinstance(identity, bool):
            return (self.entity_type, 0, identity, "")
        return (self.entity_type, 1, 0, str(identity))

    @property
    def lock_key(self) -> str:
        return f"{self.entity_type}:{self.identity}"

    def to_dict(self) -> Dict[str, Any]:
        return {"entity_type": self.entity_type, "identity": self.identity}
