"""
Graph Module - entity types, relation edges and the registry that holds them.
"""

from .models import Cardinality, CascadeBehavior, EntityType, RecordRef, RelationEdge
from .registry import GraphRegistry

__all__ = [
    "CascadeBehavior",
    "Cardinality",
    "EntityType",
    "RelationEdge",
    "RecordRef",
    "GraphRegistry",
]
