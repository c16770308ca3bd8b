"""
Constraint validator for candidate deletion subtrees.

Strictly read-only: it may run before the deletion transaction and again
inside it, immediately before any mutation.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Set

from .graph import GraphRegistry, RecordRef, RelationEdge
from .storage import PrimaryStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Blocker:
    """An external record that prevents deleting a subtree member."""

    edge: RelationEdge
    referencing_type: str
    referencing_identity: Any
    referenced_member: RecordRef

    def describe(self) -> str:
        return (
            f"{self.referencing_type}#{self.referencing_identity} references "
            f"{self.referenced_member} via {self.edge.field} "
            f"({self.edge.cascade.value})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edge": self.edge.label(),
            "field": self.edge.field,
            "cascade": self.edge.cascade.value,
            "referencing_type": self.referencing_type,
            "referencing_identity": self.referencing_identity,
            "referenced_type": self.referenced_member.entity_type,
            "referenced_identity": self.referenced_member.identity,
        }


class ConstraintValidator:
    """Finds RESTRICT/NO_ACTION references into a subtree from outside it."""

    def __init__(self, registry: GraphRegistry):
        self.registry = registry

    def find_blockers(
        self, storage: PrimaryStorage, members: Iterable[RecordRef]
    ) -> List[Blocker]:
        """
        Find every external record blocking deletion of the subtree.

        Args:
            storage: Primary storage to query
            members: All instances of the candidate subtree

        Returns:
            Blockers sorted by referenced member, then referencing record.
            Empty when the subtree can be deleted.
        """
        member_set: Set[RecordRef] = set(members)
        by_type: Dict[str, List[RecordRef]] = defaultdict(list)
        for ref in member_set:
            by_type[ref.entity_type].append(ref)

        blockers: List[Blocker] = []

        for type_name in sorted(by_type):
            type_members = by_type[type_name]
            identities = {ref.identity: ref for ref in type_members}

            for edge in self.registry.incoming(type_name):
                if not edge.cascade.blocks:
                    continue

                referencing = storage.find_referencing_many(
                    edge.referencing_type, edge.field, identities.keys()
                )
                keyed = bool(
                    self.registry.get_type(edge.referencing_type).identity_field
                )
                for record in referencing:
                    referencing_identity = (
                        self.registry.identity_of(edge.referencing_type, record)
                        if keyed
                        else None
                    )
                    referencing_ref = RecordRef(
                        edge.referencing_type, referencing_identity
                    )
                    if keyed and referencing_ref in member_set:
                        continue

                    value = record[edge.field]
                    blockers.append(
                        Blocker(
                            edge=edge,
                            referencing_type=edge.referencing_type,
                            referencing_identity=referencing_identity,
                            referenced_member=identities.get(
                                value, RecordRef(type_name, value)
                            ),
                        )
                    )

        blockers.sort(
            key=lambda b: (
                b.referenced_member.sort_key,
                b.referencing_type,
                str(b.referencing_identity),
            )
        )

        if blockers:
            logger.warning(
                "Deletion subtree has %d external blocker(s)",
                len(blockers),
                extra={"blockers": [b.describe() for b in blockers[:20]]},
            )
        return blockers
