"""
Topological scheduler for deletion subtrees.

Expands a root record into the set of instances reachable through CASCADE
edges, materializing the instance-level dependency graph from actual
foreign-key values, and orders it so that every dependent is deleted
before the record it depends on. Restoration order is the exact reverse.
"""

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .exceptions import CycleDetectedAtUnexpectedDepth, RecordNotFound
from .graph import CascadeBehavior, GraphRegistry, RecordRef, RelationEdge
from .storage import PrimaryStorage

logger = logging.getLogger(__name__)

InstanceEdge = Tuple[RecordRef, RecordRef]


@dataclass(frozen=True)
class DetachedReference:
    """A record outside the subtree whose SET_NULL reference would be cleared."""

    edge: RelationEdge
    referencing_type: str
    referencing_identity: Any
    referenced_member: RecordRef

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edge": self.edge.label(),
            "field": self.edge.field,
            "referencing_type": self.referencing_type,
            "referencing_identity": self.referencing_identity,
            "referenced_type": self.referenced_member.entity_type,
            "referenced_identity": self.referenced_member.identity,
        }


@dataclass
class ExpansionResult:
    """Outcome of expanding one root into its deletion subtree."""

    root: RecordRef
    members: List[RecordRef]
    deletion_order: List[RecordRef]
    records: Dict[RecordRef, Dict[str, Any]]
    depths: Dict[RecordRef, int]
    edges: List[InstanceEdge] = field(default_factory=list)
    back_edges: List[InstanceEdge] = field(default_factory=list)
    self_references: List[RecordRef] = field(default_factory=list)
    detached: List[DetachedReference] = field(default_factory=list)

    @property
    def restoration_order(self) -> List[RecordRef]:
        return list(reversed(self.deletion_order))

    @property
    def member_set(self) -> Set[RecordRef]:
        return set(self.members)

    def __len__(self) -> int:
        return len(self.members)


class TopologicalScheduler:
    """Computes deletion subtrees and their deletion/restoration order."""

    def __init__(self, registry: GraphRegistry, max_depth: int = 256):
        """
        Initialize the scheduler.

        Args:
            registry: Graph registry describing CASCADE edges
            max_depth: Instance depth at which expansion is aborted
        """
        self.registry = registry
        self.max_depth = max_depth

    def expand_subtree(
        self, storage: PrimaryStorage, root_type: str, root_identity: Any
    ) -> ExpansionResult:
        """
        Expand a root record into its full CASCADE subtree.

        Breadth-first, one query per (level, edge). A visited-set keyed by
        record reference guarantees termination under instance-level cycles.
        A record referencing itself becomes a no-op; an edge back to an
        already-visited ancestor is recorded and not re-traversed. Such an edge
        only constrains the order when the two records cascade into each
        other directly, which makes the ordering step fail; longer cycles
        collapse into no-ops.

        Args:
            storage: Primary storage to read foreign-key values from
            root_type: Entity type of the root
            root_identity: Identity of the root

        Returns:
            Expansion result with members in discovery order and the
            deletion order (dependents first, root last)

        Raises:
            RecordNotFound: If the root record does not exist
            CycleDetectedAtUnexpectedDepth: On unresolvable cycles or when the
                instance graph is deeper than ``max_depth``
        """
        self.registry.get_type(root_type)
        root_record = storage.get(root_type, root_identity)
        if root_record is None:
            raise RecordNotFound(root_type, root_identity)

        # Child foreign keys are matched against the stored identity
        root = RecordRef(root_type, self.registry.identity_of(root_type, root_record))
        records: Dict[RecordRef, Dict[str, Any]] = {root: root_record}
        depths: Dict[RecordRef, int] = {root: 0}
        parent_of: Dict[RecordRef, Optional[RecordRef]] = {root: None}
        members: List[RecordRef] = [root]

        edges: Set[InstanceEdge] = set()
        edge_list: List[InstanceEdge] = []
        back_edges: List[InstanceEdge] = []
        self_references: List[RecordRef] = []
        nulled_candidates: List[DetachedReference] = []

        frontier: List[RecordRef] = [root]
        depth = 0

        while frontier:
            next_frontier: List[RecordRef] = []
            by_type: Dict[str, Dict[Any, RecordRef]] = defaultdict(dict)
            for ref in frontier:
                by_type[ref.entity_type][ref.identity] = ref

            for type_name in sorted(by_type):
                parents = by_type[type_name]

                for edge in self.registry.relations(type_name):
                    if edge.cascade == CascadeBehavior.SET_NULL:
                        nulled_candidates.extend(
                            self._detached(storage, edge, parents)
                        )
                        continue
                    if edge.cascade != CascadeBehavior.CASCADE:
                        continue

                    children = storage.find_referencing_many(
                        edge.target_type, edge.field, parents.keys()
                    )
                    for child_record in self._stable(edge.target_type, children):
                        parent = parents.get(child_record[edge.field])
                        if parent is None:
                            continue
                        child = RecordRef(
                            edge.target_type,
                            self.registry.identity_of(edge.target_type, child_record),
                        )

                        if child == parent:
                            self_references.append(child)
                            continue

                        if child in depths:
                            pair = (parent, child)
                            if self._is_ancestor(child, parent, parent_of):
                                back_edges.append(pair)
                                logger.debug(
                                    "Back-edge %s -> %s at depth %d",
                                    parent,
                                    child,
                                    depth + 1,
                                )
                                # Only a two-record cycle constrains the order
                                if (child, parent) not in edges:
                                    continue
                            if pair not in edges:
                                edges.add(pair)
                                edge_list.append(pair)
                            continue

                        if depth + 1 > self.max_depth:
                            raise CycleDetectedAtUnexpectedDepth(
                                [root, parent, child],
                                depth + 1,
                                f"instance graph deeper than {self.max_depth}",
                            )

                        depths[child] = depth + 1
                        parent_of[child] = parent
                        records[child] = child_record
                        members.append(child)
                        next_frontier.append(child)
                        edges.add((parent, child))
                        edge_list.append((parent, child))

            frontier = next_frontier
            depth += 1

        member_set = set(members)
        detached = [
            ref
            for ref in nulled_candidates
            if RecordRef(ref.referencing_type, ref.referencing_identity)
            not in member_set
        ]

        deletion_order = self._order(members, depths, edge_list, back_edges)

        logger.debug(
            "Expanded %s into %d member(s)",
            root,
            len(members),
            extra={"back_edges": len(back_edges), "detached": len(detached)},
        )

        return ExpansionResult(
            root=root,
            members=members,
            deletion_order=deletion_order,
            records=records,
            depths=depths,
            edges=edge_list,
            back_edges=back_edges,
            self_references=self_references,
            detached=detached,
        )

    def _order(
        self,
        members: List[RecordRef],
        depths: Dict[RecordRef, int],
        edges: List[InstanceEdge],
        back_edges: List[InstanceEdge],
    ) -> List[RecordRef]:
        """
        Kahn's algorithm over "child before parent" constraints.

        Ties are broken deepest-first, then by discovery order, so the same
        data always yields the same order.
        """
        discovery = {ref: index for index, ref in enumerate(members)}
        pending_children: Dict[RecordRef, int] = {ref: 0 for ref in members}
        parents_of: Dict[RecordRef, List[RecordRef]] = defaultdict(list)

        for parent, child in edges:
            pending_children[parent] += 1
            parents_of[child].append(parent)

        ready: List[Tuple[int, int, RecordRef]] = []
        for ref in members:
            if pending_children[ref] == 0:
                heapq.heappush(ready, (-depths[ref], discovery[ref], ref))

        order: List[RecordRef] = []
        while ready:
            _, _, ref = heapq.heappop(ready)
            order.append(ref)
            for parent in parents_of[ref]:
                pending_children[parent] -= 1
                if pending_children[parent] == 0:
                    heapq.heappush(
                        ready, (-depths[parent], discovery[parent], parent)
                    )

        if len(order) != len(members):
            stuck = sorted(
                (ref for ref in members if pending_children[ref] > 0),
                key=lambda ref: ref.sort_key,
            )
            depth = max(
                (depths[child] for _, child in back_edges),
                default=max(depths[ref] for ref in stuck),
            )
            raise CycleDetectedAtUnexpectedDepth(
                stuck, depth, "mutually cascading instances"
            )

        return order

    def _detached(
        self,
        storage: PrimaryStorage,
        edge: RelationEdge,
        parents: Dict[Any, RecordRef],
    ) -> List[DetachedReference]:
        keyed = bool(self.registry.get_type(edge.target_type).identity_field)
        result = []
        for record in storage.find_referencing_many(
            edge.target_type, edge.field, parents.keys()
        ):
            parent = parents.get(record[edge.field])
            if parent is None:
                continue
            result.append(
                DetachedReference(
                    edge=edge,
                    referencing_type=edge.target_type,
                    referencing_identity=(
                        self.registry.identity_of(edge.target_type, record)
                        if keyed
                        else None
                    ),
                    referenced_member=parent,
                )
            )
        return result

    def _stable(
        self, type_name: str, records: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Sort records by identity so discovery order does not depend on the backend."""
        return sorted(
            records,
            key=lambda record: RecordRef(
                type_name, self.registry.identity_of(type_name, record)
            ).sort_key,
        )

    @staticmethod
    def _is_ancestor(
        candidate: RecordRef,
        ref: RecordRef,
        parent_of: Dict[RecordRef, Optional[RecordRef]],
    ) -> bool:
        current: Optional[RecordRef] = ref
        while current is not None:
            if current == candidate:
                return True
            current = parent_of.get(current)
        return False
