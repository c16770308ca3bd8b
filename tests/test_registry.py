"""
Tests for the graph registry and its models.
"""

import json

import pytest
import yaml
from sqlalchemy import Column, ForeignKey, Integer, MetaData, Table

from safe_delete import (
    CascadeBehavior,
    EntityType,
    GraphRegistry,
    RecordRef,
    RegistryError,
    RelationEdge,
    UnknownEntityType,
)


def hr_document():
    return {
        "types": [
            {
                "name": "employee",
                "relations": [
                    {"target_type": "leave_request", "field": "employee_id"},
                    {
                        "target_type": "employee",
                        "field": "manager_id",
                        "cascade": "SET NULL",
                    },
                ],
            },
            {"name": "leave_request"},
            {
                "name": "payroll",
                "relations": [
                    {
                        "target_type": "employee",
                        "field": "employee_id",
                        "cascade": "restrict",
                    }
                ],
            },
        ]
    }


class TestModels:
    """Test entity type, edge and record reference models."""

    def test_edge_direction(self):
        """Test referencing/referenced types for each behavior."""
        cascade = RelationEdge(
            source_type="employee", target_type="leave_request", field="employee_id"
        )
        assert cascade.cascade == CascadeBehavior.CASCADE
        assert cascade.referencing_type == "leave_request"
        assert cascade.referenced_type == "employee"

        restrict = RelationEdge(
            source_type="payroll",
            target_type="employee",
            field="employee_id",
            cascade="restrict",
        )
        assert restrict.cascade.blocks
        assert restrict.referencing_type == "payroll"
        assert restrict.referenced_type == "employee"

    def test_cascade_spellings(self):
        """Test SQL-style spellings are accepted."""
        edge = RelationEdge(
            source_type="a", target_type="b", field="a_id", cascade="NO ACTION"
        )
        assert edge.cascade == CascadeBehavior.NO_ACTION
        assert edge.cascade.blocks

    def test_display_name(self):
        """Test display name falls back to type and identity."""
        entity_type = EntityType(name="employee")
        assert entity_type.display_name({"name": "Alice"}, 1) == "Alice"
        assert entity_type.display_name({"name": ""}, 7) == "employee #7"

    def test_record_ref_sort_key(self):
        """Test numeric identities sort numerically."""
        refs = [RecordRef("employee", 10), RecordRef("employee", 9)]
        assert sorted(refs, key=lambda r: r.sort_key)[0].identity == 9
        assert str(RecordRef("employee", 3)) == "employee#3"


class TestRegistration:
    """Test programmatic registration and validation."""

    def test_register_and_query(self):
        """Test relations and incoming indexes."""
        registry = GraphRegistry.from_dict(hr_document())

        assert {t.name for t in registry.all_types()} == {
            "employee",
            "leave_request",
            "payroll",
        }
        assert len(registry.relations("employee")) == 2
        assert [e.field for e in registry.cascade_children("employee")] == [
            "employee_id"
        ]
        incoming = registry.incoming("employee")
        assert {(e.referencing_type, e.field) for e in incoming} == {
            ("employee", "manager_id"),
            ("payroll", "employee_id"),
        }

    def test_type_level_self_reference_allowed(self):
        """Test a cascading self-edge is accepted at type level."""
        registry = GraphRegistry()
        registry.register_type(
            EntityType(name="category"),
            [
                RelationEdge(
                    source_type="category", target_type="category", field="parent_id"
                )
            ],
        )
        registry.freeze()
        assert registry.relations("category")[0].is_self_reference

    def test_restrict_to_keyless_target_rejected(self):
        """Test RESTRICT edge targeting a type without identity is fatal."""
        registry = GraphRegistry()
        registry.register_type(EntityType(name="audit_row", identity_field=None))
        registry.register_type(
            EntityType(name="employee"),
            [
                RelationEdge(
                    source_type="employee",
                    target_type="audit_row",
                    field="audit_id",
                    cascade="restrict",
                )
            ],
        )
        with pytest.raises(RegistryError, match="no identity field"):
            registry.freeze()

    def test_unknown_edge_type_rejected(self):
        """Test edges must reference registered types."""
        registry = GraphRegistry()
        registry.register_type(
            EntityType(name="employee"),
            [
                RelationEdge(
                    source_type="employee", target_type="ghost", field="employee_id"
                )
            ],
        )
        with pytest.raises(RegistryError, match="ghost"):
            registry.freeze()

    def test_duplicate_type_rejected(self):
        """Test a type cannot be registered twice."""
        registry = GraphRegistry()
        registry.register_type(EntityType(name="employee"))
        with pytest.raises(RegistryError):
            registry.register_type(EntityType(name="employee"))

    def test_read_only_after_freeze(self):
        """Test registration fails once frozen."""
        registry = GraphRegistry.from_dict(hr_document())
        with pytest.raises(RegistryError, match="read-only"):
            registry.register_type(EntityType(name="project"))

    def test_unknown_type_lookup(self):
        """Test unknown type lookups raise UnknownEntityType."""
        registry = GraphRegistry.from_dict(hr_document())
        with pytest.raises(UnknownEntityType):
            registry.relations("ghost")

    def test_malformed_document(self):
        """Test malformed documents raise RegistryError."""
        with pytest.raises(RegistryError):
            GraphRegistry.from_dict({"entities": []})
        with pytest.raises(RegistryError):
            GraphRegistry.from_dict(
                {"types": [{"name": "a", "relations": [{"cascade": "cascade"}]}]}
            )


class TestLoaders:
    """Test file and metadata loaders."""

    def test_from_yaml(self, tmp_path):
        """Test loading from YAML."""
        path = tmp_path / "registry.yaml"
        path.write_text(yaml.safe_dump(hr_document()))

        registry = GraphRegistry.from_yaml(path)
        assert registry.frozen
        assert registry.has_type("payroll")

    def test_from_json_round_trip(self, tmp_path):
        """Test to_dict output loads back as JSON."""
        original = GraphRegistry.from_dict(hr_document())
        path = tmp_path / "registry.json"
        path.write_text(json.dumps(original.to_dict()))

        loaded = GraphRegistry.from_yaml(path)
        assert set(loaded.all_edges()) == set(original.all_edges())

    def test_from_metadata(self, registry):
        """Test foreign keys map to edges and behaviors."""
        edges = {(e.referencing_type, e.field): e for e in registry.all_edges()}

        assert edges[("employee", "department_id")].cascade == CascadeBehavior.CASCADE
        assert edges[("employee", "department_id")].source_type == "department"
        assert edges[("payroll", "employee_id")].cascade == CascadeBehavior.RESTRICT
        assert edges[("payroll", "employee_id")].source_type == "payroll"
        assert edges[("employee", "manager_id")].cascade == CascadeBehavior.SET_NULL
        assert registry.get_type("employee").identity_field == "id"

    def test_from_metadata_default_behavior(self):
        """Test foreign keys without ondelete use the default behavior."""
        metadata = MetaData()
        Table("team", metadata, Column("id", Integer, primary_key=True))
        Table(
            "member",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("team_id", Integer, ForeignKey("team.id")),
        )

        registry = GraphRegistry.from_metadata(metadata)
        edge = registry.relations("member")[0]
        assert edge.cascade == CascadeBehavior.NO_ACTION
        assert edge.target_type == "team"

    def test_from_metadata_unsupported_ondelete(self):
        """Test SET DEFAULT is rejected."""
        metadata = MetaData()
        Table("team", metadata, Column("id", Integer, primary_key=True))
        Table(
            "member",
            metadata,
            Column("id", Integer, primary_key=True),
            Column("team_id", Integer, ForeignKey("team.id", ondelete="SET DEFAULT")),
        )

        with pytest.raises(RegistryError, match="SET DEFAULT"):
            GraphRegistry.from_metadata(metadata)
