"""
Tests for the resource registry and provider wiring
"""

import pytest

from .config import ProviderSettings
from .conftest import FakeDatabase, FakePool
from .errors import UnknownResourceTypeError
from .registry import Provider, ResourceRegistry
from .resource import Resource, requires_replace
from .role import RoleActualState, RoleDesiredState, RoleReconciler


def test_role_is_registered_by_default(context):
    registry = ResourceRegistry()

    resource = registry.create("postgresql_role", context)

    assert isinstance(resource, RoleReconciler)
    assert resource.context is context
    assert registry.list_types() == ["postgresql_role"]
    assert "postgresql_role" in registry


def test_unknown_type(context):
    with pytest.raises(UnknownResourceTypeError) as excinfo:
        ResourceRegistry().create("postgresql_table", context)

    assert excinfo.value.to_diagnostic().summary == "Unknown resource type"
    assert "supported: postgresql_role" in str(excinfo.value)


def test_register_custom_type(context):
    class ReadOnlyRole(RoleReconciler):
        type_name = "postgresql_readonly_role"

    registry = ResourceRegistry()
    registry.register(ReadOnlyRole.type_name, ReadOnlyRole)

    resource = registry.create("postgresql_readonly_role", context)
    assert isinstance(resource, Resource)
    assert registry.list_types() == ["postgresql_readonly_role", "postgresql_role"]


def test_provider_requires_configure():
    provider = Provider()

    with pytest.raises(RuntimeError):
        provider.resource("postgresql_role")


def test_provider_hands_out_resources_bound_to_its_context():
    database = FakeDatabase()
    provider = Provider(pool_factory=lambda *a, **kw: FakePool(database, *a, **kw))
    context = provider.configure(ProviderSettings(hostname="localhost", port=5432, username="postgres"))

    resource = provider.resource("postgresql_role")

    assert resource.context is context
    assert provider.resource("postgresql_role") is resource
    provider.close()
    assert context.pool.closed


def test_declared_role_schema():
    """Defaults and modifiers exposed to the orchestrator's schema layer"""
    fields = RoleDesiredState.model_fields
    assert RoleReconciler.schema is RoleDesiredState
    assert "oid" not in fields, "oid is computed, never configurable"
    assert RoleActualState.model_fields["oid"].json_schema_extra == {"computed": True}
    assert fields["name"].is_required()
    assert requires_replace(RoleDesiredState, ["name"]) and not requires_replace(RoleDesiredState, ["can_login"])
    assert fields["connection_limit"].default == -1
    assert fields["inherit"].default is True
    for name in ("bypass_row_level_security", "can_login", "create_role", "replication", "superuser"):
        assert fields[name].default is False, name
