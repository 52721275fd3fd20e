"""
Operation set and attribute helpers shared by every managed resource type.

A resource type declares its configurable attributes as a frozen pydantic
model (its `schema`). Field metadata carries the orchestrator-facing
modifiers: `json_schema_extra={"requires_replace": True}` marks attributes
that cannot change in place.
"""

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol, Type, TypeVar, runtime_checkable

from pydantic import BaseModel, ValidationError

from .errors import ManifestError

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class ResourceKey:
    """Identity established by an import, used by the following read"""
    attribute: str
    value: Any


def decode_attributes(model: Type[ModelT], data: Mapping[str, Any]) -> ModelT:
    """
    Validate supplied attributes against a resource model

    Declared defaults are filled in; unknown attributes are rejected.

    Raises:
        ManifestError: the attributes do not satisfy the model
    """
    if not isinstance(data, Mapping):
        raise ManifestError(f"Attributes must be a mapping, got: {data!r}")
    try:
        return model.model_validate(dict(data))
    except ValidationError as e:
        raise ManifestError.from_validation(e) from e


def _field_flag(schema: Type[BaseModel], name: str, flag: str) -> bool:
    extra = schema.model_fields[name].json_schema_extra
    return bool(isinstance(extra, dict) and extra.get(flag))


def changed_attributes(schema: Type[BaseModel], prior: BaseModel, desired: BaseModel) -> List[str]:
    """Names of configurable attributes whose values differ, in declaration order"""
    return [
        name for name in schema.model_fields
        if getattr(prior, name) != getattr(desired, name)
    ]


def requires_replace(schema: Type[BaseModel], changed: List[str]) -> bool:
    return any(_field_flag(schema, name, "requires_replace") for name in changed)


@runtime_checkable
class Resource(Protocol):
    """Capability set every registered resource type implements"""

    type_name: str
    schema: Type[BaseModel]

    def create(self, desired: Any) -> Any:
        """Create the object and return its actual state."""

    def read(self, oid: Optional[int], name: Optional[str] = None) -> Optional[Any]:
        """Return the actual state, or None when the object no longer exists."""

    def update(self, desired: Any, oid: int) -> Any:
        """Apply in-place changes and return the actual state."""

    def delete(self, name: str) -> None:
        """Remove the object."""

    def import_state(self, token: str) -> ResourceKey:
        """Turn an import token into the identity used by the next read."""

    def decode_desired(self, data: Mapping[str, Any]) -> Any:
        """Build the desired state from manifest attributes."""

    def decode_state(self, data: Mapping[str, Any]) -> Any:
        """Build the actual state from persisted attributes."""
