"""
Schema Registry - Resource schema declarations.

A ResourceSchema declares, per resource type, the attributes an instance
carries, how each one may change (forces replacement, updatable in place, or
computed by the remote system), defaults and validation rules, and the
ordering constraints the planner must honor when several attributes change
together.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from converge.base import InstanceKey
from converge.errors import CyclicDependency, SchemaMismatch
from converge.validation import (
    validate_against_schema,
    validate_json_schema,
    validate_schema_document,
)
from converge.values import Value, ValueKind

logger = logging.getLogger(__name__)


class AttributeType(Enum):
    """Semantic type of an attribute."""

    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    MAP = "map"
    ANY = "any"


class Mutability(Enum):
    """How a change to an attribute is applied."""

    FORCES_REPLACEMENT = "forces_replacement"
    UPDATABLE = "updatable"
    COMPUTED = "computed"


class Presence(Enum):
    """Whether an attribute is set by configuration, the remote system, or both."""

    REQUIRED = "required"
    OPTIONAL = "optional"
    COMPUTED = "computed"
    OPTIONAL_COMPUTED = "optional_computed"


class ReplacePolicy(Enum):
    """Order of the two halves of a replacement."""

    DESTROY_BEFORE_CREATE = "destroy_before_create"
    CREATE_BEFORE_DESTROY = "create_before_destroy"


_KIND_FOR_TYPE = {
    AttributeType.STRING: ValueKind.STRING,
    AttributeType.NUMBER: ValueKind.NUMBER,
    AttributeType.BOOL: ValueKind.BOOL,
    AttributeType.LIST: ValueKind.LIST,
    AttributeType.MAP: ValueKind.MAP,
}

# Kinds accepted for any attribute type
_WILDCARD_KINDS = (ValueKind.NULL, ValueKind.UNKNOWN, ValueKind.REFERENCE)


@dataclass(frozen=True)
class AttributeSchema:
    """Declaration of a single attribute."""

    name: str
    type: AttributeType = AttributeType.STRING
    mutability: Mutability = Mutability.UPDATABLE
    presence: Presence = Presence.OPTIONAL
    default: Any = None
    validation: Optional[Dict[str, Any]] = None
    conflicts_with: Tuple[str, ...] = ()
    deprecated: Optional[str] = None
    sensitive: bool = False

    @property
    def computed_only(self) -> bool:
        """Set only by the remote system; configuration may not set it."""
        return self.presence == Presence.COMPUTED or self.mutability == Mutability.COMPUTED

    @property
    def keeps_prior_when_unset(self) -> bool:
        return self.computed_only or self.presence == Presence.OPTIONAL_COMPUTED

    @property
    def forces_replacement(self) -> bool:
        return self.mutability == Mutability.FORCES_REPLACEMENT

    def default_value(self) -> Optional[Value]:
        if self.default is None:
            return None
        return Value.from_python(self.default)

    def accepts(self, value: Value) -> bool:
        """Whether a value's kind is compatible with the declared type."""
        if self.type == AttributeType.ANY or value.kind in _WILDCARD_KINDS:
            return True
        return value.kind == _KIND_FOR_TYPE[self.type]


@dataclass(frozen=True)
class OrderingConstraint:
    """When both attributes change together, ``before`` is applied first."""

    before: str
    after: str


@dataclass(frozen=True)
class OperationTimeouts:
    """Per-operation timeouts in seconds (None falls back to the executor default)."""

    create: Optional[float] = None
    read: Optional[float] = None
    update: Optional[float] = None
    delete: Optional[float] = None

    def for_operation(self, operation: str) -> Optional[float]:
        return getattr(self, operation, None)


@dataclass
class ResourceSchema:
    """
    Schema for one resource type at one provider version.

    Attributes are kept in declaration order, which is also the order the
    differ reports changes in.
    """

    type_name: str
    attributes: Sequence[AttributeSchema]
    version: str = "1"
    ordering: Sequence[OrderingConstraint] = field(default_factory=tuple)
    replace_policy: ReplacePolicy = ReplacePolicy.DESTROY_BEFORE_CREATE
    timeouts: OperationTimeouts = field(default_factory=OperationTimeouts)

    def __post_init__(self):
        self.attributes = tuple(self.attributes)
        self.ordering = tuple(self.ordering)
        self._by_name: Dict[str, AttributeSchema] = {}

        for attr in self.attributes:
            if attr.name in self._by_name:
                raise SchemaMismatch(
                    f"Duplicate attribute '{attr.name}' in schema {self.type_name}"
                )
            self._by_name[attr.name] = attr

        for attr in self.attributes:
            for other in attr.conflicts_with:
                if other not in self._by_name:
                    raise SchemaMismatch(
                        f"Attribute '{attr.name}' of {self.type_name} conflicts with "
                        f"unknown attribute '{other}'"
                    )
            if attr.validation is not None:
                is_valid, error = validate_json_schema(attr.validation)
                if not is_valid:
                    raise SchemaMismatch(
                        f"Attribute '{attr.name}' of {self.type_name}: {error}"
                    )

        for constraint in self.ordering:
            for name in (constraint.before, constraint.after):
                if name not in self._by_name:
                    raise SchemaMismatch(
                        f"Ordering constraint on {self.type_name} names "
                        f"unknown attribute '{name}'"
                    )

        # Fail at registration if the constraints can never be satisfied
        self.ordered_phases([c.before for c in self.ordering] + [c.after for c in self.ordering])

    # Lookup

    @property
    def names(self) -> List[str]:
        return [attr.name for attr in self.attributes]

    def has_attribute(self, name: str) -> bool:
        return name in self._by_name

    def attribute(self, name: str) -> AttributeSchema:
        try:
            return self._by_name[name]
        except KeyError:
            raise SchemaMismatch(
                f"Attribute '{name}' is not defined for type {self.type_name}"
            ) from None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceSchema):
            return NotImplemented
        return (
            self.type_name == other.type_name
            and self.version == other.version
            and self.attributes == other.attributes
            and set(self.ordering) == set(other.ordering)
            and self.replace_policy == other.replace_policy
            and self.timeouts == other.timeouts
        )

    # Validation

    def validate(self, key: InstanceKey, attributes: Dict[str, Value]) -> None:
        """
        Validate desired attributes for an instance.

        Raises:
            SchemaMismatch: On unknown or computed-only attributes, type
                mismatches, missing required attributes, conflicting
                attributes, or values rejected by the attribute's
                validation fragment
        """
        if key.type_name != self.type_name:
            raise SchemaMismatch(
                f"Schema {self.type_name} cannot describe type {key.type_name}",
                instance=key,
            )

        for name, value in attributes.items():
            if name not in self._by_name:
                raise SchemaMismatch(
                    f"Attribute '{name}' is not defined for type {self.type_name}",
                    instance=key,
                )
            attr = self._by_name[name]
            if attr.computed_only and not value.is_null:
                raise SchemaMismatch(
                    f"Attribute '{name}' is computed and cannot be configured",
                    instance=key,
                )
            if not attr.accepts(value):
                raise SchemaMismatch(
                    f"Attribute '{name}' expects {attr.type.value}, "
                    f"got {value.kind.value}",
                    instance=key,
                )
            if attr.deprecated and not value.is_null:
                logger.warning(f"{key}: attribute '{name}' is deprecated: {attr.deprecated}")
            if attr.validation is not None and value.is_known and not value.is_null:
                is_valid, error = validate_against_schema(value.to_python(), attr.validation)
                if not is_valid:
                    raise SchemaMismatch(
                        f"Attribute '{name}' is invalid: {error}", instance=key
                    )

        for attr in self.attributes:
            present = name_is_set(attributes, attr.name)
            if attr.presence == Presence.REQUIRED and not present:
                raise SchemaMismatch(
                    f"Required attribute '{attr.name}' is missing", instance=key
                )
            if present:
                for other in attr.conflicts_with:
                    if name_is_set(attributes, other):
                        raise SchemaMismatch(
                            f"Attributes '{attr.name}' and '{other}' cannot both be set",
                            instance=key,
                        )

    def filter_known(self, attributes: Dict[str, Value]) -> Dict[str, Value]:
        """Drop attributes the schema does not declare (e.g. extra remote fields)."""
        kept = {}
        for name, value in attributes.items():
            if name in self._by_name:
                kept[name] = value
            else:
                logger.debug(f"Ignoring undeclared attribute '{name}' for {self.type_name}")
        return kept

    # Ordering

    def ordered_phases(self, names: Sequence[str]) -> List[List[str]]:
        """
        Group changed attributes into phases that honor the ordering constraints.

        Constraints only apply when both of their attributes are in ``names``.
        Within a phase attributes keep schema declaration order.

        Raises:
            CyclicDependency: If the applicable constraints form a cycle
        """
        wanted = set(names)
        pending = [n for n in self.names if n in wanted]
        edges = [
            c for c in self.ordering if c.before in pending and c.after in pending
        ]
        phases: List[List[str]] = []
        while pending:
            blocked = {c.after for c in edges if c.before in pending}
            phase = [n for n in pending if n not in blocked]
            if not phase:
                raise CyclicDependency(
                    [f"{self.type_name}.{n}" for n in pending]
                )
            phases.append(phase)
            pending = [n for n in pending if n in blocked]
        return phases


def name_is_set(attributes: Dict[str, Value], name: str) -> bool:
    return name in attributes and not attributes[name].is_null


def schema_from_dict(document: Dict[str, Any]) -> ResourceSchema:
    """
    Build a ResourceSchema from a YAML/JSON document.

    Example::

        type: bucket
        version: "2"
        replace_policy: destroy_before_create
        timeouts: {create: 1200, delete: 3600}
        ordering:
          - {before: versioning, after: replication}
        attributes:
          name: {type: string, mutability: forces_replacement, presence: required}
          arn: {type: string, presence: computed}

    Raises:
        SchemaMismatch: If the document is malformed
    """
    is_valid, error = validate_schema_document(document)
    if not is_valid:
        raise SchemaMismatch(f"Invalid schema document: {error}")

    attributes = []
    for name, definition in document["attributes"].items():
        definition = definition or {}
        attributes.append(
            AttributeSchema(
                name=name,
                type=AttributeType(definition.get("type", "string")),
                mutability=Mutability(definition.get("mutability", "updatable")),
                presence=Presence(definition.get("presence", "optional")),
                default=definition.get("default"),
                validation=definition.get("validation"),
                conflicts_with=tuple(definition.get("conflicts_with", [])),
                deprecated=definition.get("deprecated"),
                sensitive=definition.get("sensitive", False),
            )
        )

    return ResourceSchema(
        type_name=document["type"],
        version=str(document.get("version", "1")),
        attributes=attributes,
        ordering=[
            OrderingConstraint(before=c["before"], after=c["after"])
            for c in document.get("ordering", [])
        ],
        replace_policy=ReplacePolicy(
            document.get("replace_policy", ReplacePolicy.DESTROY_BEFORE_CREATE.value)
        ),
        timeouts=OperationTimeouts(**document.get("timeouts", {})),
    )


def version_key(version: str) -> Tuple[Tuple[int, Any], ...]:
    """
    Sort key for schema versions.

    Dot-separated numeric parts compare as numbers, so "10" sorts above "9"
    and "1.10" above "1.9". Other parts compare as text, below numbers.
    """
    return tuple((1, int(part)) if part.isdigit() else (0, part) for part in version.split("."))


class SchemaRegistry:
    """
    Central registry of resource schemas.

    A schema is immutable once registered for a given provider version:
    registering an identical schema again is a no-op, registering a different
    one under the same type and version raises SchemaMismatch.
    """

    def __init__(self):
        self._schemas: Dict[Tuple[str, str], ResourceSchema] = {}
        # Highest registered version per type
        self._current: Dict[str, str] = {}

    def register(self, schema: ResourceSchema) -> None:
        """
        Register a resource schema.

        Args:
            schema: The ResourceSchema to register

        Raises:
            SchemaMismatch: If a different schema is already registered for
                the same type and version
        """
        registry_key = (schema.type_name, schema.version)
        existing = self._schemas.get(registry_key)
        if existing is not None:
            if existing == schema:
                return
            raise SchemaMismatch(
                f"Schema {schema.type_name} v{schema.version} is already registered "
                f"with different content"
            )

        self._schemas[registry_key] = schema
        current = self._current.get(schema.type_name)
        if current is None or version_key(schema.version) > version_key(current):
            self._current[schema.type_name] = schema.version
        logger.info(
            f"Registered schema {schema.type_name} v{schema.version} "
            f"({len(schema.attributes)} attributes)"
        )

    def register_documents(self, documents: List[Dict[str, Any]]) -> None:
        """Parse and register a list of schema documents."""
        for document in documents:
            self.register(schema_from_dict(document))

    def get(self, type_name: str, version: Optional[str] = None) -> ResourceSchema:
        """
        Get the schema for a resource type.

        Args:
            type_name: The resource type name
            version: Specific version, or None for the highest registered

        Raises:
            SchemaMismatch: If no schema is registered for the type/version
        """
        if version is None:
            version = self._current.get(type_name)
        schema = self._schemas.get((type_name, version)) if version else None
        if schema is None:
            available = ", ".join(sorted(self._current)) or "none"
            raise SchemaMismatch(
                f"No schema registered for type {type_name}"
                + (f" v{version}" if version else "")
                + f". Registered types: {available}"
            )
        return schema

    def has(self, type_name: str) -> bool:
        return type_name in self._current

    def list_types(self) -> List[str]:
        return sorted(self._current)
