"""
Differ - Attribute-level comparison of desired configuration and prior state.

The differ classifies every changed attribute by its mutability class and
decides the action for the whole instance. Replacement is all-or-nothing per
instance: when any forces-replacement attribute changes, the update diff is
dropped and the instance is recreated.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from converge.base import DesiredInstance, InstanceKey
from converge.errors import SchemaMismatch
from converge.schema import ResourceSchema, SchemaRegistry
from converge.state import ResourceInstance, StateSnapshot
from converge.values import Value

logger = logging.getLogger(__name__)


class DiffAction(Enum):
    """Action implied for a whole instance."""

    NOOP = "noop"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


class ChangeAction(Enum):
    """Action implied by a single attribute change."""

    SET = "set"
    REPLACE = "replace"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AttributeChange:
    """Old and new value of one attribute."""

    old: Value
    new: Value
    action: ChangeAction


@dataclass
class InstanceDiff:
    """Structured diff for one instance."""

    key: InstanceKey
    action: DiffAction = DiffAction.NOOP
    changes: Dict[str, AttributeChange] = field(default_factory=dict)
    # Attributes whose comparison waits for apply time
    deferred: List[str] = field(default_factory=list)
    replace_reasons: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.action == DiffAction.NOOP

    def new_values(self) -> Dict[str, Value]:
        return {name: change.new for name, change in self.changes.items()}


def effective_attributes(
    schema: ResourceSchema, desired: DesiredInstance
) -> Dict[str, Value]:
    """
    Desired values for every configurable attribute, with defaults applied.

    Computed-only attributes are omitted, as are optional+computed attributes
    the configuration leaves unset (the remote value is kept).
    """
    result: Dict[str, Value] = {}
    for attr in schema.attributes:
        if attr.computed_only:
            continue
        value = desired.attributes.get(attr.name)
        if value is None or value.is_null:
            default = attr.default_value()
            if default is not None:
                value = default
            elif attr.keeps_prior_when_unset:
                continue
            else:
                value = Value.null()
        result[attr.name] = value
    return result


def diff(
    schema: ResourceSchema,
    prior: Optional[ResourceInstance],
    desired: Optional[DesiredInstance],
) -> InstanceDiff:
    """
    Compute the diff between prior state and desired configuration.

    Args:
        schema: Schema of the instance's resource type
        prior: Last-known state of the instance, or None if it does not exist
        desired: Desired configuration, or None if the instance should not exist

    Returns:
        The InstanceDiff (deterministic for the same inputs)

    Raises:
        SchemaMismatch: If the desired configuration violates the schema
    """
    if desired is None and prior is None:
        raise ValueError("diff() needs a prior instance or a desired configuration")
    key = desired.key if desired is not None else prior.key

    if desired is None:
        return InstanceDiff(key=key, action=DiffAction.DELETE)

    schema.validate(key, desired.attributes)
    wanted = effective_attributes(schema, desired)

    if prior is None or prior.id is None:
        result = InstanceDiff(key=key, action=DiffAction.CREATE)
        for name, value in wanted.items():
            if value.is_null:
                continue
            if value.is_known:
                result.changes[name] = AttributeChange(Value.null(), value, ChangeAction.SET)
            else:
                result.changes[name] = AttributeChange(
                    Value.null(), value, ChangeAction.UNKNOWN
                )
                result.deferred.append(name)
        return result

    changes: Dict[str, AttributeChange] = {}
    deferred: List[str] = []
    replace_reasons: List[str] = []

    for name, value in wanted.items():
        old = prior.attributes.get(name, Value.null())
        if not value.is_known:
            # No decision on unknown values; the instance stays in the plan
            changes[name] = AttributeChange(old, value, ChangeAction.UNKNOWN)
            deferred.append(name)
            continue
        if value == old:
            continue
        if schema.attribute(name).forces_replacement:
            changes[name] = AttributeChange(old, value, ChangeAction.REPLACE)
            replace_reasons.append(name)
        else:
            changes[name] = AttributeChange(old, value, ChangeAction.SET)

    if replace_reasons:
        return InstanceDiff(
            key=key,
            action=DiffAction.REPLACE,
            changes={n: changes[n] for n in replace_reasons},
            replace_reasons=replace_reasons,
        )
    if changes:
        return InstanceDiff(
            key=key, action=DiffAction.UPDATE, changes=changes, deferred=deferred
        )
    return InstanceDiff(key=key, action=DiffAction.NOOP)


def diff_all(
    registry: SchemaRegistry,
    snapshot: StateSnapshot,
    desired: Sequence[DesiredInstance],
    resolve: Optional[
        Callable[[DesiredInstance, Dict[InstanceKey, InstanceDiff]], DesiredInstance]
    ] = None,
) -> List[InstanceDiff]:
    """
    Diff every desired instance and every prior instance no longer desired.

    Desired instances are processed in the order given. When ``resolve`` is
    passed it is called with each instance and the diffs computed so far, and
    must return the instance with its references substituted; callers pass
    instances in dependency order so that referenced diffs already exist.
    Deposed objects always diff to DELETE.

    Raises:
        SchemaMismatch: On duplicate instances or schema violations
    """
    diffs: List[InstanceDiff] = []
    by_key: Dict[InstanceKey, InstanceDiff] = {}
    for instance in desired:
        if instance.key in by_key:
            raise SchemaMismatch("Instance is declared more than once", instance=instance.key)
        if resolve is not None:
            instance = resolve(instance, by_key)
        schema = registry.get(instance.key.type_name)
        result = diff(schema, snapshot.get(instance.key), instance)
        by_key[instance.key] = result
        diffs.append(result)

    for key in sorted(snapshot.instances):
        if key not in by_key:
            diffs.append(InstanceDiff(key=key, action=DiffAction.DELETE))

    for key in snapshot.deposed_keys():
        diffs.append(InstanceDiff(key=key, action=DiffAction.DELETE))

    return diffs
