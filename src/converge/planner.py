"""
Plan Builder - Turns instance diffs into an execution graph.

References between instances are resolved before diffing, in dependency
order, so that a value the remote system only knows after apply becomes
UNKNOWN instead of a stale prior value. The resulting graph orders creates
and updates after the instances they depend on, and deletes before the
instances that depended on them.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from tabulate import tabulate

from converge.base import DesiredInstance, InstanceKey
from converge.differ import DiffAction, InstanceDiff, diff_all
from converge.errors import CyclicDependency, SchemaMismatch
from converge.schema import ReplacePolicy, SchemaRegistry
from converge.state import StateSnapshot
from converge.values import Reference, ReferenceResolver, Value, substitute

logger = logging.getLogger(__name__)


class ActionKind(Enum):
    """Kind of remote work an action performs."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


_KIND_FOR_DIFF = {
    DiffAction.CREATE: ActionKind.CREATE,
    DiffAction.UPDATE: ActionKind.UPDATE,
    DiffAction.REPLACE: ActionKind.REPLACE,
    DiffAction.DELETE: ActionKind.DELETE,
}


@dataclass
class Action:
    """One node of the execution graph."""

    kind: ActionKind
    key: InstanceKey
    diff: InstanceDiff
    depends_on: Set[InstanceKey] = field(default_factory=set)
    # Unresolved configuration; references are resolved again at apply time
    desired: Optional[DesiredInstance] = None
    policy: Optional[ReplacePolicy] = None
    phases: List[List[str]] = field(default_factory=list)
    sensitive: Set[str] = field(default_factory=set)

    def details(self) -> str:
        """Short description of the attribute changes."""
        if self.kind == ActionKind.DELETE:
            return ""
        if self.kind == ActionKind.REPLACE:
            reasons = ", ".join(self.diff.replace_reasons)
            return f"forces replacement: {reasons} ({self.policy.value})"
        parts = []
        for name, change in self.diff.changes.items():
            hidden = name in self.sensitive
            if self.kind == ActionKind.CREATE:
                parts.append(f"{name} = {change.new.render(hidden)}")
            else:
                parts.append(
                    f"{name}: {change.old.render(hidden)} -> {change.new.render(hidden)}"
                )
        return "; ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        changes = {}
        for name, change in self.diff.changes.items():
            hidden = name in self.sensitive
            changes[name] = {
                "old": change.old.render(hidden),
                "new": change.new.render(hidden),
                "action": change.action.value,
            }
        return {
            "action": self.kind.value,
            "instance": str(self.key),
            "depends_on": sorted(str(k) for k in self.depends_on),
            "changes": changes,
            "deferred": list(self.diff.deferred),
            "replace_reasons": list(self.diff.replace_reasons),
            "policy": self.policy.value if self.policy else None,
            "phases": [list(p) for p in self.phases],
        }


def topological_sort(
    nodes: Iterable[InstanceKey], dependencies: Dict[InstanceKey, Set[InstanceKey]]
) -> List[InstanceKey]:
    """
    Order nodes so that every node comes after its dependencies.

    Dependencies outside ``nodes`` are ignored. Ties are broken by key order
    so the result is deterministic.

    Raises:
        CyclicDependency: Listing the instances that take part in a cycle
    """
    nodes = set(nodes)
    remaining = {n: {d for d in dependencies.get(n, ()) if d in nodes} for n in nodes}
    order: List[InstanceKey] = []

    ready = sorted(n for n, deps in remaining.items() if not deps)
    while ready:
        node = ready.pop(0)
        order.append(node)
        del remaining[node]
        released = []
        for other, deps in remaining.items():
            if node in deps:
                deps.discard(node)
                if not deps:
                    released.append(other)
        ready = sorted(ready + released)

    if remaining:
        # Drop nodes that only sit downstream of a cycle
        members = set(remaining)
        changed = True
        while changed:
            changed = False
            for node in sorted(members):
                if not any(node in remaining[o] for o in members if o != node):
                    members.discard(node)
                    changed = True
        raise CyclicDependency(sorted(members or remaining))

    return order


class ExecutionGraph:
    """
    DAG of actions keyed by instance.

    Deposed deletes use the deposed InstanceKey, so they never collide with
    an action on the current object of the same instance.
    """

    def __init__(self, actions: Optional[Iterable[Action]] = None):
        self.actions: Dict[InstanceKey, Action] = {}
        for action in actions or []:
            self.add(action)

    def add(self, action: Action) -> None:
        if action.key in self.actions:
            raise ValueError(f"Duplicate action for {action.key}")
        self.actions[action.key] = action

    def get(self, key: InstanceKey) -> Action:
        return self.actions[key]

    def __contains__(self, key: object) -> bool:
        return key in self.actions

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self):
        return iter(self.actions[k] for k in self.topological_order())

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def dependencies(self, key: InstanceKey) -> Set[InstanceKey]:
        return {d for d in self.actions[key].depends_on if d in self.actions}

    def dependents(self, key: InstanceKey) -> Set[InstanceKey]:
        """Actions that wait directly on ``key``."""
        return {k for k, a in self.actions.items() if key in a.depends_on}

    def descendants(self, key: InstanceKey) -> Set[InstanceKey]:
        """Actions that wait on ``key`` directly or transitively."""
        found: Set[InstanceKey] = set()
        stack = [key]
        while stack:
            for dependent in self.dependents(stack.pop()):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found

    def topological_order(self) -> List[InstanceKey]:
        """
        Raises:
            CyclicDependency: If the graph contains a cycle
        """
        return topological_sort(
            self.actions, {k: a.depends_on for k, a in self.actions.items()}
        )

    def counts(self) -> Dict[str, int]:
        result = {kind.value: 0 for kind in ActionKind}
        for action in self.actions.values():
            if action.key.is_deposed and action.key.current() in self.actions:
                # Counted with its replacement
                continue
            result[action.kind.value] += 1
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actions": [self.actions[k].to_dict() for k in self.topological_order()],
            "summary": self.counts(),
        }

    def render(self) -> str:
        """Plan table in execution order."""
        if self.is_empty:
            return "No changes. Infrastructure matches the configuration."
        rows = []
        for index, key in enumerate(self.topological_order(), start=1):
            action = self.actions[key]
            rows.append(
                [
                    index,
                    action.kind.value,
                    str(key),
                    ", ".join(sorted(str(d) for d in self.dependencies(key))) or "-",
                    action.details(),
                ]
            )
        counts = self.counts()
        summary = (
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['replace']} to replace, {counts['delete']} to delete."
        )
        table = tabulate(
            rows, headers=["#", "Action", "Instance", "Depends On", "Details"], tablefmt="grid"
        )
        return f"{table}\n{summary}"


@dataclass
class Plan:
    """A built plan and the snapshot serial it was computed against."""

    graph: ExecutionGraph
    diffs: List[InstanceDiff]
    serial: int = 0
    lineage: str = ""

    @property
    def is_empty(self) -> bool:
        return self.graph.is_empty

    def to_dict(self) -> Dict[str, Any]:
        data = self.graph.to_dict()
        data["serial"] = self.serial
        data["lineage"] = self.lineage
        return data

    def render(self) -> str:
        return self.graph.render()


def plan_time_resolver(
    registry: SchemaRegistry,
    snapshot: StateSnapshot,
    diffs: Dict[InstanceKey, InstanceDiff],
    declared: Set[InstanceKey],
    source: InstanceKey,
) -> ReferenceResolver:
    """
    Resolver used while planning.

    A reference resolves to the prior state value when the target exists in
    state and its planned action neither recreates it nor changes the
    referenced attribute; otherwise it is UNKNOWN until apply.
    """

    def resolve(ref: Reference) -> Value:
        target = InstanceKey(ref.type_name, ref.name)
        if target not in declared:
            raise SchemaMismatch(
                f"Reference {ref} points to an instance that is not declared",
                instance=source,
            )
        if ref.attribute != "id":
            registry.get(ref.type_name).attribute(ref.attribute)

        prior = snapshot.get(target)
        target_diff = diffs.get(target)
        if prior is None or prior.id is None or target_diff is None:
            return Value.unknown()
        if target_diff.action in (DiffAction.CREATE, DiffAction.REPLACE):
            return Value.unknown()
        if ref.attribute == "id":
            return Value.string(prior.id)
        if ref.attribute in target_diff.changes:
            return Value.unknown()
        return prior.attributes.get(ref.attribute, Value.null())

    return resolve


def state_resolver(snapshot: StateSnapshot) -> ReferenceResolver:
    """Resolver used at apply time, once every referenced instance has settled."""

    def resolve(ref: Reference) -> Value:
        target = snapshot.get(InstanceKey(ref.type_name, ref.name))
        if target is None or target.id is None:
            return Value.unknown()
        if ref.attribute == "id":
            return Value.string(target.id)
        return target.attributes.get(ref.attribute, Value.null())

    return resolve


def resolve_instance(instance: DesiredInstance, resolve: ReferenceResolver) -> DesiredInstance:
    """Copy of ``instance`` with every reference substituted."""
    return DesiredInstance(
        key=instance.key,
        attributes={n: substitute(v, resolve) for n, v in instance.attributes.items()},
        depends_on=list(instance.depends_on),
    )


def build_plan(
    diffs: List[InstanceDiff],
    registry: SchemaRegistry,
    desired: List[DesiredInstance],
    snapshot: StateSnapshot,
) -> ExecutionGraph:
    """
    Build the execution graph for a set of diffs.

    Args:
        diffs: Instance diffs (from ``diff_all``)
        registry: Schema registry
        desired: Unresolved desired configuration
        snapshot: Prior state the diffs were computed against

    Returns:
        An acyclic ExecutionGraph; empty when nothing changes

    Raises:
        CyclicDependency: If the actions cannot be ordered
    """
    by_key = {d.key: d for d in desired}
    graph = ExecutionGraph()

    for instance_diff in diffs:
        if instance_diff.action == DiffAction.NOOP:
            continue
        key = instance_diff.key
        action = Action(
            kind=_KIND_FOR_DIFF[instance_diff.action],
            key=key,
            diff=instance_diff,
            desired=by_key.get(key),
        )
        # Deletes of types no longer registered still get an action
        if registry.has(key.type_name):
            schema = registry.get(key.type_name)
            action.sensitive = {a.name for a in schema.attributes if a.sensitive}
            if action.kind == ActionKind.REPLACE:
                action.policy = schema.replace_policy
            elif action.kind == ActionKind.UPDATE:
                action.phases = schema.ordered_phases(list(instance_diff.changes))
        graph.add(action)

    # Creates and updates wait on what they reference
    for action in graph.actions.values():
        if action.desired is not None:
            action.depends_on = {k for k in action.desired.references() if k in graph}

    # Deletes run in reverse dependency order
    for key, instance in snapshot.instances.items():
        if key not in graph:
            continue
        for dependency in instance.dependencies:
            if dependency not in graph or dependency == key:
                continue
            target = graph.get(dependency)
            if target.kind == ActionKind.DELETE:
                target.depends_on.add(key)
            elif (
                target.kind == ActionKind.REPLACE
                and target.policy != ReplacePolicy.CREATE_BEFORE_DESTROY
                and graph.get(key).kind == ActionKind.DELETE
            ):
                target.depends_on.add(key)

    # Create-before-destroy leaves the old object behind until everything
    # that used it has moved to the replacement
    for action in list(graph.actions.values()):
        if action.kind != ActionKind.REPLACE:
            continue
        if action.policy != ReplacePolicy.CREATE_BEFORE_DESTROY:
            continue
        prior = snapshot.get(action.key)
        if prior is None or prior.id is None:
            continue
        deposed = InstanceKey(action.key.type_name, action.key.name, deposed=prior.id)
        waits = {action.key}
        waits.update(
            k
            for k, a in graph.actions.items()
            if a.desired is not None and action.key in a.desired.references()
        )
        waits.update(
            k
            for k, i in snapshot.instances.items()
            if k in graph and action.key in i.dependencies and k != action.key
        )
        graph.add(
            Action(
                kind=ActionKind.DELETE,
                key=deposed,
                diff=InstanceDiff(key=deposed, action=DiffAction.DELETE),
                depends_on=waits,
                sensitive=set(action.sensitive),
            )
        )

    graph.topological_order()
    logger.info(f"Built plan with {len(graph)} actions: {graph.counts()}")
    return graph


def make_plan(
    registry: SchemaRegistry,
    snapshot: StateSnapshot,
    desired: List[DesiredInstance],
) -> Plan:
    """
    Resolve references, diff and build the graph in one step.

    Raises:
        SchemaMismatch: On schema violations or dangling references
        CyclicDependency: If the configuration references form a cycle
    """
    declared = {d.key for d in desired}
    if len(declared) != len(desired):
        seen: Set[InstanceKey] = set()
        for instance in desired:
            if instance.key in seen:
                raise SchemaMismatch("Instance is declared more than once", instance=instance.key)
            seen.add(instance.key)

    for instance in desired:
        for dependency in instance.depends_on:
            if dependency not in declared:
                raise SchemaMismatch(
                    f"depends_on names undeclared instance {dependency}",
                    instance=instance.key,
                )

    order = topological_sort(declared, {d.key: d.references() for d in desired})
    by_key = {d.key: d for d in desired}

    def resolve(instance: DesiredInstance, diffs: Dict[InstanceKey, InstanceDiff]):
        resolver = plan_time_resolver(registry, snapshot, diffs, declared, instance.key)
        return resolve_instance(instance, resolver)

    diffs = diff_all(registry, snapshot, [by_key[k] for k in order], resolve=resolve)
    graph = build_plan(diffs, registry, desired, snapshot)
    return Plan(graph=graph, diffs=diffs, serial=snapshot.serial, lineage=snapshot.lineage)
