"""
Executor - Walks the execution graph and drives the remote API.

Each action runs as its own asyncio task once every action it depends on
has settled; a semaphore bounds how many run at once. State is written
through compare-and-swap after every successful remote step, so a run that
stops half way leaves a snapshot a corrective re-plan can start from.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from converge.base import InstanceKey
from converge.config import ExecutorConfig
from converge.differ import DiffAction, InstanceDiff, diff, effective_attributes
from converge.errors import ConvergeError, NotFoundError, SchemaMismatch, StateConflict
from converge.events import EngineEvent, EventBus, EventType
from converge.planner import (
    Action,
    ActionKind,
    ExecutionGraph,
    resolve_instance,
    state_resolver,
)
from converge.remote import Provider
from converge.retry import BackoffPolicy, call_with_retry
from converge.schema import ReplacePolicy, ResourceSchema, SchemaRegistry
from converge.state import ResourceInstance, StateSnapshot, StateStore
from converge.values import Value

logger = logging.getLogger(__name__)


class ActionStatus(Enum):
    """Lifecycle status of an action during a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ActionOutcome:
    """Terminal (or PENDING, when cancelled) status of one action."""

    key: InstanceKey
    kind: ActionKind
    status: ActionStatus = ActionStatus.PENDING
    error: Optional[Exception] = None
    # What was actually done; None when the re-diff found nothing to do
    performed: Optional[ActionKind] = None
    duration_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance": str(self.key),
            "action": self.kind.value,
            "status": self.status.value,
            "performed": self.performed.value if self.performed else None,
            "error": str(self.error) if self.error else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class ExecutionResult:
    """Outcome of executing a graph."""

    outcomes: Dict[InstanceKey, ActionOutcome] = field(default_factory=dict)
    snapshot: Optional[StateSnapshot] = None
    cancelled: bool = False
    remote_calls: int = 0

    @property
    def success(self) -> bool:
        return not self.cancelled and all(
            o.status == ActionStatus.SUCCEEDED for o in self.outcomes.values()
        )

    def status_of(self, key: InstanceKey) -> ActionStatus:
        return self.outcomes[key].status

    def with_status(self, status: ActionStatus) -> List[InstanceKey]:
        return sorted(k for k, o in self.outcomes.items() if o.status == status)

    @property
    def counts(self) -> Dict[str, int]:
        result = {"created": 0, "updated": 0, "replaced": 0, "deleted": 0}
        names = {
            ActionKind.CREATE: "created",
            ActionKind.UPDATE: "updated",
            ActionKind.REPLACE: "replaced",
            ActionKind.DELETE: "deleted",
        }
        for outcome in self.outcomes.values():
            if outcome.key.is_deposed and outcome.key.current() in self.outcomes:
                continue
            if outcome.status == ActionStatus.SUCCEEDED and outcome.performed:
                result[names[outcome.performed]] += 1
        return result

    def summary(self) -> str:
        counts = self.counts
        text = (
            f"{counts['created']} created, {counts['updated']} updated, "
            f"{counts['replaced']} replaced, {counts['deleted']} deleted"
        )
        failed = self.with_status(ActionStatus.FAILED)
        skipped = self.with_status(ActionStatus.SKIPPED)
        if failed:
            text += f", {len(failed)} failed"
        if skipped:
            text += f", {len(skipped)} skipped"
        if self.cancelled:
            text += f", {len(self.with_status(ActionStatus.PENDING))} not started (cancelled)"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "remote_calls": self.remote_calls,
            "counts": self.counts,
            "serial": self.snapshot.serial if self.snapshot else None,
            "outcomes": [self.outcomes[k].to_dict() for k in sorted(self.outcomes)],
        }


class Executor:
    """
    Executes an ExecutionGraph against injected remote-API collaborators.

    The collaborators, state store and schema registry are passed in at
    construction; nothing is looked up from global state.
    """

    def __init__(
        self,
        store: StateStore,
        provider: Provider,
        registry: SchemaRegistry,
        config: Optional[ExecutorConfig] = None,
        event_bus: Optional[EventBus] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.provider = provider
        self.registry = registry
        self.config = config or ExecutorConfig()
        self.policy = BackoffPolicy.from_config(self.config)
        self._event_bus = event_bus
        self._sleep = sleep

    async def execute(
        self,
        graph: ExecutionGraph,
        cancel_event: Optional[asyncio.Event] = None,
        expected_serial: Optional[int] = None,
    ) -> ExecutionResult:
        """
        Execute every action in the graph.

        Args:
            graph: The execution graph
            cancel_event: When set, no further action starts
            expected_serial: Serial the graph was planned against; the run
                refuses to start if the stored serial moved

        Returns:
            ExecutionResult with per-action outcomes and the final snapshot

        Raises:
            StateConflict: If ``expected_serial`` does not match stored state
        """
        snapshot = await self.store.read()
        if expected_serial is not None and snapshot.serial != expected_serial:
            raise StateConflict(expected=expected_serial, actual=snapshot.serial)

        run = _Run(self, graph, snapshot, cancel_event or asyncio.Event())
        return await run.execute()


class _Run:
    """Mutable state of one executor run."""

    def __init__(
        self,
        executor: Executor,
        graph: ExecutionGraph,
        snapshot: StateSnapshot,
        cancel_event: asyncio.Event,
    ):
        self.executor = executor
        self.graph = graph
        self.snapshot = snapshot
        self.cancel_event = cancel_event
        self.semaphore = asyncio.Semaphore(max(1, executor.config.parallelism))
        self.state_lock = asyncio.Lock()
        self.remote_calls = 0
        self.outcomes = {
            key: ActionOutcome(key=key, kind=action.kind)
            for key, action in graph.actions.items()
        }
        self.done = {key: asyncio.Event() for key in graph.actions}

    async def execute(self) -> ExecutionResult:
        order = self.graph.topological_order()
        logger.info(f"Executing {len(order)} actions")

        tasks = [asyncio.create_task(self._run_action(key)) for key in order]
        if tasks:
            await asyncio.gather(*tasks)

        result = ExecutionResult(
            outcomes=self.outcomes,
            snapshot=self.snapshot,
            cancelled=self.cancel_event.is_set()
            and any(o.status == ActionStatus.PENDING for o in self.outcomes.values()),
            remote_calls=self.remote_calls,
        )
        logger.info(f"Execution finished: {result.summary()}")
        return result

    # ==================== Scheduling ====================

    async def _run_action(self, key: InstanceKey) -> None:
        action = self.graph.get(key)
        outcome = self.outcomes[key]
        try:
            dependencies = self.graph.dependencies(key)
            for dependency in dependencies:
                await self.done[dependency].wait()

            blocked = [
                d
                for d in dependencies
                if self.outcomes[d].status in (ActionStatus.FAILED, ActionStatus.SKIPPED)
            ]
            if blocked:
                outcome.status = ActionStatus.SKIPPED
                names = ", ".join(str(d) for d in sorted(blocked))
                logger.warning(f"Skipping {action.kind.value} {key}: {names} did not succeed")
                await self._publish(EventType.ACTION_SKIPPED, action, f"Blocked by {names}")
                return

            if any(self.outcomes[d].status == ActionStatus.PENDING for d in dependencies):
                logger.info(f"Not starting {action.kind.value} {key}: a dependency did not run")
                return

            async with self.semaphore:
                if self.cancel_event.is_set():
                    logger.info(f"Not starting {action.kind.value} {key}: run cancelled")
                    return

                outcome.status = ActionStatus.RUNNING
                await self._publish(EventType.ACTION_STARTED, action)
                started = time.monotonic()
                try:
                    outcome.performed = await self._perform(action)
                except Exception as e:
                    if isinstance(e, ConvergeError) and e.instance is None:
                        e.instance = key
                    outcome.status = ActionStatus.FAILED
                    outcome.error = e
                    logger.error(f"{action.kind.value} {key} failed: {e}")
                    await self._publish(EventType.ACTION_FAILED, action, str(e))
                else:
                    outcome.status = ActionStatus.SUCCEEDED
                    logger.info(f"{action.kind.value} {key} succeeded")
                    await self._publish(EventType.ACTION_SUCCEEDED, action)
                finally:
                    outcome.duration_seconds = time.monotonic() - started
        finally:
            self.done[key].set()

    async def _publish(
        self, event_type: EventType, action: Action, message: Optional[str] = None
    ) -> None:
        if self.executor._event_bus is None:
            return
        event = EngineEvent(
            event_type=event_type,
            instance=str(action.key),
            action=action.kind.value,
            message=message,
        )
        await self.executor._event_bus.publish(event)

    # ==================== Actions ====================

    async def _perform(self, action: Action) -> Optional[ActionKind]:
        """Run one action; returns what was actually done."""
        if action.kind == ActionKind.DELETE:
            await self._delete(action.key)
            return ActionKind.DELETE

        schema = self.executor.registry.get(action.key.type_name)
        desired = resolve_instance(action.desired, state_resolver(self.snapshot))
        prior = self.snapshot.get(action.key)
        current = diff(schema, prior, desired)

        if current.deferred:
            names = ", ".join(current.deferred)
            raise SchemaMismatch(f"Attributes still unknown at apply time: {names}")

        if current.action == DiffAction.NOOP:
            logger.info(f"{action.key}: nothing left to change at apply time")
            return None

        # Recorded from the unresolved configuration; resolving drops references
        dependencies = sorted(action.desired.references())
        attributes = {
            n: v for n, v in effective_attributes(schema, desired).items() if not v.is_null
        }

        if current.action == DiffAction.CREATE:
            await self._create(schema, action.key, attributes, dependencies)
            return ActionKind.CREATE
        if current.action == DiffAction.UPDATE:
            await self._update(schema, prior, current, dependencies)
            return ActionKind.UPDATE
        if action.kind == ActionKind.UPDATE:
            logger.info(f"{action.key}: update became a replacement at apply time")
        await self._replace(schema, prior, attributes, dependencies)
        return ActionKind.REPLACE

    async def _create(
        self,
        schema: ResourceSchema,
        key: InstanceKey,
        attributes: Dict[str, Value],
        dependencies: List[InstanceKey],
        depose: bool = False,
    ) -> ResourceInstance:
        """
        Create the remote object, record it, then confirm it with a read.

        With ``depose`` the current object for ``key`` is moved to the
        deposed list in the same state write that records the new one.
        """
        api = self.executor.provider.api_for(key.type_name)
        result = await self._call(
            lambda: api.create(key, attributes), key, "create", schema
        )
        instance = ResourceInstance(
            key=key,
            id=result.id,
            attributes=self._merge(schema, attributes, result.attributes),
            dependencies=dependencies,
            schema_version=schema.version,
        )

        def record(snapshot: StateSnapshot) -> None:
            if depose:
                snapshot.depose(key)
            snapshot.put(instance)

        await self._commit(record, key)
        logger.info(f"Created {key} (id: {result.id})")

        if self.executor.config.confirm_create:
            # The object may not be visible to reads right after creation
            reported = await self._call(
                lambda: api.read(result.id), key, "read", schema, retry_on_not_found=True
            )
            confirmed = ResourceInstance(
                key=key,
                id=result.id,
                attributes=self._merge(schema, instance.attributes, reported),
                dependencies=dependencies,
                schema_version=schema.version,
            )
            if confirmed.attributes != instance.attributes:
                await self._commit(lambda s: s.put(confirmed), key)
            instance = confirmed
        return instance

    async def _update(
        self,
        schema: ResourceSchema,
        prior: ResourceInstance,
        current: InstanceDiff,
        dependencies: List[InstanceKey],
    ) -> None:
        api = self.executor.provider.api_for(prior.key.type_name)
        attributes = dict(prior.attributes)
        for phase in schema.ordered_phases(list(current.changes)):
            changes = {name: current.changes[name].new for name in phase}
            reported = await self._call(
                lambda: api.update(prior.id, changes), prior.key, "update", schema
            )
            attributes.update(changes)
            attributes = self._merge(schema, attributes, reported)
            updated = ResourceInstance(
                key=prior.key,
                id=prior.id,
                attributes=attributes,
                dependencies=dependencies,
                schema_version=schema.version,
            )
            await self._commit(lambda s: s.put(updated), prior.key)
            logger.info(f"Updated {prior.key}: {', '.join(phase)}")

    async def _replace(
        self,
        schema: ResourceSchema,
        prior: ResourceInstance,
        attributes: Dict[str, Value],
        dependencies: List[InstanceKey],
    ) -> None:
        key = prior.key
        if schema.replace_policy == ReplacePolicy.CREATE_BEFORE_DESTROY:
            if prior.id is None:
                # Nothing remote to clean up
                await self._create(schema, key, attributes, dependencies)
                return
            instance = await self._create(schema, key, attributes, dependencies, depose=True)
            logger.info(f"Created replacement for {key} (id: {instance.id}), deposed {prior.id}")
            deposed = InstanceKey(key.type_name, key.name, deposed=prior.id)
            if deposed not in self.graph:
                # No planned delete for the old object; the update only
                # turned into a replacement at apply time
                await self._delete(deposed)
        else:
            await self._delete(key)
            await self._create(schema, key, attributes, dependencies)

    async def _delete(self, key: InstanceKey) -> None:
        """Pre-delete drain, delete, then drop the instance from state."""
        prior = self.snapshot.get(key)
        if prior is None:
            logger.info(f"{key} is already absent from state")
            return

        if prior.id is not None:
            api = self.executor.provider.api_for(key.type_name)
            schema = (
                self.executor.registry.get(key.type_name)
                if self.executor.registry.has(key.type_name)
                else None
            )
            try:
                await self._call(
                    lambda: api.pre_delete(prior.id, prior.attributes), key, "delete", schema
                )
                await self._call(lambda: api.delete(prior.id), key, "delete", schema)
            except NotFoundError:
                logger.info(f"{key} (id: {prior.id}) was already deleted remotely")

        await self._commit(lambda s: s.remove(key), key)
        logger.info(f"Deleted {key}")

    # ==================== Helpers ====================

    async def _call(
        self,
        fn: Callable[[], Awaitable[Any]],
        key: InstanceKey,
        operation: str,
        schema: Optional[ResourceSchema],
        retry_on_not_found: bool = False,
    ) -> Any:
        timeout = None
        if schema is not None:
            timeout = schema.timeouts.for_operation(operation)
        if timeout is None:
            timeout = self.executor.config.action_timeout

        async def attempt():
            self.remote_calls += 1
            return await fn()

        return await call_with_retry(
            attempt,
            self.executor.policy,
            timeout=timeout,
            description=f"{operation} {key}",
            retry_on_not_found=retry_on_not_found,
            sleep=self.executor._sleep,
        )

    async def _commit(self, mutate: Callable[[StateSnapshot], Any], key: InstanceKey) -> None:
        """Apply ``mutate`` to the run's snapshot and write it through CAS."""
        async with self.state_lock:
            updated = self.snapshot.copy()
            mutate(updated)
            try:
                self.snapshot = await self.executor.store.write(updated, self.snapshot.serial)
            except StateConflict as e:
                e.instance = key
                raise

    def _merge(
        self,
        schema: ResourceSchema,
        attributes: Dict[str, Value],
        reported: Optional[Dict[str, Value]],
    ) -> Dict[str, Value]:
        """Desired attributes overlaid with what the remote system reported."""
        merged = dict(attributes)
        merged.update(schema.filter_known(reported or {}))
        return merged

