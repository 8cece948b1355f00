"""
Engine - Plan, apply, refresh and import on top of the core components.

The Engine wires the state store, schema registry and provider together.
Apply and refresh hold the state lock so that two runs against the same
state never interleave.
"""

import asyncio
import logging
import os
import socket
import time
from typing import Any, Awaitable, Callable, List, Optional

from converge.base import DesiredInstance, InstanceKey
from converge.config import ExecutorConfig, StateConfig
from converge.db import PostgresStateBackend
from converge.drift import DriftReconciler, DriftReport
from converge.errors import ConvergeError
from converge.events import EventBus
from converge.executor import ExecutionResult, Executor
from converge.planner import Plan, make_plan
from converge.remote import Provider
from converge.retry import call_with_retry
from converge.schema import SchemaRegistry
from converge.state import (
    FileStateBackend,
    MemoryStateBackend,
    ResourceInstance,
    StateBackend,
    StateStore,
)

logger = logging.getLogger(__name__)


async def open_state_store(config: StateConfig) -> StateStore:
    """
    Create the configured state backend and wrap it in a StateStore.

    The postgres backend is connected and migrated before it is returned.
    """
    backend: StateBackend
    if config.backend == "memory":
        backend = MemoryStateBackend()
    elif config.backend == "file":
        backend = FileStateBackend(config.path)
    elif config.backend == "postgres":
        backend = PostgresStateBackend(
            host=config.db_host,
            port=config.db_port,
            database=config.db_name,
            user=config.db_user,
            password=config.db_password,
            workspace=config.workspace,
            min_pool_size=config.min_pool_size,
            max_pool_size=config.max_pool_size,
        )
        await backend.connect()
        await backend.initialize_schema()
    else:
        raise ValueError(f"Unknown state backend: {config.backend}")
    logger.info(f"Using {config.backend} state backend")
    return StateStore(backend)


def lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class Engine:
    """Facade over the differ, planner, executor and drift reconciler."""

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
        self.event_bus = event_bus
        self.executor = Executor(
            store, provider, registry, self.config, event_bus=event_bus, sleep=sleep
        )
        self.drift = DriftReconciler(
            store,
            provider,
            registry,
            policy=self.executor.policy,
            event_bus=event_bus,
            parallelism=self.config.parallelism,
            read_timeout=self.config.action_timeout,
            sleep=sleep,
        )
        self._sleep = sleep

    async def plan(self, desired: List[DesiredInstance]) -> Plan:
        """
        Build a plan for the desired configuration against current state.

        Raises:
            SchemaMismatch: If the configuration violates a schema
            CyclicDependency: If the configuration cannot be ordered
        """
        snapshot = await self.store.read()
        plan = make_plan(self.registry, snapshot, desired)
        logger.info(f"Planned against serial {plan.serial}: {plan.graph.counts()}")
        return plan

    async def apply(
        self, plan: Plan, cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionResult:
        """
        Execute a plan under the state lock.

        Raises:
            StateConflict: If state changed since the plan was built
            StateLocked: If another run holds the state lock
        """
        started = time.monotonic()
        async with self.store.lock(lock_owner()):
            result = await self.executor.execute(
                plan.graph, cancel_event=cancel_event, expected_serial=plan.serial
            )
        await self.store.backend.record_run(
            "apply",
            result.success,
            serial=result.snapshot.serial if result.snapshot else None,
            summary=result.summary(),
            details=result.to_dict(),
            duration_seconds=time.monotonic() - started,
        )
        return result

    async def refresh(self) -> DriftReport:
        """Run one drift reconciliation under the state lock."""
        started = time.monotonic()
        async with self.store.lock(lock_owner()):
            report = await self.drift.reconcile()
        await self.store.backend.record_run(
            "refresh",
            True,
            serial=report.serial,
            summary=f"{len(report.entries)} instances checked",
            details=report.to_dict(),
            duration_seconds=time.monotonic() - started,
        )
        return report

    async def import_instance(self, key: InstanceKey, id: str) -> ResourceInstance:
        """
        Adopt an existing remote object into state.

        Raises:
            ConvergeError: If the instance is already managed
            NotFoundError: If the remote object does not exist
        """
        schema = self.registry.get(key.type_name)
        snapshot = await self.store.read()
        if snapshot.get(key) is not None:
            raise ConvergeError("Instance is already managed; forget it first", instance=key)

        api = self.provider.api_for(key.type_name)
        attributes = await call_with_retry(
            lambda: api.read(id),
            self.executor.policy,
            timeout=schema.timeouts.read or self.config.action_timeout,
            description=f"read {key}",
            sleep=self._sleep,
        )
        instance = ResourceInstance(
            key=key,
            id=id,
            attributes=schema.filter_known(attributes),
            schema_version=schema.version,
        )
        async with self.store.lock(lock_owner()):
            await self.store.update(lambda s: s.put(instance), expected_serial=snapshot.serial)
        logger.info(f"Imported {key} (id: {id})")
        return instance

    async def forget(self, key: InstanceKey) -> ResourceInstance:
        """
        Remove an instance from state without touching the remote object.

        Raises:
            ConvergeError: If the instance is not in state
        """
        snapshot = await self.store.read()
        instance = snapshot.get(key)
        if instance is None:
            raise ConvergeError("Instance is not in state", instance=key)
        async with self.store.lock(lock_owner()):
            await self.store.update(lambda s: s.remove(key), expected_serial=snapshot.serial)
        logger.info(f"Removed {key} from state (remote object left in place)")
        return instance

    async def close(self) -> None:
        await self.provider.close()
        await self.store.close()
