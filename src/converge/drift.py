"""
Drift Reconciler - Compares recorded state with what the remote system reports.

Objects deleted outside the engine are dropped from state so that the next
plan recreates them. Attribute differences are only reported; the next plan
decides whether they need an update.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tabulate import tabulate

from converge.base import InstanceKey
from converge.errors import NotFoundError, StateConflict
from converge.events import EngineEvent, EventBus, EventType
from converge.remote import Provider
from converge.retry import BackoffPolicy, call_with_retry
from converge.schema import SchemaRegistry
from converge.state import ResourceInstance, StateSnapshot, StateStore
from converge.values import Value

logger = logging.getLogger(__name__)


class DriftStatus(Enum):
    """Drift classification of one instance."""

    IN_SYNC = "in_sync"
    DRIFTED = "drifted"
    DELETED = "deleted"
    ERROR = "error"


@dataclass
class AttributeDrift:
    """An attribute whose remote value differs from the recorded one."""

    name: str
    recorded: Value
    actual: Value
    sensitive: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attribute": self.name,
            "recorded": self.recorded.render(self.sensitive),
            "actual": self.actual.render(self.sensitive),
        }


@dataclass
class InstanceDrift:
    """Drift result for one instance."""

    key: InstanceKey
    status: DriftStatus
    id: Optional[str] = None
    attributes: List[AttributeDrift] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance": str(self.key),
            "id": self.id,
            "status": self.status.value,
            "attributes": [a.to_dict() for a in self.attributes],
            "error": self.error,
        }


@dataclass
class DriftReport:
    """Per-instance drift results of one reconciliation."""

    entries: Dict[InstanceKey, InstanceDrift] = field(default_factory=dict)
    serial: int = 0

    def with_status(self, status: DriftStatus) -> List[InstanceKey]:
        return sorted(k for k, e in self.entries.items() if e.status == status)

    @property
    def has_drift(self) -> bool:
        return any(
            e.status in (DriftStatus.DRIFTED, DriftStatus.DELETED)
            for e in self.entries.values()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serial": self.serial,
            "has_drift": self.has_drift,
            "instances": [self.entries[k].to_dict() for k in sorted(self.entries)],
        }

    def render(self) -> str:
        if not self.entries:
            return "No instances in state."
        rows = []
        for key in sorted(self.entries):
            entry = self.entries[key]
            if entry.status == DriftStatus.DRIFTED:
                details = "; ".join(
                    f"{a.name}: {a.recorded.render(a.sensitive)} -> {a.actual.render(a.sensitive)}"
                    for a in entry.attributes
                )
            else:
                details = entry.error or ""
            rows.append([str(key), entry.id or "-", entry.status.value, details])
        return tabulate(rows, headers=["Instance", "ID", "Status", "Details"], tablefmt="grid")


class DriftReconciler:
    """
    Reads every realized instance and reports how it differs from state.

    Collaborators, store and registry are injected at construction.
    """

    def __init__(
        self,
        store: StateStore,
        provider: Provider,
        registry: SchemaRegistry,
        policy: Optional[BackoffPolicy] = None,
        event_bus: Optional[EventBus] = None,
        parallelism: int = 10,
        read_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.provider = provider
        self.registry = registry
        self.policy = policy or BackoffPolicy()
        self.semaphore = asyncio.Semaphore(max(1, parallelism))
        self.read_timeout = read_timeout
        self._event_bus = event_bus
        self._sleep = sleep

    async def reconcile(self, snapshot: Optional[StateSnapshot] = None) -> DriftReport:
        """
        Compare every instance with an id against the remote system.

        Args:
            snapshot: Snapshot to check; read from the store when omitted

        Returns:
            DriftReport with one entry per checked instance

        Raises:
            StateConflict: If state moved before deleted instances were removed
        """
        if snapshot is None:
            snapshot = await self.store.read()

        instances = [
            snapshot.instances[k]
            for k in sorted(snapshot.instances)
            if snapshot.instances[k].id is not None
        ]
        entries = await asyncio.gather(*(self._check(i) for i in instances))
        report = DriftReport(entries={e.key: e for e in entries}, serial=snapshot.serial)

        deleted = report.with_status(DriftStatus.DELETED)
        if deleted:

            def remove_deleted(updated: StateSnapshot) -> None:
                for key in deleted:
                    updated.remove(key)

            stored = await self.store.update(remove_deleted, expected_serial=snapshot.serial)
            report.serial = stored.serial
            for key in deleted:
                logger.warning(f"{key} was deleted outside the engine; removed from state")
                await self._publish(
                    EventType.INSTANCE_DELETED, key, "Deleted outside the engine"
                )

        for key in report.with_status(DriftStatus.DRIFTED):
            names = ", ".join(a.name for a in report.entries[key].attributes)
            logger.info(f"Drift detected for {key}: {names}")
            await self._publish(
                EventType.DRIFT_DETECTED, key, f"Drifted attributes: {names}",
                report.entries[key].to_dict(),
            )

        logger.info(
            f"Drift check of {len(entries)} instances: "
            f"{len(report.with_status(DriftStatus.DRIFTED))} drifted, "
            f"{len(deleted)} deleted, {len(report.with_status(DriftStatus.ERROR))} errors"
        )
        return report

    async def _check(self, instance: ResourceInstance) -> InstanceDrift:
        key = instance.key
        schema = self.registry.get(key.type_name) if self.registry.has(key.type_name) else None
        timeout = self.read_timeout
        if schema is not None and schema.timeouts.read is not None:
            timeout = schema.timeouts.read

        async with self.semaphore:
            try:
                api = self.provider.api_for(key.type_name)
                reported = await call_with_retry(
                    lambda: api.read(instance.id),
                    self.policy,
                    timeout=timeout,
                    description=f"read {key}",
                    sleep=self._sleep,
                )
            except NotFoundError:
                return InstanceDrift(key=key, status=DriftStatus.DELETED, id=instance.id)
            except Exception as e:
                logger.error(f"Drift check of {key} failed: {e}")
                return InstanceDrift(
                    key=key, status=DriftStatus.ERROR, id=instance.id, error=str(e)
                )

        if schema is not None:
            reported = schema.filter_known(reported)
            names = [n for n in schema.names if n in reported]
        else:
            names = sorted(reported)

        drifts = []
        for name in names:
            recorded = instance.attributes.get(name, Value.null())
            if reported[name] != recorded:
                sensitive = schema is not None and schema.attribute(name).sensitive
                drifts.append(AttributeDrift(name, recorded, reported[name], sensitive))

        status = DriftStatus.DRIFTED if drifts else DriftStatus.IN_SYNC
        return InstanceDrift(key=key, status=status, id=instance.id, attributes=drifts)

    async def _publish(
        self,
        event_type: EventType,
        key: InstanceKey,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            EngineEvent(event_type=event_type, instance=str(key), message=message, data=data or {})
        )

    async def run(self, interval: float, shutdown_event: asyncio.Event) -> None:
        """Reconcile periodically until ``shutdown_event`` is set."""
        logger.info(f"Starting drift reconciliation every {interval}s")
        while not shutdown_event.is_set():
            try:
                await self.reconcile()
            except StateConflict as e:
                logger.info(f"State changed during drift check, retrying next cycle: {e}")
            except Exception as e:
                logger.error(f"Error in drift reconciliation loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Drift reconciliation stopped")
