"""Tests for executor.py - Executing plans against remote collaborators."""

import asyncio

import pytest

from converge.base import InstanceKey
from converge.config import ExecutorConfig
from converge.drift import DriftStatus
from converge.engine import Engine
from converge.errors import (
    FatalError,
    NotFoundError,
    RetryableError,
    RetryExhausted,
    StateConflict,
)
from converge.events import EventBus, EventType
from converge.executor import ActionStatus, ExecutionResult
from converge.planner import ActionKind
from converge.remote import Provider
from converge.schema import OperationTimeouts, ReplacePolicy, SchemaRegistry
from converge.state import MemoryStateBackend, StateStore
from converge.values import Value

from conftest import (
    FakeRemoteAPI,
    arn_for,
    desired,
    make_bucket_schema,
    make_policy_schema,
    no_sleep,
    ref,
)

LOGS = InstanceKey("bucket", "logs")
POLICY = InstanceKey("policy", "main")


def bucket(name="logs", **attributes):
    return desired("bucket", "logs", name=name, **attributes)


def policy(name="main", **attributes):
    attributes.setdefault("bucket_arn", ref("bucket.logs.arn"))
    return desired("policy", name, **attributes)


async def converge(engine, *instances, cancel_event=None) -> ExecutionResult:
    plan = await engine.plan(list(instances))
    return await engine.apply(plan, cancel_event)


@pytest.mark.asyncio
class TestCreate:
    """Creating new instances."""

    async def test_creates_in_dependency_order(self, engine, bucket_api, policy_api, call_log):
        result = await converge(engine, policy(), bucket(size=1))

        assert result.success
        assert result.counts == {"created": 2, "updated": 0, "replaced": 0, "deleted": 0}
        creates = [entry for entry in call_log if entry[0] == "create"]
        assert creates == [("create", "bucket", "logs"), ("create", "policy", "main")]

        snapshot = await engine.store.read()
        assert snapshot.get(LOGS).id == "bucket-1"
        assert snapshot.get(LOGS).attributes["arn"] == Value.string("arn:bucket-1")
        assert snapshot.get(POLICY).attributes["bucket_arn"] == Value.string("arn:bucket-1")
        assert snapshot.get(POLICY).dependencies == [LOGS]
        assert policy_api.objects["policy-1"]["bucket_arn"] == Value.string("arn:bucket-1")

    async def test_create_is_confirmed_by_read(self, engine, bucket_api):
        await converge(engine, bucket())
        assert bucket_api.calls["create"] == 1
        assert bucket_api.calls["read"] == 1

    async def test_confirmation_waits_for_visibility(self, engine, bucket_api):
        bucket_api.fail("read", NotFoundError("not visible yet"))
        result = await converge(engine, bucket())
        assert result.success
        assert bucket_api.calls["read"] == 2

    async def test_no_confirmation_when_disabled(self, store, provider, registry, bucket_api):
        engine = Engine(
            store, provider, registry, ExecutorConfig(confirm_create=False), sleep=no_sleep
        )
        await converge(engine, bucket())
        assert bucket_api.calls["read"] == 0

    async def test_second_plan_is_empty(self, engine):
        await converge(engine, bucket(size=1), policy())
        plan = await engine.plan([bucket(size=1), policy()])
        assert plan.is_empty

    async def test_remote_calls_are_counted(self, engine):
        result = await converge(engine, bucket(), policy())
        # create + confirming read per instance
        assert result.remote_calls == 4

    async def test_parallelism_is_bounded(self, registry):
        class SlowAPI(FakeRemoteAPI):
            active = 0
            peak = 0

            async def create(self, key, attributes):
                self.active += 1
                self.peak = max(self.peak, self.active)
                try:
                    await asyncio.sleep(0.01)
                    return await super().create(key, attributes)
                finally:
                    self.active -= 1

        api = SlowAPI("bucket", computed={"arn": arn_for})
        engine = Engine(
            StateStore(MemoryStateBackend()),
            Provider("slow", [api]),
            registry,
            ExecutorConfig(parallelism=2, confirm_create=False),
            sleep=no_sleep,
        )
        result = await converge(
            engine, *[desired("bucket", f"b{i}", name=f"b{i}") for i in range(5)]
        )

        assert result.success
        assert api.peak == 2


@pytest.mark.asyncio
class TestUpdate:
    """In-place updates."""

    async def test_single_attribute_change_is_one_update(self, engine, bucket_api):
        await converge(engine, bucket(size=1))
        bucket_api.calls.clear()

        result = await converge(engine, bucket(size=2))

        assert result.success
        assert result.counts["updated"] == 1
        assert dict(bucket_api.calls) == {"update": 1}
        snapshot = await engine.store.read()
        assert snapshot.get(LOGS).attributes["size"] == Value.number(2)
        assert snapshot.get(LOGS).id == "bucket-1"

    async def test_phases_are_applied_in_order(self, engine, bucket_api, call_log):
        await converge(engine, bucket())
        call_log.clear()

        await converge(engine, bucket(versioning=True, replication="eu"))

        updates = [entry for entry in call_log if entry[0] == "update"]
        assert len(updates) == 2
        assert bucket_api.objects["bucket-1"]["versioning"] == Value.boolean(True)
        assert bucket_api.objects["bucket-1"]["replication"] == Value.string("eu")


@pytest.mark.asyncio
class TestReplace:
    """Replacement of instances whose forces-replacement attributes changed."""

    async def test_destroy_before_create(self, engine, bucket_api, call_log):
        await converge(engine, bucket())
        call_log.clear()

        result = await converge(engine, bucket(name="logs-v2"))

        assert result.success
        assert result.counts["replaced"] == 1
        assert [entry[:2] for entry in call_log] == [
            ("pre_delete", "bucket"),
            ("delete", "bucket"),
            ("create", "bucket"),
            ("read", "bucket"),
        ]
        snapshot = await engine.store.read()
        assert snapshot.get(LOGS).id == "bucket-2"
        assert list(bucket_api.objects) == ["bucket-2"]

    async def test_replacement_updates_referencing_instance(self, engine, policy_api):
        await converge(engine, bucket(), policy())

        result = await converge(engine, bucket(name="logs-v2"), policy())

        assert result.success
        assert result.outcomes[POLICY].performed == ActionKind.UPDATE
        assert policy_api.objects["policy-1"]["bucket_arn"] == Value.string("arn:bucket-2")

    async def test_create_before_destroy(self, store, provider, executor_config, call_log):
        registry = SchemaRegistry()
        registry.register(make_bucket_schema(ReplacePolicy.CREATE_BEFORE_DESTROY))
        engine = Engine(store, provider, registry, executor_config, sleep=no_sleep)
        await converge(engine, bucket())
        call_log.clear()

        result = await converge(engine, bucket(name="logs-v2"))

        assert result.success
        assert result.counts == {"created": 0, "updated": 0, "replaced": 1, "deleted": 0}
        assert call_log == [
            ("create", "bucket", "logs"),
            ("read", "bucket", "bucket-2"),
            ("pre_delete", "bucket", "bucket-1"),
            ("delete", "bucket", "bucket-1"),
        ]
        snapshot = await store.read()
        assert snapshot.get(LOGS).id == "bucket-2"
        assert snapshot.deposed == []

    async def test_failed_deposed_delete_is_retried_by_next_plan(
        self, store, provider, executor_config, bucket_api
    ):
        registry = SchemaRegistry()
        registry.register(make_bucket_schema(ReplacePolicy.CREATE_BEFORE_DESTROY))
        engine = Engine(store, provider, registry, executor_config, sleep=no_sleep)
        await converge(engine, bucket())
        bucket_api.fail("delete", FatalError("object is locked"))

        result = await converge(engine, bucket(name="logs-v2"))

        assert not result.success
        snapshot = await store.read()
        assert snapshot.get(LOGS).id == "bucket-2"
        deposed = InstanceKey("bucket", "logs", deposed="bucket-1")
        assert snapshot.deposed_keys() == [deposed]

        plan = await engine.plan([bucket(name="logs-v2")])
        assert list(plan.graph.actions) == [deposed]
        retry = await engine.apply(plan)
        assert retry.success
        assert (await store.read()).deposed == []
        assert list(bucket_api.objects) == ["bucket-2"]

    async def test_create_before_destroy_repoints_dependents_first(
        self, store, provider, executor_config, call_log, bucket_api, policy_api
    ):
        registry = SchemaRegistry()
        registry.register(make_bucket_schema(ReplacePolicy.CREATE_BEFORE_DESTROY))
        registry.register(make_policy_schema())
        engine = Engine(store, provider, registry, executor_config, sleep=no_sleep)
        await converge(engine, bucket(), policy())
        call_log.clear()

        plan = await engine.plan([bucket(name="logs-v2"), policy()])
        deposed = InstanceKey("bucket", "logs", deposed="bucket-1")
        assert plan.graph.dependencies(deposed) == {LOGS, POLICY}
        assert plan.graph.counts()["delete"] == 0
        result = await engine.apply(plan)

        assert result.success
        assert result.counts == {"created": 0, "updated": 1, "replaced": 1, "deleted": 0}
        mutations = [entry[:2] for entry in call_log if entry[0] in ("create", "update", "delete")]
        assert mutations == [("create", "bucket"), ("update", "policy"), ("delete", "bucket")]
        assert policy_api.objects["policy-1"]["bucket_arn"] == Value.string("arn:bucket-2")
        assert list(bucket_api.objects) == ["bucket-2"]
        assert (await store.read()).deposed == []


@pytest.mark.asyncio
class TestDelete:
    """Deleting instances no longer in the configuration."""

    async def test_deletes_dependents_first(self, engine, call_log):
        await converge(engine, bucket(), policy())
        call_log.clear()

        result = await converge(engine)

        assert result.success
        assert result.counts["deleted"] == 2
        deletes = [entry[1] for entry in call_log if entry[0] == "delete"]
        assert deletes == ["policy", "bucket"]
        assert (await engine.store.read()).instances == {}

    async def test_pre_delete_runs_before_delete(self, engine, call_log):
        await converge(engine, bucket())
        call_log.clear()
        await converge(engine)
        assert [entry[0] for entry in call_log] == ["pre_delete", "delete"]

    async def test_already_deleted_remotely(self, engine, bucket_api):
        await converge(engine, bucket())
        bucket_api.objects.clear()

        result = await converge(engine)

        assert result.success
        assert (await engine.store.read()).get(LOGS) is None

    async def test_reference_dependencies_order_destroy(self, engine, call_log):
        await converge(engine, bucket(), policy())
        snapshot = await engine.store.read()
        assert snapshot.get(POLICY).dependencies == [LOGS]

        plan = await engine.plan([])
        assert plan.graph.dependencies(LOGS) == {POLICY}
        call_log.clear()
        result = await engine.apply(plan)

        assert result.success
        deletes = [entry[1] for entry in call_log if entry[0] == "delete"]
        assert deletes == ["policy", "bucket"]


@pytest.mark.asyncio
class TestFailures:
    """Error handling during execution."""

    async def test_fatal_failure_skips_dependents_only(self, engine, bucket_api):
        bucket_api.fail("create", FatalError("quota exceeded"))

        result = await converge(
            engine, bucket(), policy(), policy("other", bucket_arn="arn:static")
        )

        other = InstanceKey("policy", "other")
        assert not result.success
        assert result.status_of(LOGS) == ActionStatus.FAILED
        assert "quota exceeded" in str(result.outcomes[LOGS].error)
        assert result.status_of(POLICY) == ActionStatus.SKIPPED
        assert result.status_of(other) == ActionStatus.SUCCEEDED
        assert "1 failed, 1 skipped" in result.summary()

        snapshot = await engine.store.read()
        assert snapshot.get(LOGS) is None
        assert snapshot.get(other) is not None

        # The recorded state is a valid starting point for a corrective plan
        plan = await engine.plan([bucket(), policy(), policy("other", bucket_arn="arn:static")])
        assert {a.key: a.kind for a in plan.graph.actions.values()} == {
            LOGS: ActionKind.CREATE,
            POLICY: ActionKind.CREATE,
        }

    async def test_error_names_the_instance(self, engine, bucket_api):
        bucket_api.fail("create", FatalError("denied"))
        result = await converge(engine, bucket())
        assert result.outcomes[LOGS].error.instance == LOGS
        assert str(result.outcomes[LOGS].error) == "bucket.logs: denied"

    async def test_retryable_then_success(self, engine, bucket_api):
        bucket_api.fail("create", RetryableError("throttled"), RetryableError("throttled"))

        result = await converge(engine, bucket())

        assert result.success
        assert bucket_api.calls["create"] == 3
        assert (await engine.store.read()).get(LOGS).id == "bucket-1"

    async def test_retries_exhausted(self, engine, bucket_api):
        bucket_api.fail("create", *[RetryableError("throttled")] * 3)

        result = await converge(engine, bucket())

        assert result.status_of(LOGS) == ActionStatus.FAILED
        assert isinstance(result.outcomes[LOGS].error, RetryExhausted)
        assert bucket_api.calls["create"] == 3

    async def test_unclassified_exception_is_fatal(self, engine, bucket_api):
        bucket_api.fail("create", RuntimeError("bug in collaborator"))
        result = await converge(engine, bucket())
        assert result.status_of(LOGS) == ActionStatus.FAILED
        assert bucket_api.calls["create"] == 1

    async def test_state_moved_since_plan(self, engine):
        plan = await engine.plan([bucket()])
        await engine.store.update(lambda s: None)

        with pytest.raises(StateConflict):
            await engine.apply(plan)

    async def test_type_create_timeout_is_retried(
        self, store, provider, executor_config, bucket_api
    ):
        schema = make_bucket_schema()
        schema.timeouts = OperationTimeouts(create=0.05)
        registry = SchemaRegistry()
        registry.register(schema)
        engine = Engine(store, provider, registry, executor_config, sleep=no_sleep)
        attempts = []
        original = bucket_api.create

        async def hang_once(key, attributes):
            attempts.append(key)
            if len(attempts) == 1:
                await asyncio.sleep(10)
            return await original(key, attributes)

        bucket_api.create = hang_once

        result = await converge(engine, bucket())

        assert result.success
        assert len(attempts) == 2
        assert list(bucket_api.objects) == ["bucket-1"]

    async def test_type_create_timeout_exhausts_retries(
        self, store, provider, executor_config, bucket_api
    ):
        schema = make_bucket_schema()
        schema.timeouts = OperationTimeouts(create=0.05)
        registry = SchemaRegistry()
        registry.register(schema)
        engine = Engine(store, provider, registry, executor_config, sleep=no_sleep)
        attempts = []

        async def hang(key, attributes):
            attempts.append(key)
            await asyncio.sleep(10)

        bucket_api.create = hang

        result = await converge(engine, bucket())

        assert result.status_of(LOGS) == ActionStatus.FAILED
        error = result.outcomes[LOGS].error
        assert isinstance(error, RetryExhausted)
        assert "timed out after 0.05s" in str(error)
        assert len(attempts) == 3

    async def test_state_written_during_run_fails_action(self, engine, bucket_api):
        original = bucket_api.create

        async def create_while_state_moves(key, attributes):
            await engine.store.update(lambda s: None)
            return await original(key, attributes)

        bucket_api.create = create_while_state_moves

        result = await converge(engine, bucket(), policy())

        assert result.status_of(LOGS) == ActionStatus.FAILED
        error = result.outcomes[LOGS].error
        assert isinstance(error, StateConflict)
        assert error.instance == LOGS
        assert result.status_of(POLICY) == ActionStatus.SKIPPED
        assert (await engine.store.read()).get(LOGS) is None


@pytest.mark.asyncio
class TestCancellation:
    """Cooperative cancellation."""

    async def test_cancelled_before_start(self, engine, bucket_api):
        cancel = asyncio.Event()
        cancel.set()

        result = await converge(engine, bucket(), policy(), cancel_event=cancel)

        assert result.cancelled
        assert not result.success
        assert result.with_status(ActionStatus.PENDING) == [LOGS, POLICY]
        assert result.remote_calls == 0

    async def test_in_flight_action_completes(self, engine, bucket_api):
        cancel = asyncio.Event()
        original = bucket_api.create

        async def create_and_cancel(key, attributes):
            cancel.set()
            return await original(key, attributes)

        bucket_api.create = create_and_cancel

        result = await converge(engine, bucket(), policy(), cancel_event=cancel)

        assert result.cancelled
        assert result.status_of(LOGS) == ActionStatus.SUCCEEDED
        assert result.status_of(POLICY) == ActionStatus.PENDING
        assert "1 not started (cancelled)" in result.summary()

        snapshot = await engine.store.read()
        assert snapshot.get(LOGS) is not None
        assert snapshot.get(POLICY) is None

        plan = await engine.plan([bucket(), policy()])
        assert list(plan.graph.actions) == [POLICY]

    async def test_cancel_after_last_action_started(self, engine, policy_api):
        cancel = asyncio.Event()
        original = policy_api.create

        async def create_and_cancel(key, attributes):
            cancel.set()
            return await original(key, attributes)

        policy_api.create = create_and_cancel

        result = await converge(engine, bucket(), policy(), cancel_event=cancel)

        assert cancel.is_set()
        assert not result.cancelled
        assert result.success
        assert result.with_status(ActionStatus.PENDING) == []
        assert "cancelled" not in result.summary()


@pytest.mark.asyncio
class TestDriftRecovery:
    """Objects deleted outside the engine are recreated by the next plan."""

    async def test_deleted_object_is_recreated(self, engine, bucket_api, policy_api):
        await converge(engine, bucket(), policy())
        bucket_api.objects.clear()

        report = await engine.refresh()
        assert report.with_status(DriftStatus.DELETED) == [LOGS]
        snapshot = await engine.store.read()
        assert snapshot.get(LOGS) is None

        plan = await engine.plan([bucket(), policy()])
        assert plan.graph.get(LOGS).kind == ActionKind.CREATE
        assert plan.graph.get(POLICY).kind == ActionKind.UPDATE

        result = await engine.apply(plan)
        assert result.success
        assert policy_api.objects["policy-1"]["bucket_arn"] == Value.string("arn:bucket-2")


@pytest.mark.asyncio
class TestEvents:
    """Action transitions are published on the event bus."""

    async def test_action_events(self, store, provider, registry, executor_config, bucket_api):
        bus = EventBus()
        engine = Engine(store, provider, registry, executor_config, event_bus=bus, sleep=no_sleep)
        _, subscription = await bus.subscribe()
        bucket_api.fail("create", FatalError("denied"))

        await converge(engine, bucket(), policy())

        events = []
        for _ in range(3):
            events.append(await asyncio.wait_for(subscription.__anext__(), timeout=1))
        assert [(e.event_type, e.instance) for e in events] == [
            (EventType.ACTION_STARTED, "bucket.logs"),
            (EventType.ACTION_FAILED, "bucket.logs"),
            (EventType.ACTION_SKIPPED, "policy.main"),
        ]
        assert events[0].action == "create"
