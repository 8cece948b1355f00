"""Pytest configuration and fixtures."""

from collections import Counter, defaultdict
from typing import Callable, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from converge.base import DesiredInstance, InstanceKey
from converge.config import ExecutorConfig
from converge.engine import Engine
from converge.errors import NotFoundError
from converge.remote import CreateResult, Provider, RemoteAPI
from converge.schema import (
    AttributeSchema,
    AttributeType,
    Mutability,
    OrderingConstraint,
    Presence,
    ReplacePolicy,
    ResourceSchema,
    SchemaRegistry,
)
from converge.state import MemoryStateBackend, StateStore
from converge.values import Value, values_from_python


class FakeRemoteAPI(RemoteAPI):
    """In-memory remote system with call counters and failure injection."""

    def __init__(
        self,
        type_name: str,
        computed: Optional[Dict[str, Callable[[str], Value]]] = None,
        log: Optional[List[tuple]] = None,
    ):
        self._type_name = type_name
        self.objects: Dict[str, Dict[str, Value]] = {}
        self.calls: Counter = Counter()
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.computed = computed or {}
        self.log = log if log is not None else []
        self._next_id = 0

    @property
    def type_name(self) -> str:
        return self._type_name

    def fail(self, operation: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls of ``operation``."""
        self.failures[operation].extend(errors)

    def _record(self, operation: str, subject: str) -> None:
        self.calls[operation] += 1
        self.log.append((operation, self._type_name, subject))
        if self.failures[operation]:
            raise self.failures[operation].pop(0)

    async def create(self, key, attributes):
        self._record("create", key.name)
        self._next_id += 1
        remote_id = f"{self._type_name}-{self._next_id}"
        obj = dict(attributes)
        for name, fn in self.computed.items():
            obj[name] = fn(remote_id)
        self.objects[remote_id] = obj
        return CreateResult(id=remote_id, attributes=dict(obj))

    async def read(self, id):
        self._record("read", id)
        if id not in self.objects:
            raise NotFoundError(f"{id} not found")
        return dict(self.objects[id])

    async def update(self, id, changes):
        self._record("update", id)
        if id not in self.objects:
            raise NotFoundError(f"{id} not found")
        self.objects[id].update(changes)
        return dict(self.objects[id])

    async def delete(self, id):
        self._record("delete", id)
        if id not in self.objects:
            raise NotFoundError(f"{id} not found")
        del self.objects[id]

    async def pre_delete(self, id, attributes):
        self._record("pre_delete", id)

    @property
    def remote_call_count(self) -> int:
        return sum(self.calls.values())


def arn_for(remote_id: str) -> Value:
    return Value.string(f"arn:{remote_id}")


def make_bucket_schema(
    replace_policy: ReplacePolicy = ReplacePolicy.DESTROY_BEFORE_CREATE,
) -> ResourceSchema:
    return ResourceSchema(
        type_name="bucket",
        attributes=[
            AttributeSchema(
                "name",
                AttributeType.STRING,
                Mutability.FORCES_REPLACEMENT,
                Presence.REQUIRED,
            ),
            AttributeSchema("size", AttributeType.NUMBER),
            AttributeSchema("acl", AttributeType.STRING, default="private"),
            AttributeSchema("versioning", AttributeType.BOOL),
            AttributeSchema("replication", AttributeType.STRING),
            AttributeSchema("tags", AttributeType.MAP),
            AttributeSchema(
                "arn", AttributeType.STRING, Mutability.COMPUTED, Presence.COMPUTED
            ),
        ],
        ordering=[OrderingConstraint(before="versioning", after="replication")],
        replace_policy=replace_policy,
    )


def make_policy_schema() -> ResourceSchema:
    return ResourceSchema(
        type_name="policy",
        attributes=[
            AttributeSchema(
                "bucket_arn",
                AttributeType.STRING,
                Mutability.UPDATABLE,
                Presence.REQUIRED,
            ),
            AttributeSchema("document", AttributeType.STRING),
            AttributeSchema("secret", AttributeType.STRING, sensitive=True),
        ],
    )


def desired(type_name: str, name: str, /, depends_on=(), **attributes) -> DesiredInstance:
    return DesiredInstance(
        key=InstanceKey(type_name, name),
        attributes=values_from_python(attributes),
        depends_on=[InstanceKey.parse(d) for d in depends_on],
    )


def ref(address: str) -> Dict[str, str]:
    return {"$ref": address}


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def bucket_schema():
    return make_bucket_schema()


@pytest.fixture
def registry():
    registry = SchemaRegistry()
    registry.register(make_bucket_schema())
    registry.register(make_policy_schema())
    return registry


@pytest.fixture
def call_log():
    return []


@pytest.fixture
def bucket_api(call_log):
    return FakeRemoteAPI("bucket", computed={"arn": arn_for}, log=call_log)


@pytest.fixture
def policy_api(call_log):
    return FakeRemoteAPI("policy", log=call_log)


@pytest.fixture
def provider(bucket_api, policy_api):
    return Provider("fake", [bucket_api, policy_api])


@pytest.fixture
def store():
    return StateStore(MemoryStateBackend())


@pytest.fixture
def executor_config():
    return ExecutorConfig(
        parallelism=4,
        max_attempts=3,
        action_timeout=5.0,
        confirm_create=True,
        backoff_base_delay=0.0,
        backoff_max_delay=0.0,
        backoff_jitter_factor=0.0,
        retry_budget=None,
    )


@pytest.fixture
def engine(store, provider, registry, executor_config):
    return Engine(store, provider, registry, executor_config, sleep=no_sleep)


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection with a working transaction()."""
    conn = AsyncMock()
    mock_transaction = AsyncMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=mock_transaction)
    mock_transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=mock_transaction)
    return conn
