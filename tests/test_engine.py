"""Tests for engine.py - Plan/apply/refresh/import facade."""

from unittest.mock import AsyncMock, patch

import pytest

from converge.base import InstanceKey
from converge.config import StateConfig
from converge.engine import lock_owner, open_state_store
from converge.errors import ConvergeError, NotFoundError, StateLocked
from converge.state import FileStateBackend, MemoryStateBackend
from converge.values import Value, values_from_python

from conftest import desired

LOGS = InstanceKey("bucket", "logs")


@pytest.mark.asyncio
class TestOpenStateStore:
    """Tests for open_state_store."""

    async def test_memory(self):
        store = await open_state_store(StateConfig(backend="memory"))
        assert isinstance(store.backend, MemoryStateBackend)

    async def test_file(self, tmp_path):
        path = str(tmp_path / "state.json")
        store = await open_state_store(StateConfig(backend="file", path=path))
        assert isinstance(store.backend, FileStateBackend)
        assert str(store.backend.path) == path

    async def test_postgres_is_connected_and_migrated(self):
        with patch("converge.engine.PostgresStateBackend") as backend_cls:
            backend = backend_cls.return_value
            backend.connect = AsyncMock()
            backend.initialize_schema = AsyncMock()

            store = await open_state_store(
                StateConfig(backend="postgres", db_password="pw", workspace="prod")
            )

        assert store.backend is backend
        backend.connect.assert_called_once()
        backend.initialize_schema.assert_called_once()
        assert backend_cls.call_args.kwargs["workspace"] == "prod"
        assert backend_cls.call_args.kwargs["password"] == "pw"

    async def test_unknown_backend(self):
        with pytest.raises(ValueError):
            await open_state_store(StateConfig(backend="s3"))


def test_lock_owner():
    host, pid = lock_owner().rsplit(":", 1)
    assert host
    assert pid.isdigit()


@pytest.mark.asyncio
class TestEngine:
    """Tests for the Engine facade."""

    async def test_plan_uses_current_serial(self, engine):
        await engine.store.update(lambda s: None)
        plan = await engine.plan([desired("bucket", "logs", name="logs")])
        assert plan.serial == 1

    async def test_apply_records_run(self, engine):
        engine.store.backend.record_run = AsyncMock()
        plan = await engine.plan([desired("bucket", "logs", name="logs")])

        result = await engine.apply(plan)

        engine.store.backend.record_run.assert_called_once()
        args, kwargs = engine.store.backend.record_run.call_args
        assert args == ("apply", True)
        assert kwargs["serial"] == result.snapshot.serial
        assert kwargs["summary"] == "1 created, 0 updated, 0 replaced, 0 deleted"
        assert kwargs["details"]["counts"]["created"] == 1

    async def test_apply_refuses_when_locked(self, engine):
        plan = await engine.plan([desired("bucket", "logs", name="logs")])
        async with engine.store.lock("someone-else"):
            with pytest.raises(StateLocked):
                await engine.apply(plan)

    async def test_refresh_records_run(self, engine):
        engine.store.backend.record_run = AsyncMock()

        report = await engine.refresh()

        assert report.entries == {}
        assert engine.store.backend.record_run.call_args[0] == ("refresh", True)

    async def test_import_instance(self, engine, bucket_api):
        bucket_api.objects["existing-7"] = values_from_python(
            {"name": "logs", "size": 3, "acl": "private", "arn": "arn:existing-7", "region": "eu"}
        )

        instance = await engine.import_instance(LOGS, "existing-7")

        assert instance.id == "existing-7"
        assert "region" not in instance.attributes
        snapshot = await engine.store.read()
        assert snapshot.get(LOGS).attributes["size"] == Value.number(3)

        plan = await engine.plan([desired("bucket", "logs", name="logs", size=3)])
        assert plan.is_empty

    async def test_import_already_managed(self, engine, bucket_api):
        bucket_api.objects["x"] = values_from_python({"name": "logs"})
        await engine.import_instance(LOGS, "x")
        with pytest.raises(ConvergeError) as exc_info:
            await engine.import_instance(LOGS, "x")
        assert "already managed" in str(exc_info.value)

    async def test_import_missing_object(self, engine):
        with pytest.raises(NotFoundError):
            await engine.import_instance(LOGS, "nope")
        assert (await engine.store.read()).serial == 0

    async def test_forget(self, engine, bucket_api):
        plan = await engine.plan([desired("bucket", "logs", name="logs")])
        await engine.apply(plan)

        forgotten = await engine.forget(LOGS)

        assert forgotten.id == "bucket-1"
        assert (await engine.store.read()).get(LOGS) is None
        # The remote object is left in place
        assert "bucket-1" in bucket_api.objects

    async def test_forget_unknown(self, engine):
        with pytest.raises(ConvergeError) as exc_info:
            await engine.forget(LOGS)
        assert "not in state" in str(exc_info.value)

    async def test_close(self, engine):
        engine.provider.close = AsyncMock()
        engine.store.close = AsyncMock()
        await engine.close()
        engine.provider.close.assert_called_once()
        engine.store.close.assert_called_once()
