"""Tests for the engine facade and its background drain loop."""

from __future__ import annotations

import asyncio

import pytest

from pos_sync.config import SyncConfig
from pos_sync.connectivity import ConnectivityMonitor
from pos_sync.engine import OfflineSyncEngine
from pos_sync.local import JsonFileLocalStore
from pos_sync.offline_queue import QueueAction
from pos_sync.remote import CosmosRemoteStore


@pytest.fixture
async def engine(config, local, remote):
    connectivity = ConnectivityMonitor(config)
    connectivity.set_online(True)
    engine = OfflineSyncEngine(config, local=local, remote=remote, connectivity=connectivity)
    yield engine
    await engine.stop()


async def wait_for_empty_queue(engine: OfflineSyncEngine) -> int:
    for _ in range(100):
        pending = await engine.pending_count()
        if pending == 0:
            return 0
        await asyncio.sleep(0.01)
    return await engine.pending_count()


class TestLifecycle:
    async def test_start_drains_leftover_queue(self, engine, remote) -> None:
        await engine.context.queue.enqueue("products", QueueAction.UPSERT, {"id": "p1"})

        await engine.start()

        assert await engine.pending_count() == 0
        assert "p1" in remote.tables["products"]

    async def test_start_twice_is_harmless(self, engine) -> None:
        await engine.start()
        task = engine._sync_task

        await engine.start()

        assert engine._sync_task is task

    async def test_stop_closes_subscriptions(self, engine) -> None:
        await engine.start()
        handles = await engine.subscribe_to_changes(["products"], "t1")

        await engine.stop()

        assert not handles["products"].active
        assert engine._sync_task is None

    async def test_context_manager(self, config, local, remote) -> None:
        connectivity = ConnectivityMonitor(config)
        connectivity.set_online(True)

        async with OfflineSyncEngine(
            config, local=local, remote=remote, connectivity=connectivity
        ) as engine:
            assert engine._sync_task is not None

        assert engine._sync_task is None

    def test_default_stores(self, tmp_path) -> None:
        engine = OfflineSyncEngine(SyncConfig(local_path=str(tmp_path)))

        assert isinstance(engine.context.local, JsonFileLocalStore)
        assert isinstance(engine.context.remote, CosmosRemoteStore)


class TestReconnect:
    async def test_notify_online_drains_queue(self, engine, remote) -> None:
        await engine.start()
        engine.notify_offline()

        assert await engine.upsert("products", {"id": "p1", "name": "Tea"}, "t1") is False
        assert await engine.pending_count("products") == 1

        engine.notify_online()

        assert await wait_for_empty_queue(engine) == 0
        assert remote.tables["products"]["p1"]["name"] == "Tea"

    async def test_loop_survives_failed_drain(self, engine, remote) -> None:
        await engine.start()
        engine.notify_offline()
        await engine.upsert("products", {"id": "p1"}, "t1")
        remote.fail("upsert")

        engine.notify_online()
        for _ in range(100):
            [entry] = await engine.context.queue.entries()
            if entry.retry_count:
                break
            await asyncio.sleep(0.01)
        remote.recover()
        engine.notify_online()

        assert await wait_for_empty_queue(engine) == 0


class TestOperations:
    async def test_round_trip_through_facade(self, engine, remote) -> None:
        assert await engine.upsert_many("products", [{"id": "a"}, {"id": "b"}], "t1")
        assert await engine.delete("products", "a")

        rows = await engine.fetch("products", "t1")

        assert [r["id"] for r in rows] == ["b"]
        assert set(remote.tables["products"]) == {"b"}

    async def test_diagnostics_through_facade(self, engine) -> None:
        await engine.upsert("products", {"id": "p1"}, "t1")

        diagnostics = {d.table: d for d in await engine.get_sync_diagnostics("t1")}

        assert diagnostics["products"].status.value == "Synced"

    async def test_authenticate_through_facade(self, engine, remote) -> None:
        remote.seed(
            "users",
            [{"id": "u1", "email": "a@example.com", "password": "pw", "status": "Active"}],
        )

        result = await engine.authenticate("a@example.com", "pw")

        assert result.success
        assert result.user["email"] == "a@example.com"
