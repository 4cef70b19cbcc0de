"""Tests for the sync gateway read and write policies."""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from pos_sync.exceptions import ErrorCode, RemoteStoreError, ValidationError
from pos_sync.gateway import SyncGateway
from pos_sync.offline_queue import QueueAction


@pytest.fixture
def gateway(context) -> SyncGateway:
    return SyncGateway(context)


class TestFetch:
    """Cloud-first, local-fallback reads."""

    async def test_fetch_from_cloud_populates_cache(self, gateway, local, remote) -> None:
        remote.seed("products", [{"id": "p1", "name": "Widget", "business_id": "t1"}])

        records = await gateway.fetch("products", "t1")

        assert records == [{"id": "p1", "name": "Widget", "businessId": "t1"}]
        assert local.ids("products") == {"p1"}

    async def test_fetch_filters_remote_by_tenant_column(self, gateway, remote) -> None:
        await gateway.fetch("products", "t1")

        assert remote.calls_for("select") == [("select", "products", {"business_id": "t1"})]

    async def test_tenant_table_filters_by_own_id(self, gateway, remote) -> None:
        remote.seed("businesses", [{"id": "t1", "name": "Shop"}, {"id": "t2", "name": "Other"}])

        records = await gateway.fetch("businesses", "t1")

        assert remote.calls_for("select") == [("select", "businesses", {"id": "t1"})]
        assert [r["id"] for r in records] == ["t1"]

    async def test_fetch_coerces_timestamps(self, gateway, remote) -> None:
        remote.seed(
            "products",
            [{"id": "p1", "business_id": "t1", "updated_at": "2024-05-01T10:00:00Z"}],
        )

        records = await gateway.fetch("products", "t1")

        assert isinstance(records[0]["updatedAt"], datetime)

    async def test_fallback_returns_local_contents(self, gateway, local, remote) -> None:
        await local.save_items(
            "products",
            [
                {"id": "p1", "name": "Widget", "businessId": "t1"},
                {"id": "p2", "name": "Gadget", "businessId": "t1"},
            ],
        )
        remote.fail("select")

        records = await gateway.fetch("products", "t1")

        assert sorted(r["id"] for r in records) == ["p1", "p2"]

    async def test_fallback_when_offline_skips_remote(
        self, gateway, context, local, remote
    ) -> None:
        context.connectivity.set_online(False)
        await local.save_items("products", [{"id": "p1", "businessId": "t1"}])

        records = await gateway.fetch("products", "t1")

        assert [r["id"] for r in records] == ["p1"]
        assert remote.calls == []

    async def test_tenant_isolation_on_fallback(self, gateway, local, remote) -> None:
        await local.save_items(
            "products",
            [{"id": "a", "businessId": "tA"}, {"id": "b", "businessId": "tB"}],
        )
        remote.fail("select")

        records = await gateway.fetch("products", "tA")

        assert [r["id"] for r in records] == ["a"]

    async def test_tenant_isolation_when_remote_ignores_filter(self, gateway, remote) -> None:
        remote.seed(
            "products",
            [{"id": "a", "business_id": "tA"}, {"id": "b", "business_id": "tB"}],
        )
        # Simulate a remote that returns every row regardless of filter
        remote.select = lambda table, filters=None: _all_rows(remote, table)

        records = await gateway.fetch("products", "tA")

        assert [r["id"] for r in records] == ["a"]

    async def test_fetch_returns_empty_when_nothing_anywhere(self, gateway, context) -> None:
        context.connectivity.set_online(False)

        assert await gateway.fetch("products", "t1") == []

    async def test_fetch_drops_stale_cache_rows_for_tenant(self, gateway, local, remote) -> None:
        await local.save_items(
            "products",
            [
                {"id": "gone", "businessId": "t1"},
                {"id": "other-tenant", "businessId": "t2"},
            ],
        )
        remote.seed("products", [{"id": "p1", "business_id": "t1"}])

        await gateway.fetch("products", "t1")

        assert local.ids("products") == {"p1", "other-tenant"}

    async def test_fetch_keeps_pending_local_write(self, gateway, context, local, remote) -> None:
        context.connectivity.set_online(False)
        await gateway.upsert("products", {"id": "p1", "name": "New name"}, "t1")
        context.connectivity.set_online(True)
        remote.seed("products", [{"id": "p1", "name": "Old name", "business_id": "t1"}])

        records = await gateway.fetch("products", "t1")

        assert [r["name"] for r in records] == ["New name"]
        assert local.tables["products"]["p1"]["name"] == "New name"

    async def test_fetch_does_not_resurrect_pending_delete(
        self, gateway, context, local, remote
    ) -> None:
        remote.seed("products", [{"id": "p1", "business_id": "t1"}])
        context.connectivity.set_online(False)
        await gateway.delete("products", "p1")
        context.connectivity.set_online(True)

        records = await gateway.fetch("products", "t1")

        assert records == []
        assert "p1" not in local.ids("products")


async def _all_rows(remote, table):
    return [dict(r) for r in remote.tables.get(table, {}).values()]


class TestUpsert:
    """Local-first, cloud-confirm writes."""

    async def test_upsert_online_confirms(self, gateway, context, local, remote) -> None:
        ok = await gateway.upsert("products", {"id": "p1", "name": "Widget"}, "t1")

        assert ok is True
        assert local.ids("products") == {"p1"}
        assert remote.tables["products"]["p1"]["business_id"] == "t1"
        assert await context.queue.count() == 0

    async def test_upsert_unreachable_queues(self, gateway, context, local, remote) -> None:
        remote.fail("upsert")

        ok = await gateway.upsert("products", {"id": "p2", "name": "Gadget"}, "t1")

        assert ok is False
        assert local.ids("products") == {"p2"}
        entries = await context.queue.entries()
        assert len(entries) == 1
        assert entries[0].action == QueueAction.UPSERT
        assert entries[0].table == "products"
        assert entries[0].payload["id"] == "p2"
        assert entries[0].payload["business_id"] == "t1"

    async def test_upsert_offline_never_calls_remote(self, gateway, context, remote) -> None:
        context.connectivity.set_online(False)

        ok = await gateway.upsert("products", {"id": "p2"}, "t1")

        assert ok is False
        assert remote.calls == []
        assert await context.queue.count("products") == 1

    async def test_upsert_stamps_updated_at_when_absent(self, gateway, local, remote) -> None:
        await gateway.upsert("products", {"id": "p1"}, "t1")

        assert isinstance(local.tables["products"]["p1"]["updatedAt"], datetime)
        assert isinstance(remote.tables["products"]["p1"]["updated_at"], str)

    async def test_upsert_keeps_existing_updated_at(self, gateway, remote) -> None:
        await gateway.upsert("products", {"id": "p1", "updatedAt": "2024-01-01T00:00:00+00:00"})

        assert remote.tables["products"]["p1"]["updated_at"] == "2024-01-01T00:00:00+00:00"

    async def test_upsert_keeps_existing_tenant(self, gateway, remote) -> None:
        await gateway.upsert("products", {"id": "p1", "businessId": "t9"}, "t1")

        assert remote.tables["products"]["p1"]["business_id"] == "t9"

    async def test_tenant_table_never_gets_tenant_column(self, gateway, local, remote) -> None:
        await gateway.upsert("businesses", {"id": "t1", "name": "Shop"}, "t1")

        assert "business_id" not in remote.tables["businesses"]["t1"]
        assert "businessId" not in local.tables["businesses"]["t1"]

    async def test_upsert_without_id_is_rejected(self, gateway, local) -> None:
        with pytest.raises(ValidationError):
            await gateway.upsert("products", {"name": "No id"}, "t1")
        assert local.ids("products") == set()

    async def test_terminal_error_is_not_retried(self, gateway, context, remote) -> None:
        remote.fail("upsert", RemoteStoreError("violates foreign key", status_code=409))

        ok = await gateway.upsert("products", {"id": "p1"}, "t1")

        assert ok is False
        assert len(remote.calls_for("upsert")) == 1
        assert await context.queue.count() == 1

    async def test_transient_error_is_retried(self, gateway, context, remote) -> None:
        remote.fail("upsert", times=1)

        ok = await gateway.upsert("products", {"id": "p1"}, "t1")

        assert ok is True
        assert len(remote.calls_for("upsert")) == 2
        assert await context.queue.count() == 0

    async def test_confirmed_write_discards_older_queue_entries(
        self, gateway, context, remote
    ) -> None:
        context.connectivity.set_online(False)
        await gateway.upsert("products", {"id": "p1", "name": "v1"}, "t1")
        context.connectivity.set_online(True)

        await gateway.upsert("products", {"id": "p1", "name": "v2"}, "t1")

        assert await context.queue.count() == 0
        assert remote.tables["products"]["p1"]["name"] == "v2"


class TestUpsertMany:
    async def test_single_local_write_and_remote_call(self, gateway, local, remote) -> None:
        records = [{"id": f"t{i}", "total": i} for i in range(3)]
        writes_before = local.writes

        ok = await gateway.upsert_many("transactions", records, "b1")

        assert ok is True
        assert local.writes == writes_before + 1
        assert len(remote.calls_for("upsert")) == 1
        assert set(remote.tables["transactions"]) == {"t0", "t1", "t2"}

    async def test_batch_failure_queues_each_record(self, gateway, context, remote) -> None:
        remote.fail("upsert")

        ok = await gateway.upsert_many("transactions", [{"id": "a"}, {"id": "b"}], "b1")

        assert ok is False
        entries = await context.queue.entries()
        assert sorted(e.record_id for e in entries) == ["a", "b"]

    async def test_empty_batch_is_a_no_op(self, gateway, remote) -> None:
        assert await gateway.upsert_many("transactions", []) is True
        assert remote.calls == []


class TestDelete:
    async def test_delete_online(self, gateway, local, remote) -> None:
        await gateway.upsert("products", {"id": "p1"}, "t1")

        ok = await gateway.delete("products", "p1")

        assert ok is True
        assert "p1" not in local.ids("products")
        assert "p1" not in remote.tables["products"]

    async def test_delete_absent_remote_row_is_fine(self, gateway) -> None:
        assert await gateway.delete("products", "never-existed") is True

    async def test_delete_failure_queues(self, gateway, context, local, remote) -> None:
        await local.save_items("products", [{"id": "p1"}])
        remote.fail("delete")

        ok = await gateway.delete("products", "p1")

        assert ok is False
        assert "p1" not in local.ids("products")
        entries = await context.queue.entries()
        assert [(e.action, e.payload) for e in entries] == [(QueueAction.DELETE, {"id": "p1"})]


class TestAuthenticate:
    """Identity checks surface structured error codes."""

    async def test_success_caches_user_without_password(self, gateway, local, remote) -> None:
        remote.seed(
            "users",
            [{"id": "u1", "email": "a@shop.io", "password": "s3cret", "status": "Active"}],
        )

        result = await gateway.authenticate("a@shop.io", "s3cret")

        assert result.success is True
        assert result.user["id"] == "u1"
        assert "password" not in result.user
        assert "password" not in local.tables["users"]["u1"]

    async def test_offline(self, gateway, context) -> None:
        context.connectivity.set_online(False)

        result = await gateway.authenticate("a@shop.io", "x")

        assert result.success is False
        assert result.code == ErrorCode.OFFLINE

    async def test_unknown_email(self, gateway) -> None:
        result = await gateway.authenticate("nobody@shop.io", "x")

        assert result.code == ErrorCode.EMAIL_NOT_FOUND

    async def test_wrong_password(self, gateway, remote) -> None:
        remote.seed("users", [{"id": "u1", "email": "a@shop.io", "password": "right"}])

        result = await gateway.authenticate("a@shop.io", "wrong")

        assert result.code == ErrorCode.AUTH_FAILED

    async def test_inactive_account(self, gateway, remote) -> None:
        remote.seed(
            "users",
            [{"id": "u1", "email": "a@shop.io", "password": "pw", "status": "Suspended"}],
        )

        result = await gateway.authenticate("a@shop.io", "pw")

        assert result.code == ErrorCode.AUTH_FAILED

    async def test_network_failure(self, gateway, remote) -> None:
        remote.fail("select")

        result = await gateway.authenticate("a@shop.io", "pw")

        assert result.code == ErrorCode.NETWORK_ERROR

    async def test_deadline_exceeded(self, gateway, remote) -> None:
        async def hang(table, filters=None):
            await asyncio.sleep(10)
            return []

        remote.select = hang

        result = await gateway.authenticate("a@shop.io", "pw")

        assert result.code == ErrorCode.HANDSHAKE_TIMEOUT
