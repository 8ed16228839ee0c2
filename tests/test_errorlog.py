"""Tests for the error log and its forwarding to the remote branch."""

from __future__ import annotations

import json

import pytest

from sucursync.entities import ErrorType
from sucursync.errors import NotFound


class TestLogError:
    @pytest.mark.asyncio
    async def test_without_remote_stays_unsent(self, state, network):
        entry = await state.error_log.log_error(
            ErrorType.SYNC_ERROR, "sync failed", {"peer": "Beta"},
        )

        assert entry.sent_to_remote is False
        assert entry.branch_id == (await state.current.get_info()).id
        assert json.loads(entry.details) == {"peer": "Beta"}
        assert not any("error-logs" in str(r.url) for r in network.requests)

    @pytest.mark.asyncio
    async def test_exception_details(self, state):
        entry = await state.error_log.log_error(
            ErrorType.NETWORK_ERROR, "lost", NotFound("gone"),
        )
        assert json.loads(entry.details) == {"type": "NotFound", "message": "gone"}

    @pytest.mark.asyncio
    async def test_forwarded_when_remote_reachable(self, state, beta):
        local = await state.current.get_info()
        await state.registry.update_branch(local.id, remote_url="http://beta.test")
        state.current.invalidate()

        entry = await state.error_log.log_error(ErrorType.BACKUP_ERROR, "disk full")

        assert entry.sent_to_remote is True
        forwarded, total = await beta.state.error_log.list_logs(
            error_type=ErrorType.BACKUP_ERROR.value,
        )
        assert total == 1
        assert forwarded[0].id == entry.id
        assert forwarded[0].branch_id == local.id

    @pytest.mark.asyncio
    async def test_unreachable_remote_does_not_raise(self, state):
        local = await state.current.get_info()
        await state.registry.update_branch(local.id, remote_url="http://down.test")
        state.current.invalidate()

        entry = await state.error_log.log_error(ErrorType.BACKUP_ERROR, "disk full")

        assert entry is not None
        assert entry.sent_to_remote is False


class TestSyncPending:
    @pytest.mark.asyncio
    async def test_batches_are_bounded(self, state, start_branch):
        local = await state.current.get_info()
        await state.registry.update_branch(local.id, remote_url="http://beta.test")
        state.current.invalidate()
        state.error_log.batch_size = 2
        for i in range(3):
            await state.error_log.log_error(ErrorType.SYNC_ERROR, f"entry {i}")

        await start_branch("Beta", "beta.test")

        assert await state.error_log.sync_pending() == {"synced": 2, "failed": 0}
        assert await state.error_log.sync_pending() == {"synced": 1, "failed": 0}
        assert await state.error_log.sync_pending() == {"synced": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_failure_keeps_entries(self, state):
        local = await state.current.get_info()
        await state.registry.update_branch(local.id, remote_url="http://down.test")
        state.current.invalidate()
        await state.error_log.log_error(ErrorType.SYNC_ERROR, "one")

        assert await state.error_log.sync_pending() == {"synced": 0, "failed": 1}
        logs, _ = await state.error_log.list_logs()
        assert logs[0].sent_to_remote is False


class TestReceiveAndList:
    @pytest.mark.asyncio
    async def test_receive_skips_known_ids(self, state):
        entries = [
            {"id": "x1", "errorType": "SYNC_ERROR", "description": "a",
             "createdAt": "2026-01-01T00:00:00+00:00"},
            {"id": "x2", "errorType": "SYNC_ERROR", "description": "b"},
        ]
        assert await state.error_log.receive(entries) == 2
        assert await state.error_log.receive(entries) == 0

        logs, total = await state.error_log.list_logs()
        assert total == 2
        assert all(e.sent_to_remote for e in logs)

    @pytest.mark.asyncio
    async def test_malformed_created_at_uses_receive_time(self, state):
        stored = await state.error_log.receive([
            {"id": "m1", "errorType": "SYNC_ERROR", "description": "a", "createdAt": "yesterday"},
        ])

        assert stored == 1
        logs, _ = await state.error_log.list_logs()
        assert logs[0].id == "m1"
        assert logs[0].created_at.year >= 2026

    @pytest.mark.asyncio
    async def test_pagination_newest_first(self, state):
        for i in range(5):
            await state.error_log.receive([{
                "id": f"p{i}",
                "errorType": "SYNC_ERROR",
                "description": str(i),
                "createdAt": f"2026-01-0{i + 1}T00:00:00",
            }])

        first, total = await state.error_log.list_logs(page=1, limit=2)
        last, _ = await state.error_log.list_logs(page=3, limit=2)

        assert total == 5
        assert [e.id for e in first] == ["p4", "p3"]
        assert [e.id for e in last] == ["p0"]

    @pytest.mark.asyncio
    async def test_filter_by_branch(self, state):
        await state.error_log.receive([
            {"id": "a", "branchId": "b1", "errorType": "SYNC_ERROR", "description": "a"},
            {"id": "b", "branchId": "b2", "errorType": "SYNC_ERROR", "description": "b"},
        ])
        logs, total = await state.error_log.list_logs(branch_id="b2")
        assert total == 1
        assert logs[0].id == "b"
