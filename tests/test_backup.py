"""Tests for database backups, replication to peers and retention."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from sucursync.backup.service import (
    BackupState,
    BackupStatus,
    backup_filename,
    parse_backup_filename,
)
from sucursync.entities import Branch, ErrorType
from sucursync.errors import InvalidInput, NotFound, QuotaExceeded
from sucursync.peers import PeerClient


async def _local(state):
    return await state.current.get_info()


async def _point_at(state, remote_url: str | None):
    local = await _local(state)
    await state.registry.update_branch(local.id, remote_url=remote_url)
    state.current.invalidate()
    return await _local(state)


class TestFilenames:
    def test_round_trip_with_underscores_in_name(self):
        when = datetime(2026, 3, 4, 5, 6, 7, 890123, tzinfo=timezone.utc)
        name = backup_filename("Sucursal_Norte", when)
        assert name.endswith("_db")
        assert ":" not in name and "." not in name
        assert parse_backup_filename(name) == ("Sucursal_Norte", when)

    @pytest.mark.parametrize("name", ["notes.txt", "Alpha_db", "Alpha_yesterday_db", "_db"])
    def test_rejects_foreign_names(self, name):
        assert parse_backup_filename(name) is None

    def test_names_sort_by_time(self):
        t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        names = [backup_filename("A", t0 + timedelta(seconds=s)) for s in (3, 1, 2)]
        assert sorted(names) == [names[1], names[2], names[0]]


class TestCreateBackup:
    @pytest.mark.asyncio
    async def test_local_only_without_remote(self, state):
        local = await _local(state)

        result = await state.backup.create_backup(local.id)

        assert result.status == BackupStatus.LOCAL_ONLY
        assert not result.sent_to_remote
        path = state.settings.backups_dir / result.filename
        assert path.is_file()
        assert path.stat().st_size > 0
        assert result.filename.startswith("Alpha_")
        assert state.backup.state_of(local.id) == BackupState.LOCAL_ONLY

    @pytest.mark.asyncio
    async def test_unknown_branch(self, state):
        with pytest.raises(NotFound):
            await state.backup.create_backup("no-such-branch")

    @pytest.mark.asyncio
    async def test_sent_to_peer(self, state, beta):
        local = await _point_at(state, "http://beta.test")

        result = await state.backup.create_backup(local.id)

        assert result.status == BackupStatus.SENT
        assert result.sent_to_remote
        assert not (state.settings.backups_dir / result.filename).exists()
        assert state.backup.state_of(local.id) == BackupState.SENT

        received = beta.state.backup.list_received_backups()
        assert len(received) == 1
        assert received[0].branch_name == "Alpha"
        assert received[0].filename.startswith(f"{result.filename}_received_")

        logs, total = await beta.state.error_log.list_logs(error_type=ErrorType.BACKUP_RECEIVED.value)
        assert total == 1
        assert "Alpha" in logs[0].description

    @pytest.mark.asyncio
    async def test_plain_text_answer_counts_as_sent(self, state):
        local = await _point_at(state, "http://beta.test")
        state.backup.peers = PeerClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text="OK")),
        )

        result = await state.backup.create_backup(local.id)

        assert result.status == BackupStatus.SENT
        assert state.backup.list_local_backups("Alpha") == []
        assert state.backup.state_of(local.id) == BackupState.SENT

    @pytest.mark.asyncio
    async def test_name_outside_backups_dir_is_refused(self, state, monkeypatch):
        async def get_branch(branch_id):
            return Branch(id=branch_id, name="../escaped")

        monkeypatch.setattr(state.registry, "get_branch", get_branch)

        with pytest.raises(InvalidInput):
            await state.backup.create_backup("evil")
        assert not list(state.settings.backups_dir.parent.glob("escaped_*"))
        assert state.backup.state_of("evil") == BackupState.IDLE

    @pytest.mark.asyncio
    async def test_unreachable_peer_keeps_copy(self, state, network):
        local = await _point_at(state, "http://beta.test")

        result = await state.backup.create_backup(local.id)

        assert result.status == BackupStatus.PENDING_RETRY
        assert result.error
        assert (state.settings.backups_dir / result.filename).is_file()
        assert state.backup.state_of(local.id) == BackupState.PENDING_RETRY
        _, total = await state.error_log.list_logs(error_type=ErrorType.BACKUP_ERROR.value)
        assert total == 1

    @pytest.mark.asyncio
    async def test_pending_backup_synced_once_peer_returns(self, state, start_branch):
        local = await _point_at(state, "http://beta.test")
        first = await state.backup.create_backup(local.id)
        assert first.status == BackupStatus.PENDING_RETRY

        # Beta comes online afterwards.
        beta = await start_branch("Beta", "beta.test")

        summary = await state.backup.sync_pending_backups()

        assert summary.synced == 1
        assert summary.failed == 0
        assert not summary.skipped
        assert state.backup.list_local_backups("Alpha") == []
        assert len(beta.state.backup.list_received_backups()) == 1
        assert state.backup.state_of(local.id) == BackupState.SENT

    @pytest.mark.asyncio
    async def test_plain_text_answer_does_not_stop_sync(self, state, network):
        local = await _point_at(state, "http://beta.test")
        await state.backup.create_backup(local.id)
        state.backup.peers = PeerClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text="OK")),
        )

        summary = await state.backup.sync_pending_backups()

        assert summary.synced == 1
        assert state.backup.list_local_backups("Alpha") == []


class TestSyncPending:
    @pytest.mark.asyncio
    async def test_offline_skips(self, state, network):
        local = await _point_at(state, "http://beta.test")
        await state.backup.create_backup(local.id)
        network.online = False

        summary = await state.backup.sync_pending_backups()

        assert summary.skipped
        assert summary.reason == "No internet connection"
        assert len(state.backup.list_local_backups("Alpha")) == 1

    @pytest.mark.asyncio
    async def test_still_unreachable_counts_failures(self, state):
        local = await _point_at(state, "http://beta.test")
        await state.backup.create_backup(local.id)
        await state.backup.create_backup(local.id)

        summary = await state.backup.sync_pending_backups()

        assert summary.synced == 0
        assert summary.failed == 2

    @pytest.mark.asyncio
    async def test_branches_without_remote_are_left_alone(self, state):
        local = await _local(state)
        await state.backup.create_backup(local.id)

        summary = await state.backup.sync_pending_backups()

        assert summary.synced == summary.failed == 0
        assert len(state.backup.list_local_backups("Alpha")) == 1


class TestCleanup:
    @pytest.mark.asyncio
    async def test_keeps_newest_per_branch(self, state):
        backups_dir = state.settings.backups_dir
        backups_dir.mkdir(parents=True, exist_ok=True)
        t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        alpha = [backup_filename("Alpha", t0 + timedelta(minutes=i)) for i in range(15)]
        beta = [backup_filename("Beta", t0 + timedelta(minutes=i)) for i in range(3)]
        for name in alpha + beta:
            (backups_dir / name).write_bytes(b"db")
        (backups_dir / "notes.txt").write_text("keep me")
        (backups_dir / "received").mkdir(exist_ok=True)

        deleted = await state.backup.cleanup_old_backups(keep=10)

        assert deleted == 5
        remaining = {b.filename for b in state.backup.list_local_backups("Alpha")}
        assert remaining == set(alpha[5:])
        assert len(state.backup.list_local_backups("Beta")) == 3
        assert (backups_dir / "notes.txt").exists()
        assert (backups_dir / "received").is_dir()

    @pytest.mark.asyncio
    async def test_list_is_newest_first(self, state):
        backups_dir = state.settings.backups_dir
        backups_dir.mkdir(parents=True, exist_ok=True)
        t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in (2, 0, 1):
            (backups_dir / backup_filename("Alpha", t0 + timedelta(hours=i))).write_bytes(b"x")

        listed = state.backup.list_local_backups("Alpha")

        assert [b.created_at for b in listed] == sorted(
            (b.created_at for b in listed), reverse=True
        )


class TestCreateAll:
    @pytest.mark.asyncio
    async def test_backs_up_every_branch(self, state):
        await state.registry.create_branch("Gamma")

        results = await state.backup.create_all_backups()

        assert {r.branch_name for r in results} == {"Alpha", "Gamma"}
        assert all(r.status == BackupStatus.LOCAL_ONLY for r in results)
        assert not state.backup.is_running

    @pytest.mark.asyncio
    async def test_overlapping_run_returns_none(self, state):
        first, second = await asyncio.gather(
            state.backup.create_all_backups(),
            state.backup.create_all_backups(),
        )
        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_guard_flag(self, state):
        state.backup.is_running = True
        assert await state.backup.create_all_backups() is None


class TestReceive:
    @pytest.mark.asyncio
    async def test_stores_under_received(self, state):
        async def blocks():
            yield b"part-1;"
            yield b"part-2"

        stored = await state.backup.receive_backup(
            "Remote_2026-01-01T00-00-00-000000Z_db", blocks(), "Remote", "2026-01-01",
        )

        assert stored.path.parent == state.settings.received_backups_dir
        assert stored.path.read_bytes() == b"part-1;part-2"
        assert stored.size == 13
        assert state.backup.list_local_backups("Remote") == []

    @pytest.mark.asyncio
    async def test_branch_name_from_filename(self, state):
        async def blocks():
            yield b"db"

        stored = await state.backup.receive_backup(
            "Suc. Norte_2026-01-01T00-00-00-000000Z_db", blocks(), None, None,
        )

        assert stored.branch_name == "Suc. Norte"
        assert stored.filename.startswith("Suc. Norte_2026-01-01T00-00-00-000000Z_db_received_")
        assert state.backup.list_received_backups()[0].branch_name == "Suc. Norte"

    @pytest.mark.asyncio
    async def test_oversized_is_rejected_and_removed(self, state):
        state.backup.max_received_size = 4

        async def blocks():
            yield b"123"
            yield b"456"

        with pytest.raises(QuotaExceeded):
            await state.backup.receive_backup("x_db", blocks(), "X", None)
        assert list(state.settings.received_backups_dir.iterdir()) == []
