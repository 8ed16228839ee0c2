"""Tests for the branch directory, connection edges and peer notification."""

from __future__ import annotations

import json

import pytest

from sucursync.entities import ErrorType
from sucursync.errors import Conflict, InvalidInput, NotFound

# ---------------------------------------------------------------------------
# create / update / delete
# ---------------------------------------------------------------------------


class TestCreateBranch:
    @pytest.mark.asyncio
    async def test_create(self, state):
        branch, connections = await state.registry.create_branch(
            "Norte", description="North side", location="Calle 1",
            server_url="http://norte.test",
        )
        assert branch.id
        assert connections == []
        fetched = await state.registry.get_branch(branch.id)
        assert fetched.name == "Norte"
        assert fetched.server_url == "http://norte.test"

    @pytest.mark.asyncio
    async def test_name_with_separator(self, state):
        with pytest.raises(InvalidInput):
            await state.registry.create_branch("Norte/Sur")
        branch, _ = await state.registry.create_branch("Suc. Norte_2")
        with pytest.raises(InvalidInput):
            await state.registry.update_branch(branch.id, name="../x")

    @pytest.mark.asyncio
    async def test_duplicate_name(self, state):
        await state.registry.create_branch("Norte")
        with pytest.raises(Conflict, match="name"):
            await state.registry.create_branch("Norte")

    @pytest.mark.asyncio
    async def test_duplicate_server_url(self, state):
        await state.registry.create_branch("Norte", server_url="http://n.test")
        with pytest.raises(Conflict, match="server URL"):
            await state.registry.create_branch("Sur", server_url="http://n.test")

    @pytest.mark.asyncio
    async def test_blank_server_urls_do_not_collide(self, state):
        await state.registry.create_branch("Norte", server_url="")
        await state.registry.create_branch("Sur", server_url=None)
        names = {b.name for b in await state.registry.list_branches()}
        assert {"Norte", "Sur"} <= names

    @pytest.mark.asyncio
    async def test_name_required(self, state):
        with pytest.raises(InvalidInput):
            await state.registry.create_branch("")

    @pytest.mark.asyncio
    async def test_unknown_connected_id_creates_nothing(self, state):
        with pytest.raises(InvalidInput):
            await state.registry.create_branch("Norte", connected_ids=["missing"])
        assert await state.registry.get_by_name("Norte") is None

    @pytest.mark.asyncio
    async def test_connections_created_with_branch(self, state):
        local = await state.current.get_info()
        branch, connections = await state.registry.create_branch(
            "Norte", connected_ids=[local.id, local.id],
        )
        await state.registry.drain()
        assert len(connections) == 1
        assert connections[0].source_id == branch.id
        assert connections[0].target_id == local.id
        assert [b.id for b in await state.registry.peers_of(local.id)] == [branch.id]


class TestUpdateDelete:
    @pytest.mark.asyncio
    async def test_update_keeps_own_name(self, state):
        branch, _ = await state.registry.create_branch("Norte", server_url="http://n.test")
        updated = await state.registry.update_branch(
            branch.id, name="Norte", server_url="http://n.test", location="Plaza",
        )
        assert updated.location == "Plaza"

    @pytest.mark.asyncio
    async def test_update_to_taken_name(self, state):
        await state.registry.create_branch("Norte")
        sur, _ = await state.registry.create_branch("Sur")
        with pytest.raises(Conflict):
            await state.registry.update_branch(sur.id, name="Norte")

    @pytest.mark.asyncio
    async def test_update_unknown(self, state):
        with pytest.raises(NotFound):
            await state.registry.update_branch("missing", name="X")

    @pytest.mark.asyncio
    async def test_delete_removes_edges(self, state):
        local = await state.current.get_info()
        branch, _ = await state.registry.create_branch("Norte", connected_ids=[local.id])
        await state.registry.drain()

        await state.registry.delete_branch(branch.id)

        with pytest.raises(NotFound):
            await state.registry.get_branch(branch.id)
        assert await state.registry.list_connections(local.id) == []


# ---------------------------------------------------------------------------
# connect / disconnect
# ---------------------------------------------------------------------------


class TestConnections:
    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, state):
        a, _ = await state.registry.create_branch("A")
        b, _ = await state.registry.create_branch("B")

        connection = await state.registry.connect(a.id, b.id)
        assert (connection.source_id, connection.target_id) == (a.id, b.id)
        assert [p.id for p in await state.registry.peers_of(b.id)] == [a.id]

        # Edges are undirected: either end can remove them.
        await state.registry.disconnect(b.id, a.id)
        assert await state.registry.list_connections(a.id) == []

    @pytest.mark.asyncio
    async def test_connect_to_self(self, state):
        a, _ = await state.registry.create_branch("A")
        with pytest.raises(InvalidInput):
            await state.registry.connect(a.id, a.id)

    @pytest.mark.asyncio
    async def test_connect_unknown(self, state):
        a, _ = await state.registry.create_branch("A")
        with pytest.raises(NotFound):
            await state.registry.connect(a.id, "missing")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reverse", [False, True])
    async def test_existing_edge_in_either_direction(self, state, reverse):
        a, _ = await state.registry.create_branch("A")
        b, _ = await state.registry.create_branch("B")
        await state.registry.connect(a.id, b.id)
        with pytest.raises(Conflict):
            if reverse:
                await state.registry.connect(b.id, a.id)
            else:
                await state.registry.connect(a.id, b.id)

    @pytest.mark.asyncio
    async def test_disconnect_missing_edge(self, state):
        a, _ = await state.registry.create_branch("A")
        b, _ = await state.registry.create_branch("B")
        with pytest.raises(NotFound):
            await state.registry.disconnect(a.id, b.id)


# ---------------------------------------------------------------------------
# upsert / notification
# ---------------------------------------------------------------------------


class TestUpsert:
    @pytest.mark.asyncio
    async def test_insert_then_update_by_id(self, state):
        await state.registry.receive_notification(
            "peer-1", "Remote", "first", "Here", "http://remote.test",
        )
        await state.registry.receive_notification(
            "peer-1", "Remote Renamed", "second", "There", "http://remote2.test",
        )

        branch = await state.registry.get_branch("peer-1")
        assert branch.name == "Remote Renamed"
        assert branch.description == "second"
        assert branch.server_url == "http://remote2.test"
        assert len([b for b in await state.registry.list_branches() if b.id == "peer-1"]) == 1

    @pytest.mark.asyncio
    async def test_upsert_keeps_local_remote_url(self, state):
        await state.registry.upsert({"id": "peer-1", "name": "Remote"})
        await state.registry.update_branch("peer-1", remote_url="http://backup.test")
        await state.registry.upsert({"sucursalId": "peer-1", "name": "Remote"})
        assert (await state.registry.get_branch("peer-1")).remote_url == "http://backup.test"

    @pytest.mark.asyncio
    async def test_upsert_requires_id_and_name(self, state):
        with pytest.raises(InvalidInput):
            await state.registry.upsert({"name": "No id"})

    @pytest.mark.asyncio
    async def test_upsert_name_clash(self, state):
        await state.registry.create_branch("Norte")
        with pytest.raises(Conflict):
            await state.registry.upsert({"id": "other", "name": "Norte"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["../../escaped", "a\\b", ".."])
    async def test_upsert_rejects_path_like_names(self, state, name):
        with pytest.raises(InvalidInput, match="path separators"):
            await state.registry.upsert({"id": "evil", "name": name})


class TestNotification:
    @pytest.mark.asyncio
    async def test_peer_learns_about_new_branch(self, state, beta):
        beta_local = await beta.state.current.get_info()
        await state.registry.upsert(
            {"id": beta_local.id, "name": "Beta", "serverUrl": "http://beta.test"}
        )

        gamma, _ = await state.registry.create_branch(
            "Gamma", location="Centro", server_url="http://gamma.test",
            connected_ids=[beta_local.id],
        )
        await state.registry.drain()

        known = await beta.state.registry.get_branch(gamma.id)
        assert known.name == "Gamma"
        assert known.location == "Centro"
        assert known.server_url == "http://gamma.test"

    @pytest.mark.asyncio
    async def test_unreachable_peer_is_logged_not_raised(self, state):
        down, _ = await state.registry.create_branch("Down", server_url="http://down.test")

        gamma, _ = await state.registry.create_branch("Gamma", connected_ids=[down.id])
        await state.registry.drain()

        assert (await state.registry.get_branch(gamma.id)).name == "Gamma"
        logs, total = await state.error_log.list_logs(error_type=ErrorType.NETWORK_ERROR.value)
        assert total == 1
        assert "Down" in logs[0].description
        assert json.loads(logs[0].details)["type"] == "UpstreamUnavailable"

    @pytest.mark.asyncio
    async def test_peer_without_server_url_is_skipped(self, state, network):
        quiet, _ = await state.registry.create_branch("Quiet")
        await state.registry.create_branch("Gamma", connected_ids=[quiet.id])
        await state.registry.drain()
        assert not any("notify-new" in str(r.url) for r in network.requests)
