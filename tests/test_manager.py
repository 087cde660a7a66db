"""Tests for the connection manager."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import closed_uris
from polyglot_lsp.config import LspSettings, ServerSpec
from polyglot_lsp.connection import ConnectionState
from polyglot_lsp.document import EditorState, VirtualDocument
from polyglot_lsp.exceptions import UnknownServerError
from polyglot_lsp.manager import DocumentConnectionManager


def _settings(**kwargs):
    return LspSettings(
        servers={
            "pyright": ServerSpec("pyright", ("pyright-langserver", "--stdio"), ("python",), rank=60),
            "pylsp": ServerSpec("pylsp", ("pylsp",), ("python",)),
            "marksman": ServerSpec("marksman", ("marksman", "server"), ("markdown",)),
        },
        **kwargs,
    )


def _document(name, text="x = 1", language="python"):
    document = VirtualDocument(language, f"/test/{name}", "py", has_lsp_supported_file=True)
    document.update([EditorState("editor", text)])
    return document


@pytest.fixture
def manager(client_factory):
    return DocumentConnectionManager(_settings(), client_factory=client_factory)


class TestConnect:
    """Test attaching documents."""

    @pytest.mark.asyncio
    async def test_returns_connecting_connection(self, manager):
        connection = manager.connect(_document("a.py"))
        assert connection.server_id == "pyright"
        assert connection.state is ConnectionState.CONNECTING
        await manager.wait_started()
        assert connection.is_ready

    @pytest.mark.asyncio
    async def test_one_connection_for_many_documents(self, manager, client_factory):
        documents = [_document(f"{i}.py") for i in range(3)]
        connections = {id(manager.connect(d)) for d in documents}
        await manager.wait_started()
        assert len(connections) == 1
        assert len(client_factory.clients) == 1
        assert manager.connections[documents[0].uri].ref_count == 3

    @pytest.mark.asyncio
    async def test_no_server_for_language(self, manager):
        assert manager.connect(_document("a.jl", language="julia")) is None

    @pytest.mark.asyncio
    async def test_different_languages_different_servers(self, manager, client_factory):
        python = manager.connect(_document("a.py"))
        markdown = manager.connect(_document("a.md", language="markdown"))
        await manager.wait_started()
        assert python is not markdown
        assert markdown.server_id == "marksman"
        assert len(client_factory.clients) == 2

    @pytest.mark.asyncio
    async def test_connected_signal(self, manager):
        connected = MagicMock()
        manager.connected.connect(connected)
        connection = manager.connect(_document("a.py"))
        await manager.wait_started()
        connected.assert_called_once_with(connection)

    @pytest.mark.asyncio
    async def test_settings_propagate(self, client_factory):
        manager = DocumentConnectionManager(
            _settings(log_all_communication=True, incremental_sync=True), client_factory=client_factory
        )
        connection = manager.connect(_document("a.py"))
        assert connection.log_all_communication
        assert connection.incremental_sync


class TestReferenceCounting:
    """Test that connections stay warm."""

    @pytest.mark.asyncio
    async def test_unregister_keeps_connection_warm(self, manager):
        documents = [_document(f"{i}.py") for i in range(3)]
        for document in documents:
            manager.connect(document)
        await manager.wait_started()
        connection = manager.connections[documents[0].uri]
        for document in documents:
            manager.unregister_document(document)
        assert connection.ref_count == 0
        assert connection.is_ready
        assert manager.running() == [connection]
        assert manager.connect(_document("again.py")) is connection

    @pytest.mark.asyncio
    async def test_unregister_sends_did_close(self, manager, client_factory):
        document = _document("a.py")
        connection = manager.connect(document)
        await manager.wait_started()
        connection.send_open(document.document_info)
        manager.unregister_document(document)
        assert closed_uris(client_factory.clients[0]) == [document.uri]
        assert document.uri not in manager.connections
        assert document.uri not in manager.documents

    @pytest.mark.asyncio
    async def test_disconnect_closes(self, manager, client_factory):
        document = _document("a.py")
        connection = manager.connect(document)
        await manager.wait_started()
        disconnected = MagicMock()
        manager.disconnected.connect(disconnected)
        await manager.disconnect("pyright")
        assert connection.state is ConnectionState.CLOSED
        client_factory.clients[0].shutdown_async.assert_awaited_once()
        disconnected.assert_called_once_with("pyright")
        assert manager.running() == []
        assert document.uri not in manager.connections

    @pytest.mark.asyncio
    async def test_disconnect_closes_attached_documents(self, manager, client_factory):
        document = _document("a.py")
        connection = manager.connect(document)
        await manager.wait_started()
        connection.send_open(document.document_info)
        await manager.disconnect("pyright")
        assert connection.ref_count == 0
        assert closed_uris(client_factory.clients[0]) == [document.uri]
        assert document.uri not in manager.documents

    @pytest.mark.asyncio
    async def test_disconnect_unknown(self, manager):
        with pytest.raises(UnknownServerError):
            await manager.disconnect("nope")

    @pytest.mark.asyncio
    async def test_shutdown_server_closes_documents(self, manager, client_factory):
        document = _document("a.py")
        connection = manager.connect(document)
        await manager.wait_started()
        connection.send_open(document.document_info)
        await manager.shutdown_server("pyright")
        assert closed_uris(client_factory.clients[0]) == [document.uri]
        assert connection.state is ConnectionState.CLOSED


class TestFailures:
    """Test transport failures."""

    @pytest.mark.asyncio
    async def test_transport_error(self, manager, client_factory):
        closed = MagicMock()
        manager.closed.connect(closed)
        document = _document("a.py")
        original = client_factory.__call__

        def failing():
            client = original()
            client.start_io.side_effect = OSError("not installed")
            return client

        manager.client_factory = failing
        connection = manager.connect(document)
        await manager.wait_started()
        assert connection.state is ConnectionState.ERRORED
        closed.assert_called_once_with(connection)
        assert manager.running() == []

    @pytest.mark.asyncio
    async def test_shutdown_after_transport_error(self, manager, client_factory):
        original = client_factory.__call__

        def failing():
            client = original()
            client.start_io.side_effect = OSError("not installed")
            return client

        manager.client_factory = failing
        document = _document("a.py")
        connection = manager.connect(document)
        await manager.wait_started()
        assert connection.state is ConnectionState.ERRORED
        await manager.shutdown_server("pyright")
        assert connection.ref_count == 0
        assert document.uri not in manager.connections

    @pytest.mark.asyncio
    async def test_reconnect_after_error_creates_new_connection(self, manager, client_factory):
        original = client_factory.__call__
        attempts = []

        def flaky():
            client = original()
            if not attempts:
                client.start_io.side_effect = OSError("not yet")
            attempts.append(client)
            return client

        manager.client_factory = flaky
        first = manager.connect(_document("a.py"))
        await manager.wait_started()
        second = manager.connect(_document("b.py"))
        await manager.wait_started()
        assert first is not second
        assert second.is_ready


class TestConfiguration:
    """Test configuration pushes."""

    @pytest.mark.asyncio
    async def test_update_server_configurations(self, manager, client_factory):
        manager.connect(_document("a.py"))
        await manager.wait_started()
        manager.update_server_configurations({"pyright": {"python": {"analysis": {}}}})
        client = client_factory.clients[0]
        params = client.workspace_did_change_configuration.call_args[0][0]
        assert params.settings == {"python": {"analysis": {}}}
        assert manager.settings.server("pyright").configuration == {"python": {"analysis": {}}}
        client.shutdown_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_configuration_only_pushes_changes(self, manager, client_factory):
        manager.connect(_document("a.py"))
        await manager.wait_started()
        client = client_factory.clients[0]
        manager.update_configuration(_settings())
        client.workspace_did_change_configuration.assert_not_called()

        settings = _settings()
        settings.servers["pyright"] = ServerSpec(
            "pyright", ("pyright-langserver", "--stdio"), ("python",), rank=60, configuration={"x": 1}
        )
        manager.update_configuration(settings)
        assert client.workspace_did_change_configuration.call_args[0][0].settings == {"x": 1}

    @pytest.mark.asyncio
    async def test_configuration_change_during_handshake(self, manager, client_factory):
        gate = asyncio.Event()
        original = client_factory.__call__

        def gated():
            client = original()
            result = client.initialize_async.return_value

            async def initialize(params):
                await gate.wait()
                return result

            client.initialize_async = AsyncMock(side_effect=initialize)
            return client

        manager.client_factory = gated
        connection = manager.connect(_document("a.py"))
        await asyncio.sleep(0)
        client = client_factory.clients[0]
        client.initialize_async.assert_awaited_once()

        settings = _settings()
        settings.servers["pyright"] = ServerSpec(
            "pyright", ("pyright-langserver", "--stdio"), ("python",), rank=60, configuration={"x": 1}
        )
        manager.update_configuration(settings)
        assert connection.state is ConnectionState.CONNECTING
        client.workspace_did_change_configuration.assert_not_called()

        gate.set()
        await manager.wait_started()
        client.workspace_did_change_configuration.assert_called_once()
        assert client.workspace_did_change_configuration.call_args[0][0].settings == {"x": 1}

    @pytest.mark.asyncio
    async def test_update_logging(self, manager, client_factory):
        connection = manager.connect(_document("a.py"))
        await manager.wait_started()
        manager.update_logging(True, "messages")
        assert connection.log_all_communication
        client_factory.clients[0].protocol.notify.assert_called_once()


class TestIdleEviction:
    """Test optional eviction of unreferenced connections."""

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, manager):
        document = _document("a.py")
        manager.connect(document)
        await manager.wait_started()
        manager.unregister_document(document)
        assert await manager.evict_idle(now=1e12) == []

    @pytest.mark.asyncio
    async def test_evicts_unreferenced(self, client_factory):
        manager = DocumentConnectionManager(_settings(idle_timeout=10), client_factory=client_factory)
        kept, dropped = _document("a.py"), _document("b.md", language="markdown")
        manager.connect(kept)
        manager.connect(dropped)
        await manager.wait_started()
        manager.unregister_document(dropped)
        assert await manager.evict_idle(now=1e12) == ["marksman"]
        assert [c.server_id for c in manager.running()] == ["pyright"]
