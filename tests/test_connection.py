"""Tests for a single language server connection."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from lsprotocol import types as lsp

from conftest import changed_texts, make_client, opened_uris
from polyglot_lsp.config import ServerSpec
from polyglot_lsp.connection import (
    ConnectionState,
    LspConnection,
    StdioTransport,
    TcpTransport,
    default_client_capabilities,
    negotiate_features,
    server_sync_kind,
    text_delta,
)
from polyglot_lsp.document import DocumentInfo
from polyglot_lsp.exceptions import ConnectionNotReadyError, UnknownServerError

SPEC = ServerSpec("pyright", ("pyright-langserver", "--stdio"), ("python",))


def _info(text="x = 1", version=1, uri="file:///test/a.py"):
    return DocumentInfo(uri=uri, language_id="python", version=version, text=text)


def _connection(client=None, spec=SPEC, **kwargs):
    client = client or make_client()
    connection = LspConnection(spec, "python", StdioTransport(), client_factory=lambda: client, **kwargs)
    return connection, client


class TestHelpers:
    """Test capability negotiation and deltas."""

    def test_negotiate_intersection(self):
        server = lsp.ServerCapabilities(hover_provider=True, rename_provider=True)
        features = negotiate_features(default_client_capabilities(), server)
        # rename is not advertised by the client
        assert features == frozenset({"hover"})

    def test_sync_kind_from_options(self):
        server = lsp.ServerCapabilities(
            text_document_sync=lsp.TextDocumentSyncOptions(change=lsp.TextDocumentSyncKind.Incremental)
        )
        assert server_sync_kind(server) == lsp.TextDocumentSyncKind.Incremental

    def test_sync_kind_from_kind(self):
        server = lsp.ServerCapabilities(text_document_sync=lsp.TextDocumentSyncKind.Full)
        assert server_sync_kind(server) == lsp.TextDocumentSyncKind.Full

    def test_delta_insertion(self):
        change = text_delta("x = 1\ny", "x = 12\ny")
        assert change.range == lsp.Range(
            start=lsp.Position(line=0, character=5), end=lsp.Position(line=0, character=5)
        )
        assert change.text == "2"

    def test_delta_deletion_across_lines(self):
        change = text_delta("a\nb\nc", "a\nc")
        assert change.text == ""
        assert change.range.end.line - change.range.start.line == 1

    def test_delta_identical(self):
        change = text_delta("abc", "abc")
        assert change.text == ""
        assert change.range.start == change.range.end


class TestLifecycle:
    """Test start, failure and close."""

    @pytest.mark.asyncio
    async def test_start_ready(self):
        connection, client = _connection()
        ready = MagicMock()
        connection.ready.connect(ready)
        await connection.start()
        assert connection.state is ConnectionState.READY
        client.start_io.assert_awaited_once_with("pyright-langserver", "--stdio")
        client.initialize_async.assert_awaited_once()
        client.initialized.assert_called_once()
        ready.assert_called_once_with(connection)
        assert connection.features == frozenset({"hover"})

    @pytest.mark.asyncio
    async def test_initialize_params(self):
        connection, client = _connection(root_uri="file:///test")
        await connection.start()
        params = client.initialize_async.call_args[0][0]
        assert params.root_uri == "file:///test"
        assert params.workspace_folders[0].uri == "file:///test"
        assert params.capabilities.text_document.synchronization.did_save

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        client = make_client()
        client.start_io.side_effect = OSError("no such file")
        connection, _ = _connection(client)
        closed = MagicMock()
        connection.closed.connect(closed)
        await connection.start()
        assert connection.state is ConnectionState.ERRORED
        closed.assert_called_once_with(connection)
        client.initialize_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_handshake_failure(self):
        client = make_client()
        client.initialize_async.side_effect = RuntimeError("bad handshake")
        connection, _ = _connection(client)
        closed = MagicMock()
        connection.closed.connect(closed)
        await connection.start()
        assert connection.state is ConnectionState.ERRORED
        closed.assert_called_once()
        client.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close(self):
        connection, client = _connection()
        await connection.start()
        closed = MagicMock()
        connection.closed.connect(closed)
        await connection.close()
        assert connection.state is ConnectionState.CLOSED
        client.shutdown_async.assert_awaited_once_with(None)
        client.exit.assert_called_once_with(None)
        client.stop.assert_awaited_once()
        closed.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_tolerates_shutdown_error(self):
        client = make_client()
        client.shutdown_async.side_effect = RuntimeError("gone")
        connection, _ = _connection(client)
        await connection.start()
        await connection.close()
        assert connection.state is ConnectionState.CLOSED
        client.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_configuration_pushed_on_start(self):
        spec = ServerSpec("pyright", ("pyright-langserver",), ("python",), configuration={"python": {}})
        connection, client = _connection(spec=spec)
        await connection.start()
        params = client.workspace_did_change_configuration.call_args[0][0]
        assert params.settings == {"python": {}}

    @pytest.mark.asyncio
    async def test_configuration_not_pushed_before_ready(self):
        spec = ServerSpec("pyright", ("pyright-langserver",), ("python",), configuration={"python": {}})
        connection, client = _connection(spec=spec)
        connection.update_configuration({"python": {"x": 1}})
        client.workspace_did_change_configuration.assert_not_called()
        await connection.start()
        client.workspace_did_change_configuration.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_during_handshake(self):
        client = make_client()
        gate = asyncio.Event()

        async def initialize(params):
            await gate.wait()
            raise RuntimeError("connection closed")

        client.initialize_async = AsyncMock(side_effect=initialize)
        connection, _ = _connection(client)
        closed = MagicMock()
        connection.closed.connect(closed)
        task = asyncio.ensure_future(connection.start())
        await asyncio.sleep(0)
        await connection.close()
        gate.set()
        await task
        assert connection.state is ConnectionState.CLOSED
        closed.assert_called_once_with(connection)

    @pytest.mark.asyncio
    async def test_close_while_transport_opens_stops_process(self):
        client = make_client()
        gate = asyncio.Event()

        async def start_io(*args):
            await gate.wait()

        client.start_io = AsyncMock(side_effect=start_io)
        connection, _ = _connection(client)
        task = asyncio.ensure_future(connection.start())
        await asyncio.sleep(0)
        await connection.close()
        stops_at_close = client.stop.await_count
        gate.set()
        await task
        assert client.stop.await_count == stops_at_close + 1
        client.initialize_async.assert_not_awaited()
        assert connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_stdio_without_command(self):
        with pytest.raises(UnknownServerError):
            await StdioTransport().open(make_client(), ServerSpec("empty"), "python")

    @pytest.mark.asyncio
    async def test_tcp_transport(self):
        client = make_client()
        await TcpTransport({"pyright": ("127.0.0.1", 2087)}).open(client, SPEC, "python")
        client.start_tcp.assert_awaited_once_with("127.0.0.1", 2087)

    @pytest.mark.asyncio
    async def test_tcp_unknown_server(self):
        with pytest.raises(UnknownServerError):
            await TcpTransport({}).open(make_client(), SPEC, "python")


class TestDocumentSync:
    """Test open/change/save/close notifications."""

    @pytest.mark.asyncio
    async def test_no_open_before_ready(self):
        connection, client = _connection()
        assert not connection.send_open(_info())
        client.text_document_did_open.assert_not_called()

    @pytest.mark.asyncio
    async def test_open_when_ready_sends_current_text(self):
        connection, client = _connection()
        text = {"value": "x = 1"}
        connection.send_open_when_ready(lambda: _info(text["value"]))
        text["value"] = "x = 2"
        await connection.start()
        item = client.text_document_did_open.call_args[0][0].text_document
        assert item.text == "x = 2"
        assert connection.is_open(item.uri)

    @pytest.mark.asyncio
    async def test_open_once(self):
        connection, client = _connection()
        await connection.start()
        connection.send_open(_info())
        connection.send_open(_info())
        assert opened_uris(client) == ["file:///test/a.py"]

    @pytest.mark.asyncio
    async def test_change_not_sent_before_ready(self):
        connection, client = _connection()
        assert not connection.send_full_text_change(_info())
        client.text_document_did_change.assert_not_called()

    @pytest.mark.asyncio
    async def test_change_opens_unopened_document(self):
        connection, client = _connection()
        await connection.start()
        connection.send_full_text_change(_info())
        client.text_document_did_change.assert_not_called()
        assert opened_uris(client) == ["file:///test/a.py"]

    @pytest.mark.asyncio
    async def test_full_change(self):
        connection, client = _connection()
        await connection.start()
        connection.send_open(_info("x = 1", 1))
        connection.send_change(_info("x = 2", 2))
        params = client.text_document_did_change.call_args[0][0]
        assert params.text_document.version == 2
        assert isinstance(params.content_changes[0], lsp.TextDocumentContentChangeWholeDocument)
        assert changed_texts(client) == ["x = 2"]

    @pytest.mark.asyncio
    async def test_incremental_change(self):
        capabilities = lsp.ServerCapabilities(text_document_sync=lsp.TextDocumentSyncKind.Incremental)
        connection, client = _connection(make_client(capabilities), incremental_sync=True)
        await connection.start()
        connection.send_open(_info("x = 1", 1))
        connection.send_change(_info("x = 12", 2))
        change = client.text_document_did_change.call_args[0][0].content_changes[0]
        assert isinstance(change, lsp.TextDocumentContentChangePartial)
        assert change.text == "2"

    @pytest.mark.asyncio
    async def test_incremental_falls_back_to_full(self):
        connection, client = _connection(incremental_sync=True)
        await connection.start()
        connection.send_open(_info("x = 1", 1))
        connection.send_change(_info("x = 12", 2))
        change = client.text_document_did_change.call_args[0][0].content_changes[0]
        assert isinstance(change, lsp.TextDocumentContentChangeWholeDocument)

    @pytest.mark.asyncio
    async def test_save_only_opened(self):
        connection, client = _connection()
        await connection.start()
        assert not connection.send_saved(_info())
        connection.send_open(_info())
        assert connection.send_saved(_info())
        params = client.text_document_did_save.call_args[0][0]
        assert params.text is None

    @pytest.mark.asyncio
    async def test_save_includes_text_when_asked(self):
        capabilities = lsp.ServerCapabilities(
            text_document_sync=lsp.TextDocumentSyncOptions(
                change=lsp.TextDocumentSyncKind.Full, save=lsp.SaveOptions(include_text=True)
            )
        )
        connection, client = _connection(make_client(capabilities))
        await connection.start()
        connection.send_open(_info("x = 1"))
        connection.send_saved(_info("x = 1"))
        assert client.text_document_did_save.call_args[0][0].text == "x = 1"

    @pytest.mark.asyncio
    async def test_close_document(self):
        connection, client = _connection()
        await connection.start()
        connection.send_open(_info())
        assert connection.send_close("file:///test/a.py")
        assert not connection.is_open("file:///test/a.py")
        assert not connection.send_close("file:///test/a.py")
        client.text_document_did_close.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_cancels_pending_open(self):
        connection, client = _connection()
        connection.send_open_when_ready(_info())
        connection.send_close("file:///test/a.py")
        await connection.start()
        client.text_document_did_open.assert_not_called()

    @pytest.mark.asyncio
    async def test_log_all_communication(self, caplog):
        connection, client = _connection(log_all_communication=True)
        await connection.start()
        with caplog.at_level(logging.DEBUG, logger="polyglot_lsp.connection"):
            connection.send_open(_info())
        assert "textDocument/didOpen" in caplog.text


class TestServerMessages:
    """Test handlers for server to client messages."""

    @pytest.mark.asyncio
    async def test_log_message_level(self, caplog):
        connection, client = _connection()
        await connection.start()
        handler = client.handlers[lsp.WINDOW_LOG_MESSAGE]
        with caplog.at_level(logging.DEBUG, logger="polyglot_lsp.connection"):
            handler(lsp.LogMessageParams(type=lsp.MessageType.Warning, message="careful"))
        record = [r for r in caplog.records if "careful" in r.getMessage()][0]
        assert record.levelno == logging.WARNING
        assert "[pyright]" in record.getMessage()

    @pytest.mark.asyncio
    async def test_diagnostics_forwarded(self):
        connection, client = _connection()
        await connection.start()
        received = MagicMock()
        connection.diagnostics.connect(received)
        params = lsp.PublishDiagnosticsParams(uri="file:///test/a.py", diagnostics=[])
        client.handlers[lsp.TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS](params)
        received.assert_called_once_with(params)

    @pytest.mark.asyncio
    async def test_log_trace_forwarded(self):
        connection, client = _connection()
        await connection.start()
        received = MagicMock()
        connection.log_trace.connect(received)
        client.handlers[lsp.LOG_TRACE](lsp.LogTraceParams(message="trace"))
        received.assert_called_once()

    @pytest.mark.asyncio
    async def test_show_message_request_without_handler(self):
        connection, client = _connection()
        await connection.start()
        params = lsp.ShowMessageRequestParams(
            type=lsp.MessageType.Info, message="Pick", actions=[lsp.MessageActionItem(title="Yes")]
        )
        assert await client.handlers[lsp.WINDOW_SHOW_MESSAGE_REQUEST](params) is None

    @pytest.mark.asyncio
    async def test_show_message_request_choice(self):
        connection, client = _connection()
        await connection.start()
        connection.show_message_request_handler = AsyncMock(return_value=lsp.MessageActionItem(title="Yes"))
        params = lsp.ShowMessageRequestParams(
            type=lsp.MessageType.Info,
            message="Pick",
            actions=[lsp.MessageActionItem(title="Yes"), lsp.MessageActionItem(title="No")],
        )
        result = await client.handlers[lsp.WINDOW_SHOW_MESSAGE_REQUEST](params)
        assert result == lsp.MessageActionItem(title="Yes")

    @pytest.mark.asyncio
    async def test_show_message_request_dismissed(self):
        connection, client = _connection()
        await connection.start()
        connection.show_message_request_handler = AsyncMock(return_value=lsp.MessageActionItem(title="Maybe"))
        params = lsp.ShowMessageRequestParams(
            type=lsp.MessageType.Info, message="Pick", actions=[lsp.MessageActionItem(title="Yes")]
        )
        assert await client.handlers[lsp.WINDOW_SHOW_MESSAGE_REQUEST](params) is None

    @pytest.mark.asyncio
    async def test_workspace_configuration(self):
        spec = ServerSpec("pyright", ("x",), ("python",), configuration={"python": {"analysis": {"a": 1}}})
        connection, client = _connection(spec=spec)
        await connection.start()
        params = lsp.ConfigurationParams(
            items=[lsp.ConfigurationItem(section="python.analysis"), lsp.ConfigurationItem(section="other")]
        )
        assert client.handlers[lsp.WORKSPACE_CONFIGURATION](params) == [{"a": 1}, {}]


class TestRequests:
    """Test requests and settings changes."""

    @pytest.mark.asyncio
    async def test_request_not_ready(self):
        connection, _ = _connection()
        with pytest.raises(ConnectionNotReadyError):
            await connection.send_request(lsp.TEXT_DOCUMENT_HOVER, None)

    @pytest.mark.asyncio
    async def test_request_error_propagates(self):
        client = make_client()
        client.protocol.send_request_async.side_effect = RuntimeError("server error")
        connection, _ = _connection(client)
        await connection.start()
        with pytest.raises(RuntimeError):
            await connection.send_request(lsp.TEXT_DOCUMENT_HOVER, None)
        assert connection.is_ready

    @pytest.mark.asyncio
    async def test_set_trace(self):
        connection, client = _connection()
        await connection.start()
        connection.set_trace(lsp.TraceValue.Verbose)
        method, params = client.protocol.notify.call_args[0]
        assert method == lsp.SET_TRACE
        assert params.value == lsp.TraceValue.Verbose
