"""
Connections to language servers.

An ``LspConnection`` wraps one pygls ``LanguageClient`` talking to one
server for one language. It performs the initialize handshake, keeps
track of which documents the server has open, sends the document
synchronization notifications and forwards server notifications as
signals. It never opens a socket or spawns a process itself; that is
delegated to a ``TransportFactory``.
"""

from __future__ import annotations

import logging
import os
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from lsprotocol import types as lsp
from pygls.lsp.client import LanguageClient

from polyglot_lsp import __version__
from polyglot_lsp.config import ServerSpec
from polyglot_lsp.document import DocumentInfo
from polyglot_lsp.exceptions import ConnectionNotReadyError, UnknownServerError
from polyglot_lsp.positioning import position_at_offset
from polyglot_lsp.signals import Signal

logger = logging.getLogger(__name__)

ShowMessageRequestHandler = Callable[
    [lsp.ShowMessageRequestParams], Awaitable[Optional[lsp.MessageActionItem]]
]
DocumentInfoSource = Union[DocumentInfo, Callable[[], DocumentInfo]]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"


# (client text document capability, server capability) pairs used to work
# out which features both sides support.
_FEATURES: dict[str, str] = {
    "completion": "completion_provider",
    "hover": "hover_provider",
    "signature_help": "signature_help_provider",
    "definition": "definition_provider",
    "references": "references_provider",
    "document_symbol": "document_symbol_provider",
    "formatting": "document_formatting_provider",
    "rename": "rename_provider",
    "code_action": "code_action_provider",
    "folding_range": "folding_range_provider",
    "semantic_tokens": "semantic_tokens_provider",
    "inlay_hint": "inlay_hint_provider",
}


def default_client_capabilities() -> lsp.ClientCapabilities:
    """Capabilities advertised for document synchronization and the
    features whose results can be mapped back to host editors."""
    return lsp.ClientCapabilities(
        text_document=lsp.TextDocumentClientCapabilities(
            synchronization=lsp.TextDocumentSyncClientCapabilities(
                dynamic_registration=True,
                will_save=False,
                did_save=True,
                will_save_wait_until=False,
            ),
            completion=lsp.CompletionClientCapabilities(
                completion_item=lsp.ClientCompletionItemOptions(snippet_support=False),
            ),
            hover=lsp.HoverClientCapabilities(
                content_format=[lsp.MarkupKind.Markdown, lsp.MarkupKind.PlainText],
            ),
            signature_help=lsp.SignatureHelpClientCapabilities(),
            definition=lsp.DefinitionClientCapabilities(),
            references=lsp.ReferenceClientCapabilities(),
            document_symbol=lsp.DocumentSymbolClientCapabilities(),
            publish_diagnostics=lsp.PublishDiagnosticsClientCapabilities(),
        ),
        workspace=lsp.WorkspaceClientCapabilities(
            configuration=True,
            did_change_configuration=lsp.DidChangeConfigurationClientCapabilities(
                dynamic_registration=True,
            ),
        ),
        window=lsp.WindowClientCapabilities(
            work_done_progress=True,
            show_message=lsp.ShowMessageRequestClientCapabilities(),
        ),
    )


def negotiate_features(
    client: lsp.ClientCapabilities, server: lsp.ServerCapabilities
) -> frozenset[str]:
    """Features advertised by the client *and* provided by the server."""
    text_document = client.text_document
    features = set()
    for name, provider in _FEATURES.items():
        if text_document is None or getattr(text_document, name, None) is None:
            continue
        if getattr(server, provider, None):
            features.add(name)
    return frozenset(features)


def server_sync_kind(server: lsp.ServerCapabilities | None) -> lsp.TextDocumentSyncKind:
    if server is None:
        return lsp.TextDocumentSyncKind.Full
    sync = server.text_document_sync
    if isinstance(sync, lsp.TextDocumentSyncOptions):
        return sync.change if sync.change is not None else lsp.TextDocumentSyncKind.None_
    if sync is None:
        return lsp.TextDocumentSyncKind.None_
    return lsp.TextDocumentSyncKind(sync)


def text_delta(old: str, new: str) -> lsp.TextDocumentContentChangePartial:
    """Single range edit turning ``old`` into ``new``."""
    limit = min(len(old), len(new))
    prefix = 0
    while prefix < limit and old[prefix] == new[prefix]:
        prefix += 1
    suffix = 0
    while suffix < limit - prefix and old[-(suffix + 1)] == new[-(suffix + 1)]:
        suffix += 1
    return lsp.TextDocumentContentChangePartial(
        range=lsp.Range(
            start=position_at_offset(old, prefix),
            end=position_at_offset(old, len(old) - suffix),
        ),
        text=new[prefix:len(new) - suffix],
    )


class TransportFactory(Protocol):
    """Opens the transport of a client for a given server."""

    async def open(self, client: LanguageClient, spec: ServerSpec, language: str) -> None:
        ...


class StdioTransport:
    """Spawns the server command and talks to it over stdio."""

    async def open(self, client: LanguageClient, spec: ServerSpec, language: str) -> None:
        if not spec.command:
            raise UnknownServerError(f"No command configured for server '{spec.server_id}'")
        await client.start_io(*spec.command)


class TcpTransport:
    """Connects to already running servers over TCP."""

    def __init__(self, addresses: dict[str, tuple[str, int]]) -> None:
        self.addresses = addresses

    async def open(self, client: LanguageClient, spec: ServerSpec, language: str) -> None:
        address = self.addresses.get(spec.server_id)
        if address is None:
            raise UnknownServerError(f"No address configured for server '{spec.server_id}'")
        host, port = address
        await client.start_tcp(host, port)


class ConnectionClient(LanguageClient):
    """Language client reporting transport loss to its connection."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.on_exit: Callable[[str], None] | None = None

    async def server_exit(self, server: Any) -> None:
        if self.on_exit is not None:
            self.on_exit(f"server process exited ({getattr(server, 'returncode', None)})")

    def report_server_error(self, error: Exception, source: Any) -> None:
        logger.error(f"Server error: {error}")


def _default_client() -> LanguageClient:
    return ConnectionClient("polyglot-lsp", __version__)


class LspConnection:
    """One live connection to a language server for one language."""

    def __init__(
        self,
        spec: ServerSpec,
        language: str,
        transport: TransportFactory,
        capabilities: lsp.ClientCapabilities | None = None,
        root_uri: str | None = None,
        client_factory: Callable[[], LanguageClient] | None = None,
        log_all_communication: bool = False,
        trace: lsp.TraceValue = lsp.TraceValue.Off,
        incremental_sync: bool = False,
    ) -> None:
        self.spec = spec
        self.language = language
        self.capabilities = capabilities or default_client_capabilities()
        self.root_uri = root_uri
        self.log_all_communication = log_all_communication
        self.trace = trace
        self.incremental_sync = incremental_sync
        self.server_capabilities: lsp.ServerCapabilities | None = None
        self.features: frozenset[str] = frozenset()
        self.show_message_request_handler: ShowMessageRequestHandler | None = None

        self._transport = transport
        self._client_factory = client_factory or _default_client
        self._client: LanguageClient | None = None
        self._state = ConnectionState.CONNECTING
        self._open_documents: dict[str, str] = {}  # uri -> last text sent
        self._pending_open: dict[str, DocumentInfoSource] = {}
        self._attached: set[str] = set()
        self.last_used = time.monotonic()

        self.ready: Signal[LspConnection] = Signal("ready")
        self.closed: Signal[LspConnection] = Signal("closed")
        self.diagnostics: Signal[lsp.PublishDiagnosticsParams] = Signal("diagnostics")
        self.log_message: Signal[lsp.LogMessageParams] = Signal("log_message")
        self.log_trace: Signal[lsp.LogTraceParams] = Signal("log_trace")
        self.show_message: Signal[lsp.ShowMessageParams] = Signal("show_message")

    def __repr__(self) -> str:
        return f"LspConnection({self.server_id!r}, {self.language!r}, {self._state.value})"

    @property
    def server_id(self) -> str:
        return self.spec.server_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def is_alive(self) -> bool:
        return self._state in (ConnectionState.CONNECTING, ConnectionState.READY)

    @property
    def ref_count(self) -> int:
        return len(self._attached)

    @property
    def open_documents(self) -> frozenset[str]:
        return frozenset(self._open_documents)

    @property
    def sync_kind(self) -> lsp.TextDocumentSyncKind:
        return server_sync_kind(self.server_capabilities)

    def attach(self, uri: str) -> None:
        self._attached.add(uri)
        self.last_used = time.monotonic()

    def detach(self, uri: str) -> None:
        self._attached.discard(uri)
        self.last_used = time.monotonic()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the transport and run the initialize handshake.

        Failures leave the connection ERRORED and emit ``closed``; they are
        never raised to the caller.
        """
        client = self._client = self._client_factory()
        if isinstance(client, ConnectionClient):
            client.on_exit = self._on_transport_lost
        self._register_handlers(client)

        logger.info(f"Connecting to {self.server_id} for {self.language}")
        try:
            await self._transport.open(client, self.spec, self.language)
        except Exception as e:
            logger.error(f"Failed to start {self.server_id}: {e}")
            self._release_client(client)
            self._fail()
            return

        if self._state is not ConnectionState.CONNECTING:
            # closed while the transport was opening; the process may only exist now
            self._release_client(client)
            await self._stop_client(client)
            return

        workspace_folders = None
        if self.root_uri:
            workspace_folders = [lsp.WorkspaceFolder(uri=self.root_uri, name=self.root_uri.rsplit("/", 1)[-1])]
        try:
            result = await client.initialize_async(
                lsp.InitializeParams(
                    capabilities=self.capabilities,
                    process_id=os.getpid(),
                    client_info=lsp.ClientInfo(name="polyglot-lsp", version=__version__),
                    root_uri=self.root_uri,
                    workspace_folders=workspace_folders,
                    initialization_options=self.spec.initialization_options,
                    trace=self.trace,
                )
            )
        except Exception as e:
            logger.error(f"Initialization of {self.server_id} failed: {e}")
            self._release_client(client)
            await self._stop_client(client)
            self._fail()
            return

        if self._state is not ConnectionState.CONNECTING:
            self._release_client(client)
            await self._stop_client(client)
            return

        self.server_capabilities = result.capabilities
        self.features = negotiate_features(self.capabilities, result.capabilities)
        logger.info(f"{self.server_id} initialized: {getattr(result, 'server_info', None)}")

        client.initialized(lsp.InitializedParams())
        # settings that changed during the handshake are already on self.spec
        if self.spec.configuration:
            self._push_configuration(client, self.spec.configuration)

        self._state = ConnectionState.READY
        self.ready.emit(self)

        for uri, source in list(self._pending_open.items()):
            del self._pending_open[uri]
            self.send_open(source() if callable(source) else source)

    async def close(self) -> None:
        """Shut the server down and close the transport."""
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        was_alive = self.is_alive
        self._state = ConnectionState.CLOSING
        self._pending_open.clear()
        if was_alive and self._client is not None:
            client, self._client = self._client, None
            await self._stop_client(client)
        self._open_documents.clear()
        self._state = ConnectionState.CLOSED
        self.closed.emit(self)

    def _release_client(self, client: LanguageClient) -> None:
        if self._client is client:
            self._client = None

    async def _stop_client(self, client: LanguageClient) -> None:
        try:
            await client.shutdown_async(None)
            client.exit(None)
        except Exception as e:
            logger.debug(f"Error during shutdown of {self.server_id}: {e}")
        try:
            await client.stop()
        except Exception as e:
            logger.debug(f"Error stopping client of {self.server_id}: {e}")

    def _fail(self) -> None:
        # a close() that is already under way wins
        if not self.is_alive:
            return
        self._state = ConnectionState.ERRORED
        self._pending_open.clear()
        self._open_documents.clear()
        self.closed.emit(self)

    def _on_transport_lost(self, reason: str) -> None:
        if not self.is_alive:
            return
        logger.warning(f"Lost connection to {self.server_id}: {reason}")
        self._client = None
        self._fail()

    # ------------------------------------------------------------------
    # Server -> client
    # ------------------------------------------------------------------

    def _register_handlers(self, client: LanguageClient) -> None:
        @client.feature(lsp.TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS)
        def on_publish_diagnostics(params: lsp.PublishDiagnosticsParams) -> None:
            self.diagnostics.emit(params)

        @client.feature(lsp.WINDOW_LOG_MESSAGE)
        def on_log_message(params: lsp.LogMessageParams) -> None:
            self._handle_log_message(params)

        @client.feature(lsp.LOG_TRACE)
        def on_log_trace(params: lsp.LogTraceParams) -> None:
            self.log_trace.emit(params)

        @client.feature(lsp.WINDOW_SHOW_MESSAGE)
        def on_show_message(params: lsp.ShowMessageParams) -> None:
            self.show_message.emit(params)

        @client.feature(lsp.WINDOW_SHOW_MESSAGE_REQUEST)
        async def on_show_message_request(
            params: lsp.ShowMessageRequestParams,
        ) -> lsp.MessageActionItem | None:
            return await self._handle_show_message_request(params)

        @client.feature(lsp.WORKSPACE_CONFIGURATION)
        def on_workspace_configuration(params: lsp.ConfigurationParams) -> list[Any]:
            return self._resolve_configuration(params)

        @client.feature(lsp.WINDOW_WORK_DONE_PROGRESS_CREATE)
        def on_work_done_progress_create(params: lsp.WorkDoneProgressCreateParams) -> None:
            return None

    def _handle_log_message(self, params: lsp.LogMessageParams) -> None:
        level_map = {
            lsp.MessageType.Error: logging.ERROR,
            lsp.MessageType.Warning: logging.WARNING,
            lsp.MessageType.Info: logging.INFO,
            lsp.MessageType.Log: logging.DEBUG,
            lsp.MessageType.Debug: logging.DEBUG,
        }
        level = level_map.get(params.type, logging.DEBUG)
        logger.log(level, f"[{self.server_id}] {params.message}")
        self.log_message.emit(params)

    async def _handle_show_message_request(
        self, params: lsp.ShowMessageRequestParams
    ) -> lsp.MessageActionItem | None:
        """Ask the handler; anything but one of the offered actions is ``None``."""
        if self.show_message_request_handler is None:
            return None
        try:
            choice = await self.show_message_request_handler(params)
        except Exception as e:
            logger.warning(f"showMessageRequest handler failed: {e}")
            return None
        if choice is None or not params.actions:
            return None
        for action in params.actions:
            if action.title == choice.title:
                return action
        return None

    def _resolve_configuration(self, params: lsp.ConfigurationParams) -> list[Any]:
        return [self.spec.resolve_section(item.section) for item in params.items]

    # ------------------------------------------------------------------
    # Client -> server
    # ------------------------------------------------------------------

    def _log_send(self, method: str, uri: str, version: int | None = None) -> None:
        if self.log_all_communication:
            logger.debug(f"[{self.server_id}] -> {method} {uri} v{version}")

    def is_open(self, uri: str) -> bool:
        return uri in self._open_documents

    def send_open(self, info: DocumentInfo) -> bool:
        if not self.is_ready or self._client is None:
            logger.debug(f"Not sending didOpen for {info.uri}: {self.server_id} not ready")
            return False
        if info.uri in self._open_documents:
            return False
        self._log_send(lsp.TEXT_DOCUMENT_DID_OPEN, info.uri, info.version)
        self._client.text_document_did_open(
            lsp.DidOpenTextDocumentParams(text_document=info.text_document_item())
        )
        self._open_documents[info.uri] = info.text
        self.last_used = time.monotonic()
        return True

    def send_open_when_ready(self, source: DocumentInfoSource) -> None:
        """Open now if ready, otherwise once ``ready`` fires.

        ``source`` may be a callable so the text sent is current at open time.
        """
        if self.is_ready:
            self.send_open(source() if callable(source) else source)
            return
        if not self.is_alive:
            return
        info = source() if callable(source) else source
        self._pending_open[info.uri] = source

    def send_full_text_change(self, info: DocumentInfo) -> bool:
        """Send ``didChange`` carrying the whole text."""
        if not self.is_ready or self._client is None:
            logger.debug(f"Skipping didChange for {info.uri}: {self.server_id} not ready")
            return False
        if info.uri not in self._open_documents:
            return self.send_open(info)
        self._log_send(lsp.TEXT_DOCUMENT_DID_CHANGE, info.uri, info.version)
        self._client.text_document_did_change(
            lsp.DidChangeTextDocumentParams(
                text_document=info.versioned_identifier(),
                content_changes=[lsp.TextDocumentContentChangeWholeDocument(text=info.text)],
            )
        )
        self._open_documents[info.uri] = info.text
        self.last_used = time.monotonic()
        return True

    def send_change(self, info: DocumentInfo) -> bool:
        """Send ``didChange``, as a range delta when both sides allow it."""
        if (
            not self.incremental_sync
            or self.sync_kind != lsp.TextDocumentSyncKind.Incremental
            or info.uri not in self._open_documents
            or not self.is_ready
            or self._client is None
        ):
            return self.send_full_text_change(info)
        previous = self._open_documents[info.uri]
        self._log_send(lsp.TEXT_DOCUMENT_DID_CHANGE, info.uri, info.version)
        self._client.text_document_did_change(
            lsp.DidChangeTextDocumentParams(
                text_document=info.versioned_identifier(),
                content_changes=[text_delta(previous, info.text)],
            )
        )
        self._open_documents[info.uri] = info.text
        self.last_used = time.monotonic()
        return True

    def send_saved(self, info: DocumentInfo) -> bool:
        """Send ``didSave``; never for a document the server has not opened."""
        if not self.is_ready or self._client is None or info.uri not in self._open_documents:
            return False
        include_text = False
        sync = self.server_capabilities.text_document_sync if self.server_capabilities else None
        if isinstance(sync, lsp.TextDocumentSyncOptions) and isinstance(sync.save, lsp.SaveOptions):
            include_text = bool(sync.save.include_text)
        self._log_send(lsp.TEXT_DOCUMENT_DID_SAVE, info.uri, info.version)
        self._client.text_document_did_save(
            lsp.DidSaveTextDocumentParams(
                text_document=lsp.TextDocumentIdentifier(uri=info.uri),
                text=info.text if include_text else None,
            )
        )
        return True

    def send_close(self, uri: str) -> bool:
        self._pending_open.pop(uri, None)
        if uri not in self._open_documents:
            return False
        del self._open_documents[uri]
        if not self.is_ready or self._client is None:
            return False
        self._log_send(lsp.TEXT_DOCUMENT_DID_CLOSE, uri)
        self._client.text_document_did_close(
            lsp.DidCloseTextDocumentParams(text_document=lsp.TextDocumentIdentifier(uri=uri))
        )
        return True

    def update_configuration(self, settings: Any) -> None:
        """Push ``settings``; before READY ``start()`` sends ``spec.configuration``."""
        if not self.is_ready or self._client is None:
            return
        self._push_configuration(self._client, settings)

    def _push_configuration(self, client: LanguageClient, settings: Any) -> None:
        try:
            client.workspace_did_change_configuration(
                lsp.DidChangeConfigurationParams(settings=settings)
            )
        except Exception as e:
            logger.debug(f"Failed to push configuration to {self.server_id}: {e}")

    def set_trace(self, value: lsp.TraceValue) -> None:
        self.trace = value
        if not self.is_ready or self._client is None:
            return
        self._client.protocol.notify(lsp.SET_TRACE, lsp.SetTraceParams(value=value))

    async def send_request(self, method: str, params: Any) -> Any:
        """Send a request; protocol errors propagate to the caller."""
        if not self.is_ready or self._client is None:
            raise ConnectionNotReadyError(f"{self.server_id} is {self._state.value}")
        self.last_used = time.monotonic()
        return await self._client.protocol.send_request_async(method, params)
