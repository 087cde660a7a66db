"""
Connection manager.

Keeps at most one live ``LspConnection`` per server id and multiplexes it
across every virtual document of the languages that server handles.
Documents attach and detach; a connection whose last document detached
stays warm until ``disconnect`` (or idle eviction, when configured).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable

from lsprotocol import types as lsp
from pygls.lsp.client import LanguageClient

from polyglot_lsp.config import LspSettings, ServerSpec
from polyglot_lsp.connection import LspConnection, StdioTransport, TransportFactory
from polyglot_lsp.document import VirtualDocument
from polyglot_lsp.exceptions import UnknownServerError
from polyglot_lsp.signals import Signal

logger = logging.getLogger(__name__)


class DocumentConnectionManager:
    """Owns the connections of a session and the document -> connection map."""

    def __init__(
        self,
        settings: LspSettings | None = None,
        transport: TransportFactory | None = None,
        client_factory: Callable[[], LanguageClient] | None = None,
        root_uri: str | None = None,
    ) -> None:
        self.settings = settings or LspSettings()
        self.transport = transport or StdioTransport()
        self.client_factory = client_factory
        self.root_uri = root_uri

        # server id -> connection
        self._connections: dict[str, LspConnection] = {}
        # document uri -> connection / document
        self.connections: dict[str, LspConnection] = {}
        self.documents: dict[str, VirtualDocument] = {}
        self._starting: set[asyncio.Task[None]] = set()

        self.connected: Signal[LspConnection] = Signal("connected")
        self.disconnected: Signal[str] = Signal("disconnected")
        self.closed: Signal[LspConnection] = Signal("closed")
        self.documents_changed: Signal[dict[str, VirtualDocument]] = Signal("documents_changed")

    def connection_for_server(self, server_id: str) -> LspConnection | None:
        return self._connections.get(server_id)

    def running(self) -> list[LspConnection]:
        """Connections that are connecting or ready, by server id."""
        return [c for _, c in sorted(self._connections.items()) if c.is_alive]

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    def connect(
        self,
        virtual_document: VirtualDocument,
        language: str | None = None,
        capabilities: lsp.ClientCapabilities | None = None,
    ) -> LspConnection | None:
        """Attach a document to the connection for its language.

        The connection is returned straight away, possibly still
        connecting; ``None`` means no server is configured for the language.
        Must be called with a running event loop.
        """
        language = (language or virtual_document.language).lower()
        spec = self.settings.solve_server(language)
        if spec is None:
            logger.debug(f"No language server configured for {language}")
            return None

        connection = self._connections.get(spec.server_id)
        if connection is None or not connection.is_alive:
            connection = self._create_connection(spec, language, capabilities)

        previous = self.connections.get(virtual_document.uri)
        if previous is not None and previous is not connection:
            previous.detach(virtual_document.uri)
        connection.attach(virtual_document.uri)
        self.connections[virtual_document.uri] = connection
        self.documents[virtual_document.uri] = virtual_document
        self.documents_changed.emit(self.documents)
        return connection

    def _create_connection(
        self, spec: ServerSpec, language: str, capabilities: lsp.ClientCapabilities | None
    ) -> LspConnection:
        connection = LspConnection(
            spec,
            language,
            self.transport,
            capabilities=capabilities,
            root_uri=self.root_uri,
            client_factory=self.client_factory,
            log_all_communication=self.settings.log_all_communication,
            trace=self.settings.trace_value,
            incremental_sync=self.settings.incremental_sync,
        )
        self._connections[spec.server_id] = connection
        connection.ready.connect(self._on_ready)
        connection.closed.connect(self._on_closed)

        task = asyncio.get_running_loop().create_task(connection.start())
        self._starting.add(task)
        task.add_done_callback(self._starting.discard)
        logger.info(f"Starting {spec.server_id} for {language}")
        return connection

    def _on_ready(self, connection: LspConnection) -> None:
        self.connected.emit(connection)

    def _on_closed(self, connection: LspConnection) -> None:
        if self._connections.get(connection.server_id) is connection and not connection.is_alive:
            # a later connect() starts a fresh connection; never retried here
            del self._connections[connection.server_id]
        self.closed.emit(connection)

    async def wait_started(self) -> None:
        """Wait until every pending connection attempt settled."""
        while self._starting:
            await asyncio.gather(*list(self._starting), return_exceptions=True)

    def unregister_document(self, virtual_document: VirtualDocument) -> None:
        """Send ``didClose`` and detach; the connection is kept warm."""
        self._release(virtual_document.uri)
        self.documents_changed.emit(self.documents)

    def _release(self, uri: str) -> None:
        connection = self.connections.pop(uri, None)
        self.documents.pop(uri, None)
        if connection is not None:
            connection.send_close(uri)
            connection.detach(uri)
            logger.debug(f"Unregistered {uri} from {connection.server_id} ({connection.ref_count} left)")

    async def disconnect(self, server_id: str) -> None:
        """Close every document on ``server_id``, then its connection.

        A connection that already failed counts as closed; only a server id
        that is neither configured nor connected is an error.
        """
        connection = self._connections.pop(server_id, None)
        if connection is None and self.settings.server(server_id) is None:
            raise UnknownServerError(f"No connection for server '{server_id}'")
        for uri in [u for u, c in self.connections.items() if c.server_id == server_id]:
            self._release(uri)
        self.documents_changed.emit(self.documents)
        if connection is None:
            logger.debug(f"{server_id} is not connected")
            return
        await connection.close()
        self.disconnected.emit(server_id)

    async def shutdown_server(self, server_id: str) -> None:
        await self.disconnect(server_id)

    async def evict_idle(self, now: float | None = None) -> list[str]:
        """Disconnect unreferenced connections idle past ``idle_timeout``."""
        timeout = self.settings.idle_timeout
        if timeout is None:
            return []
        now = time.monotonic() if now is None else now
        evicted = [
            server_id
            for server_id, connection in self._connections.items()
            if connection.ref_count == 0 and now - connection.last_used > timeout
        ]
        for server_id in evicted:
            logger.info(f"Evicting idle connection to {server_id}")
            await self.disconnect(server_id)
        return evicted

    async def dispose(self) -> None:
        for server_id in list(self._connections):
            await self.disconnect(server_id)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_configuration(self, settings: LspSettings) -> None:
        """Adopt new settings, pushing changed server configuration to the
        live connections without reconnecting."""
        self.settings = settings
        for server_id, connection in self._connections.items():
            spec = settings.server(server_id)
            if spec is None:
                continue
            changed = spec.configuration != connection.spec.configuration
            connection.spec = spec
            if changed:
                connection.update_configuration(spec.configuration)
        self.update_logging(settings.log_all_communication, settings.trace)

    def update_server_configurations(self, configurations: dict[str, dict[str, Any]]) -> None:
        """Replace the configuration blob of individual servers."""
        for server_id, configuration in configurations.items():
            spec = self.settings.server(server_id)
            if spec is None:
                logger.warning(f"Ignoring configuration for unknown server '{server_id}'")
                continue
            spec = replace(spec, configuration=configuration)
            self.settings.servers[server_id] = spec
            connection = self._connections.get(server_id)
            if connection is not None:
                connection.spec = spec
                connection.update_configuration(configuration)

    def update_logging(self, log_all_communication: bool, trace: str) -> None:
        self.settings.log_all_communication = log_all_communication
        self.settings.trace = trace
        for connection in self._connections.values():
            connection.log_all_communication = log_all_communication
            if connection.trace != self.settings.trace_value:
                connection.set_trace(self.settings.trace_value)
