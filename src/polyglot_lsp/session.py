"""
Top-level session.

A session owns everything that must be shared between the adapters of one
application: the settings, the extractor registry, the connection manager,
the identifier allocator for editors and consoles, and the status line.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from lsprotocol import types as lsp
from pygls.lsp.client import LanguageClient

from polyglot_lsp.adapter import ADAPTERS, WidgetAdapter
from polyglot_lsp.config import LspSettings
from polyglot_lsp.connection import (
    ConnectionState,
    LspConnection,
    ShowMessageRequestHandler,
    TransportFactory,
)
from polyglot_lsp.extractors import ExtractorRegistry, default_registry
from polyglot_lsp.host import EditorRegion, HostDocument, IdAllocator
from polyglot_lsp.manager import DocumentConnectionManager
from polyglot_lsp.signals import SubscriptionGroup
from polyglot_lsp.status import DEFAULT_TIMEOUT, StatusMessage

logger = logging.getLogger(__name__)


class LspSession:
    def __init__(
        self,
        settings: LspSettings | None = None,
        transport: TransportFactory | None = None,
        client_factory: Callable[[], LanguageClient] | None = None,
        extractors: ExtractorRegistry | None = None,
        root_uri: str | None = None,
    ) -> None:
        self.settings = settings or LspSettings()
        self.extractors = extractors if extractors is not None else default_registry()
        self.ids = IdAllocator()
        self.status = StatusMessage()
        self.manager = DocumentConnectionManager(
            self.settings, transport=transport, client_factory=client_factory, root_uri=root_uri
        )
        self.adapters: dict[str, WidgetAdapter] = {}
        # answers window/showMessageRequest for every server; None dismisses
        self.show_message_request_handler: ShowMessageRequestHandler | None = None
        self._subscriptions = SubscriptionGroup()
        self._subscriptions.connect(self.manager.closed, self._on_connection_closed)
        self._subscriptions.connect(self.manager.connected, self._on_connection_ready)

    # ------------------------------------------------------------------
    # Host documents
    # ------------------------------------------------------------------

    def new_file(self, path: str | None, text: str = "", mime_type: str = "text/x-python") -> HostDocument:
        editor = EditorRegion(self.ids.next("editor"), text, mime_type=mime_type)
        return HostDocument("file", path, [editor], document_id=self.ids.next("file"))

    def new_notebook(
        self,
        path: str | None,
        cells: Iterable[tuple[str, str]],
        language: str | None = "python",
        mime_type: str = "text/x-ipython",
    ) -> HostDocument:
        """Notebook from ``(cell_type, source)`` pairs."""
        editors = [
            EditorRegion(
                self.ids.next("cell"),
                source,
                mime_type=mime_type if cell_type == "code" else f"text/x-{cell_type}",
                cell_type=cell_type,
            )
            for cell_type, source in cells
        ]
        return HostDocument(
            "notebook", path, editors, language=language, document_id=self.ids.next("notebook")
        )

    def new_console(self, language: str = "python", mime_type: str = "text/x-ipython") -> HostDocument:
        console_id = self.ids.next("console")
        prompt = EditorRegion(self.ids.next("cell"), "", mime_type=mime_type)
        return HostDocument("console", console_id, [prompt], language=language, document_id=console_id)

    def new_cell(self, source: str = "", cell_type: str = "code", mime_type: str = "text/x-ipython") -> EditorRegion:
        return EditorRegion(self.ids.next("cell"), source, mime_type=mime_type, cell_type=cell_type)

    async def open(self, host: HostDocument) -> WidgetAdapter:
        """Create, register and initialize the adapter for ``host``."""
        adapter_class = ADAPTERS.get(host.kind)
        if adapter_class is None:
            raise ValueError(f"Unknown host document kind: {host.kind}")
        adapter = adapter_class(host, self.manager, self.extractors)
        self.adapters[host.document_id] = adapter
        adapter.disposed.connect(lambda _: self.adapters.pop(host.document_id, None))
        await adapter.initialize()
        return adapter

    # ------------------------------------------------------------------
    # Settings and servers
    # ------------------------------------------------------------------

    def update_settings(self, settings: LspSettings) -> None:
        self.settings = settings
        self.manager.update_configuration(settings)

    def running_servers(self) -> list[LspConnection]:
        return self.manager.running()

    async def shutdown_server(self, server_id: str) -> None:
        await self.manager.shutdown_server(server_id)
        self.status.set(f"Shut down {server_id}")

    def _on_connection_ready(self, connection: LspConnection) -> None:
        connection.show_message_request_handler = self._ask_user
        self._subscriptions.connect(connection.show_message, self._on_show_message)

    def _on_show_message(self, params: lsp.ShowMessageParams) -> None:
        timeout = -1 if params.type == lsp.MessageType.Error else DEFAULT_TIMEOUT
        self.status.set(params.message, timeout=timeout)

    async def _ask_user(self, params: lsp.ShowMessageRequestParams) -> lsp.MessageActionItem | None:
        if self.show_message_request_handler is None:
            self.status.set(params.message)
            return None
        return await self.show_message_request_handler(params)

    def _on_connection_closed(self, connection: LspConnection) -> None:
        if connection.state is ConnectionState.ERRORED:
            self.status.set(f"Connection to {connection.server_id} ({connection.language}) lost")

    async def close(self) -> None:
        for adapter in list(self.adapters.values()):
            adapter.dispose()
        await self.manager.dispose()
        self._subscriptions.close()
        self.status.clear()
