"""
Widget adapters.

A widget adapter binds one host document (file editor, notebook or
console) to its root virtual document and to the connection manager. It
drives the open/change/save/close sequence for the whole document tree,
including foreign documents appearing and disappearing, and translates
server diagnostics back into host editor coordinates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from pathlib import PurePath
from typing import Any, Awaitable, Callable

from lsprotocol import types as lsp

from polyglot_lsp.connection import LspConnection
from polyglot_lsp.document import EditorState, ForeignContext, VirtualDocument
from polyglot_lsp.exceptions import AdapterDisposedError, PolyglotLspError
from polyglot_lsp.extractors import ExtractorRegistry, default_registry
from polyglot_lsp.host import EditorRegion, HostDocument
from polyglot_lsp.manager import DocumentConnectionManager
from polyglot_lsp.positioning import EditorPosition
from polyglot_lsp.signals import Signal, Subscription, SubscriptionGroup

logger = logging.getLogger(__name__)

# MIME type -> LSP language id, for types the generic rules get wrong
MIME_LANGUAGES: dict[str, str] = {
    "text/x-ipython": "python",
    "text/x-python": "python",
    "text/x-rsrc": "r",
    "text/x-rsrc-markdown": "rmd",
    "text/x-markdown": "markdown",
    "text/markdown": "markdown",
    "text/x-sh": "shellscript",
    "text/x-sql": "sql",
    "text/x-c++src": "cpp",
    "text/x-csrc": "c",
    "text/plain": "plaintext",
}

LANGUAGE_EXTENSIONS: dict[str, str] = {
    "python": "py",
    "r": "R",
    "julia": "jl",
    "markdown": "md",
    "shellscript": "sh",
    "javascript": "js",
    "typescript": "ts",
    "plaintext": "txt",
}


def language_from_mime(mime_type: str | None) -> str | None:
    """LSP language id for an editor MIME type, if one can be derived."""
    if not mime_type:
        return None
    mime_type = mime_type.lower()
    if mime_type in MIME_LANGUAGES:
        return MIME_LANGUAGES[mime_type]
    for prefix in ("text/x-", "application/x-", "application/"):
        if mime_type.startswith(prefix) and len(mime_type) > len(prefix):
            return mime_type[len(prefix):]
    return None


class AdapterState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "virtual-document-initialized"
    CONNECTED = "connected"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class HostDiagnostic:
    """A server diagnostic translated into one host editor region."""

    uri: str
    editor_id: str
    start: EditorPosition
    end: EditorPosition
    diagnostic: lsp.Diagnostic

    @property
    def message(self) -> str:
        return self.diagnostic.message


class WidgetAdapter:
    """Owns the virtual document tree of one host document."""

    has_lsp_supported_file = False

    def __init__(
        self,
        host: HostDocument,
        manager: DocumentConnectionManager,
        extractors: ExtractorRegistry | None = None,
        capabilities: lsp.ClientCapabilities | None = None,
    ) -> None:
        self.host = host
        self.manager = manager
        self.extractors = extractors if extractors is not None else default_registry()
        self.capabilities = capabilities
        self.virtual_document: VirtualDocument | None = None
        self._state = AdapterState.UNINITIALIZED

        self._host_subscriptions = SubscriptionGroup()
        self._editor_subscriptions: dict[str, Subscription] = {}
        self._document_subscriptions: dict[str, SubscriptionGroup] = {}
        self._diagnostics: dict[str, list[HostDiagnostic]] = {}

        self.active_editor_changed: Signal[EditorRegion | None] = Signal("active_editor_changed")
        self.editor_added: Signal[EditorRegion] = Signal("editor_added")
        self.editor_removed: Signal[EditorRegion] = Signal("editor_removed")
        self.adapter_connected: Signal[LspConnection] = Signal("adapter_connected")
        self.disposed: Signal[WidgetAdapter] = Signal("disposed")
        self.diagnostics_changed: Signal[dict[str, list[HostDiagnostic]]] = Signal("diagnostics_changed")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.host!r}, {self._state.value})"

    # ------------------------------------------------------------------
    # Host description
    # ------------------------------------------------------------------

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def is_disposed(self) -> bool:
        return self._state is AdapterState.DISPOSED

    @property
    def editors(self) -> list[EditorRegion]:
        return self.host.editors

    @property
    def path(self) -> str | None:
        return self.host.path

    @property
    def language(self) -> str:
        raise NotImplementedError

    @property
    def file_extension(self) -> str:
        return LANGUAGE_EXTENSIONS.get(self.language, self.language)

    def editor_states(self) -> list[EditorState]:
        return [EditorState(e.editor_id, e.value, e.cell_type) for e in self.editors]

    def get_editor_index(self, editor: EditorRegion) -> int | None:
        try:
            return self.editors.index(editor)
        except ValueError:
            return None

    def get_editor_index_at(self, position: lsp.Position) -> int | None:
        """Index of the editor holding a root document position."""
        if self.virtual_document is None:
            return None
        editor_id = self.virtual_document.editor_at_virtual_line(position.line)
        for index, editor in enumerate(self.editors):
            if editor.editor_id == editor_id:
                return index
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Watch the host, compose the documents and connect them."""
        if self.is_disposed:
            raise AdapterDisposedError(f"{self!r} was disposed")
        host = self.host
        self._host_subscriptions.connect(host.save_state, self.on_save_state)
        self._host_subscriptions.connect(host.path_changed, self._on_path_changed)
        self._host_subscriptions.connect(host.editor_added, self._on_editor_added)
        self._host_subscriptions.connect(host.editor_removed, self._on_editor_removed)
        self._host_subscriptions.connect(host.active_editor_changed, self.active_editor_changed.emit)
        self._host_subscriptions.connect(host.disposed, lambda _: self.dispose())
        for editor in self.editors:
            self._watch_editor(editor)
            self.editor_added.emit(editor)
        await self._init_documents()

    async def _init_documents(self) -> None:
        document = VirtualDocument(
            self.language,
            self.path,
            self.file_extension,
            extractors=self.extractors,
            standalone=True,
            has_lsp_supported_file=self.has_lsp_supported_file,
            blank_lines_between_cells=self.manager.settings.blank_lines_between_cells,
        )
        self.virtual_document = document
        self._state = AdapterState.INITIALIZED
        self._track(document)
        await self.update_documents()
        if self.is_disposed or self.virtual_document is not document:
            return
        self.connect_document(document)

    async def update_documents(self) -> bool:
        """Push the current editor text into the document tree."""
        if self.is_disposed:
            raise AdapterDisposedError(f"{self!r} was disposed")
        if self.virtual_document is None:
            raise PolyglotLspError(f"{self!r} is not initialized")
        return await self.virtual_document.update_manager.update_documents(self.editor_states())

    async def reload_connection(self) -> None:
        """Close every document and start over under the current path."""
        if self.is_disposed:
            return
        logger.info(f"Reloading connection for {self.path}")
        root = self.virtual_document
        self._release_documents()
        if root is not None:
            root.dispose()
        await self._init_documents()

    def dispose(self) -> None:
        if self.is_disposed:
            return
        self._state = AdapterState.DISPOSED
        root = self.virtual_document
        self._release_documents()
        self._host_subscriptions.close()
        for subscription in self._editor_subscriptions.values():
            subscription.close()
        self._editor_subscriptions.clear()
        for editor in list(self.editors):
            self.editor_removed.emit(editor)
        if root is not None:
            root.dispose()
        self.virtual_document = None
        self.disposed.emit(self)
        for signal in (
            self.active_editor_changed,
            self.editor_added,
            self.editor_removed,
            self.adapter_connected,
            self.disposed,
            self.diagnostics_changed,
        ):
            signal.clear()

    def _release_documents(self) -> None:
        if self.virtual_document is not None:
            for document in reversed(list(self.virtual_document.iter_documents())):
                self.manager.unregister_document(document)
        for group in self._document_subscriptions.values():
            group.close()
        self._document_subscriptions.clear()
        if self._diagnostics:
            self._diagnostics.clear()
            self.diagnostics_changed.emit(self.diagnostics_by_editor())

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    def _watch_editor(self, editor: EditorRegion) -> None:
        self._editor_subscriptions[editor.editor_id] = editor.content_changed.connect(
            self._on_content_changed
        )

    async def _on_content_changed(self, editor: EditorRegion) -> None:
        if self.is_disposed or self.virtual_document is None:
            return
        await self.update_documents()

    async def _on_editor_added(self, editor: EditorRegion) -> None:
        if self.is_disposed:
            return
        self._watch_editor(editor)
        self.editor_added.emit(editor)
        if self.virtual_document is not None:
            await self.update_documents()

    async def _on_editor_removed(self, editor: EditorRegion) -> None:
        if self.is_disposed:
            return
        subscription = self._editor_subscriptions.pop(editor.editor_id, None)
        if subscription is not None:
            subscription.close()
        self.editor_removed.emit(editor)
        if self.virtual_document is not None:
            await self.update_documents()

    def _on_path_changed(self, path: str | None) -> Awaitable[None]:
        return self.reload_connection()

    def on_save_state(self, state: str) -> None:
        """Send ``didSave`` for every opened document, parents first."""
        if state != "completed" or self.is_disposed or self.virtual_document is None:
            return
        for document in self.virtual_document.iter_documents():
            connection = self.manager.connections.get(document.uri)
            if connection is not None and connection.is_open(document.uri):
                connection.send_saved(document.document_info)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _track(self, document: VirtualDocument) -> None:
        group = SubscriptionGroup()
        group.connect(document.changed, self.document_changed)
        group.connect(document.foreign_document_opened, self.on_foreign_document_opened)
        group.connect(document.foreign_document_closed, self.on_foreign_document_closed)
        self._document_subscriptions[document.uri] = group

    def connect_document(self, document: VirtualDocument) -> LspConnection | None:
        """Attach ``document`` to its server and open it once ready."""
        connection = self.manager.connect(document, document.language, self.capabilities)
        if connection is None:
            return None
        group = self._document_subscriptions[document.uri]
        group.connect(connection.diagnostics, partial(self._on_diagnostics, document))
        connection.send_open_when_ready(lambda: document.document_info)
        if document is self.virtual_document:
            if connection.is_ready:
                self._on_root_connected(connection)
            else:
                group.connect(connection.ready, self._on_root_connected)
        return connection

    def _on_root_connected(self, connection: LspConnection) -> None:
        if self.is_disposed:
            return
        self._state = AdapterState.CONNECTED
        self.adapter_connected.emit(connection)

    def document_changed(self, document: VirtualDocument, is_init: bool = False) -> None:
        """Forward a recomposed document to its server.

        Nothing is queued: a connection that is not ready yet gets the
        current text with its ``didOpen``.
        """
        if self.is_disposed or document.is_disposed:
            return
        connection = self.manager.connections.get(document.uri)
        if connection is None or not connection.is_ready:
            logger.debug(f"Skipping change of {document.uri}: no ready connection")
            return
        if is_init:
            connection.send_open(document.document_info)
            return
        connection.send_change(document.document_info)

    def on_foreign_document_opened(self, context: ForeignContext) -> None:
        if self.is_disposed:
            return
        document = context.foreign_document
        if document.uri in self._document_subscriptions:
            return
        self._track(document)
        self.connect_document(document)
        # children composed together with ``document`` opened before we listened
        for child in list(document.foreign_documents.values()):
            self.on_foreign_document_opened(document.foreign_context(child))

    def on_foreign_document_closed(self, context: ForeignContext) -> None:
        document = context.foreign_document
        self.manager.unregister_document(document)
        group = self._document_subscriptions.pop(document.uri, None)
        if group is not None:
            group.close()
        if self._diagnostics.pop(document.uri, None) is not None:
            self.diagnostics_changed.emit(self.diagnostics_by_editor())

    # ------------------------------------------------------------------
    # Server results
    # ------------------------------------------------------------------

    def _on_diagnostics(self, document: VirtualDocument, params: lsp.PublishDiagnosticsParams) -> None:
        if params.uri != document.uri or document.is_disposed or self.is_disposed:
            return
        mapped: list[HostDiagnostic] = []
        for diagnostic in params.diagnostics:
            start = document.to_host_position(diagnostic.range.start)
            if start is None:
                continue
            editor_id, start_position = start
            end = document.to_host_position(diagnostic.range.end)
            end_position = end[1] if end is not None and end[0] == editor_id else start_position
            mapped.append(
                HostDiagnostic(
                    uri=document.uri,
                    editor_id=editor_id,
                    start=start_position,
                    end=end_position,
                    diagnostic=diagnostic,
                )
            )
        self._diagnostics[document.uri] = mapped
        self.diagnostics_changed.emit(self.diagnostics_by_editor())

    def diagnostics_by_editor(self) -> dict[str, list[HostDiagnostic]]:
        result: dict[str, list[HostDiagnostic]] = {}
        for diagnostics in self._diagnostics.values():
            for diagnostic in diagnostics:
                result.setdefault(diagnostic.editor_id, []).append(diagnostic)
        return result

    async def request(
        self,
        method: str,
        editor: EditorRegion,
        position: EditorPosition,
        build_params: Callable[[lsp.TextDocumentIdentifier, lsp.Position], Any],
    ) -> Any:
        """Send a positional request to the document holding ``position``.

        Returns ``None`` when nothing maps there, the server is not ready,
        or the document changed before the response arrived.
        """
        if self.is_disposed:
            raise AdapterDisposedError(f"{self!r} was disposed")
        if self.virtual_document is None:
            return None
        document = self.virtual_document.document_at_source_position(editor.editor_id, position)
        virtual_position = document.to_virtual_position(editor.editor_id, position)
        if virtual_position is None:
            return None
        connection = self.manager.connections.get(document.uri)
        if connection is None or not connection.is_ready:
            return None
        version = document.version
        result = await connection.send_request(
            method, build_params(lsp.TextDocumentIdentifier(uri=document.uri), virtual_position)
        )
        if document.is_disposed or document.version != version:
            logger.debug(f"Discarding stale {method} response for {document.uri}")
            return None
        return result


class FileEditorAdapter(WidgetAdapter):
    """Adapter for a plain file editor: one region, real file URI."""

    has_lsp_supported_file = True

    @property
    def language(self) -> str:
        if self.host.language:
            return self.host.language.lower()
        editor = self.editors[0] if self.editors else None
        return language_from_mime(editor.mime_type if editor else None) or "plaintext"

    @property
    def file_extension(self) -> str:
        suffix = PurePath(self.path).suffix if self.path else ""
        return suffix[1:] if suffix else super().file_extension

    def get_editor_index_at(self, position: lsp.Position) -> int | None:
        return 0


class NotebookAdapter(WidgetAdapter):
    """Adapter for a notebook: cells in order, kernel language as host."""

    @property
    def language(self) -> str:
        if self.host.language:
            return self.host.language.lower()
        for editor in self.editors:
            if editor.cell_type == "code":
                language = language_from_mime(editor.mime_type)
                if language:
                    return language
        return "python"


class ConsoleAdapter(NotebookAdapter):
    """Adapter for a console: executed cells followed by the prompt."""

    @property
    def language(self) -> str:
        if self.host.language:
            return self.host.language.lower()
        prompt = self.editors[-1] if self.editors else None
        return language_from_mime(prompt.mime_type if prompt else None) or "python"


ADAPTERS: dict[str, type[WidgetAdapter]] = {
    "file": FileEditorAdapter,
    "notebook": NotebookAdapter,
    "console": ConsoleAdapter,
}
