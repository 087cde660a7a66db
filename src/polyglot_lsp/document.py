"""
Virtual documents.

A virtual document is the single-language text buffer a language server
sees. It is composed from one or more host editor regions (one for a file
editor, one per cell for a notebook); regions are separated by padding
lines so unrelated cells never run into each other. Code in another
language found by the extractors is moved into child ("foreign") virtual
documents, recursively.

Documents belonging to one tree share a ``DocumentArena`` keyed by URI;
disposing a document removes it from the arena after its children, and
every child removal is announced through ``foreign_document_closed`` so
that the owner can send ``didClose``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Sequence
from urllib.parse import quote

from lsprotocol import types as lsp

from polyglot_lsp.exceptions import DocumentDisposedError
from polyglot_lsp.extractors import (
    ExtractedCode,
    ExtractorRegistry,
    ForeignCodeExtractor,
    offset_of,
)
from polyglot_lsp.positioning import (
    EditorPosition,
    SourceBlock,
    find_block_for_line,
    normalize_line_endings,
    to_host_position,
    to_virtual_position,
)
from polyglot_lsp.signals import Signal

logger = logging.getLogger(__name__)

DEFAULT_BLANK_LINES_BETWEEN_CELLS = 2


class DocumentState(str, Enum):
    UNINITIALIZED = "uninitialized"
    COMPOSED = "composed"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class EditorState:
    """Current text of one host editor region, as handed to an update."""

    editor_id: str
    value: str
    type: str = "code"


@dataclass(frozen=True)
class DocumentInfo:
    """Payload describing a document for ``didOpen``/``didChange``/``didSave``.

    Rebuilt on every access; never mutated.
    """

    uri: str
    language_id: str
    version: int
    text: str
    blocks: tuple[SourceBlock, ...] = ()

    def text_document_item(self) -> lsp.TextDocumentItem:
        return lsp.TextDocumentItem(
            uri=self.uri,
            language_id=self.language_id,
            version=self.version,
            text=self.text,
        )

    def versioned_identifier(self) -> lsp.VersionedTextDocumentIdentifier:
        return lsp.VersionedTextDocumentIdentifier(uri=self.uri, version=self.version)


@dataclass(frozen=True)
class HostRange:
    """Where a piece of a foreign document sits in a host editor region."""

    editor_id: str
    start: EditorPosition
    end: EditorPosition


@dataclass(frozen=True)
class ForeignContext:
    """A foreign document paired with the document it was extracted from
    and the host ranges its text was taken from."""

    foreign_document: VirtualDocument
    parent_host: VirtualDocument
    ranges: tuple[HostRange, ...] = ()


@dataclass(frozen=True)
class _Fragment:
    """A piece of host text to append, with its origin in the host region."""

    editor_id: str
    value: str
    cell_type: str = "code"
    start: EditorPosition = EditorPosition(0, 0)
    end: EditorPosition | None = None
    reaches_end: bool = True


@dataclass
class _ForeignPlan:
    language: str
    standalone: bool
    file_extension: str
    ordinal: str = ""
    fragments: list[_Fragment] = field(default_factory=list)


def shift_position(base: EditorPosition, relative: EditorPosition) -> EditorPosition:
    """Translate a position relative to a fragment into host coordinates."""
    if relative.line == 0:
        return EditorPosition(base.line, base.column + relative.column)
    return EditorPosition(base.line + relative.line, relative.column)


def _end_of(text: str) -> EditorPosition:
    lines = text.split("\n")
    return EditorPosition(len(lines) - 1, len(lines[-1]))


def _blank_range(content: str, start: int, end: int) -> str:
    """Remove ``content[start:end]`` while keeping every other character's
    ``(line, column)``."""
    segment = content[start:end]
    has_tail = end < len(content) and content[end] != "\n"
    newlines = segment.count("\n")
    if newlines:
        last_length = len(segment) - segment.rfind("\n") - 1
        replacement = "\n" * newlines + (" " * last_length if has_tail else "")
    else:
        replacement = " " * len(segment) if has_tail else ""
    return content[:start] + replacement + content[end:]


def _path_uri(path: str | None) -> str:
    if path is None:
        return "file:///untitled"
    return Path(path).absolute().as_uri()


class DocumentArena:
    """URI-keyed registry of every live document in one tree."""

    def __init__(self) -> None:
        self._documents: dict[str, VirtualDocument] = {}

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, uri: object) -> bool:
        return uri in self._documents

    def __iter__(self) -> Iterator[VirtualDocument]:
        return iter(list(self._documents.values()))

    def get(self, uri: str) -> VirtualDocument | None:
        return self._documents.get(uri)

    def add(self, document: VirtualDocument) -> None:
        existing = self._documents.get(document.uri)
        if existing is not None and existing is not document:
            raise ValueError(f"Document already registered for {document.uri}")
        self._documents[document.uri] = document

    def remove(self, document: VirtualDocument) -> None:
        if self._documents.get(document.uri) is document:
            del self._documents[document.uri]


class VirtualDocument:
    """Composed single-language text buffer synchronized with a server."""

    def __init__(
        self,
        language: str,
        path: str | None,
        file_extension: str | None = None,
        *,
        extractors: ExtractorRegistry | None = None,
        standalone: bool = True,
        has_lsp_supported_file: bool = False,
        blank_lines_between_cells: int = DEFAULT_BLANK_LINES_BETWEEN_CELLS,
        parent: VirtualDocument | None = None,
        foreign_key: str = "",
        arena: DocumentArena | None = None,
    ) -> None:
        self.language = language.lower()
        self.path = path
        self.file_extension = file_extension or self.language
        self.extractors = extractors
        self.standalone = standalone
        self.has_lsp_supported_file = has_lsp_supported_file
        self.blank_lines_between_cells = blank_lines_between_cells
        self.parent = parent
        self.foreign_key = foreign_key

        self.version = 0
        self.value = ""
        self.lines: list[str] = [""]
        self.blocks: tuple[SourceBlock, ...] = ()
        self.virtual_lines: frozenset[int] = frozenset()
        self.foreign_documents: dict[tuple[str, ...], VirtualDocument] = {}
        self._state = DocumentState.UNINITIALIZED

        self.uri = self._build_uri()

        self.changed: Signal[VirtualDocument] = Signal("changed")
        self.foreign_document_opened: Signal[ForeignContext] = Signal("foreign_document_opened")
        self.foreign_document_closed: Signal[ForeignContext] = Signal("foreign_document_closed")
        self.disposed: Signal[VirtualDocument] = Signal("disposed")

        self.arena = arena if arena is not None else DocumentArena()
        self.arena.add(self)
        self.update_manager = UpdateManager(self)

    def __repr__(self) -> str:
        return f"VirtualDocument({self.uri!r}, version={self.version})"

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def root(self) -> VirtualDocument:
        document = self
        while document.parent is not None:
            document = document.parent
        return document

    @property
    def virtual_id(self) -> str:
        if self.parent is None or not self.standalone:
            return self.language
        return f"{self.language}({self.foreign_key})"

    @property
    def id_path(self) -> str:
        if self.parent is None:
            return self.virtual_id
        return f"{self.parent.id_path}-{self.virtual_id}"

    def _build_uri(self) -> str:
        base = _path_uri(self.root.path)
        if self.parent is None:
            if self.has_lsp_supported_file:
                return base
            return f"{base}.{self.file_extension}"
        return f"{base}.{quote(self.id_path, safe='()-_')}.{self.file_extension}"

    @property
    def state(self) -> DocumentState:
        return self._state

    @property
    def is_disposed(self) -> bool:
        return self._state is DocumentState.DISPOSED

    @property
    def document_info(self) -> DocumentInfo:
        return DocumentInfo(
            uri=self.uri,
            language_id=self.language,
            version=self.version,
            text=self.value,
            blocks=self.blocks,
        )

    @property
    def last_virtual_line(self) -> int:
        return len(self.lines) - 1

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def update(self, states: Sequence[EditorState]) -> bool:
        """Recompose from the current text of every host region.

        Returns True when the composed text changed (and ``changed`` was
        emitted). Identical input leaves version and signals untouched.
        """
        fragments = [
            _Fragment(editor_id=s.editor_id, value=normalize_line_endings(s.value), cell_type=s.type)
            for s in states
        ]
        return self._compose(fragments)

    def _compose(self, fragments: Sequence[_Fragment]) -> bool:
        if self.is_disposed:
            raise DocumentDisposedError(f"Cannot update disposed document {self.uri}")

        lines: list[str] = []
        blocks: list[SourceBlock] = []
        virtual_lines: set[int] = set()
        plans: dict[tuple[str, ...], _ForeignPlan] = {}

        for index, fragment in enumerate(fragments):
            if index > 0:
                for _ in range(self.blank_lines_between_cells):
                    virtual_lines.add(len(lines))
                    lines.append("")

            host_code = self._extract_foreign(fragment, plans)
            code_lines = host_code.split("\n")
            blocks.append(
                SourceBlock(
                    editor_id=fragment.editor_id,
                    virtual_line=len(lines),
                    line_count=len(code_lines),
                    start=fragment.start,
                    end=fragment.end or _end_of(fragment.value),
                    reaches_end=fragment.reaches_end,
                )
            )
            lines.extend(code_lines)

        if not lines:
            lines = [""]
        value = "\n".join(lines)

        text_changed = value != self.value or self._state is DocumentState.UNINITIALIZED
        self.lines = lines
        self.value = value
        self.blocks = tuple(blocks)
        self.virtual_lines = frozenset(virtual_lines)
        if text_changed:
            self.version += 1
            self._state = DocumentState.COMPOSED

        # Children are reconciled after our own state is final so that
        # handlers of foreign_document_opened see a consistent parent.
        opened = self._reconcile_foreign(plans)

        if text_changed:
            self.changed.emit(self)
        for context in opened:
            self.foreign_document_opened.emit(context)
        return text_changed

    def _extract_foreign(
        self, fragment: _Fragment, plans: dict[tuple[str, ...], _ForeignPlan]
    ) -> str:
        """Run the extractors over a fragment, recording foreign fragments in
        ``plans``; returns the text that stays in this document."""
        if self.extractors is None:
            return fragment.value

        content = fragment.value
        standalone_counts: dict[str, int] = {}
        for extractor in self.extractors.get_extractors(fragment.cell_type, self.language):
            try:
                if not extractor.has_foreign_code(content, fragment.cell_type):
                    continue
                results = extractor.extract_foreign_code(content)
            except Exception:
                logger.exception(f"Extractor {extractor!r} failed on {fragment.editor_id}, skipping")
                continue

            for result in results:
                self._plan_foreign(extractor, result, fragment, plans, standalone_counts)
            if not extractor.keep_in_host:
                for result in reversed(results):
                    content = _blank_range(
                        content,
                        offset_of(content, result.host_start),
                        offset_of(content, result.host_end),
                    )
        return content

    def _plan_foreign(
        self,
        extractor: ForeignCodeExtractor,
        result: ExtractedCode,
        fragment: _Fragment,
        plans: dict[tuple[str, ...], _ForeignPlan],
        standalone_counts: dict[str, int],
    ) -> None:
        language = result.language.lower()
        foreign = _Fragment(
            editor_id=fragment.editor_id,
            value=result.foreign_code,
            start=shift_position(fragment.start, result.start),
            end=shift_position(fragment.start, result.end),
            reaches_end=result.reaches_end and fragment.reaches_end,
        )
        if result.standalone:
            ordinal = standalone_counts.get(language, 0)
            standalone_counts[language] = ordinal + 1
            key: tuple[str, ...] = ("standalone", language, fragment.editor_id, str(ordinal))
            plans[key] = _ForeignPlan(
                language=language,
                standalone=True,
                file_extension=extractor.file_extension,
                ordinal=f"{fragment.editor_id}-{ordinal}",
                fragments=[foreign],
            )
            return
        key = ("shared", language)
        plan = plans.setdefault(
            key,
            _ForeignPlan(language=language, standalone=False, file_extension=extractor.file_extension),
        )
        plan.fragments.append(foreign)

    def _reconcile_foreign(self, plans: dict[tuple[str, ...], _ForeignPlan]) -> list[ForeignContext]:
        for key in [k for k in self.foreign_documents if k not in plans]:
            self._close_foreign(key)

        opened: list[ForeignContext] = []
        for key, plan in plans.items():
            document = self.foreign_documents.get(key)
            if document is None:
                document = VirtualDocument(
                    language=plan.language,
                    path=self.path,
                    file_extension=plan.file_extension,
                    extractors=self.extractors,
                    standalone=plan.standalone,
                    blank_lines_between_cells=self.blank_lines_between_cells,
                    parent=self,
                    foreign_key=plan.ordinal,
                    arena=self.arena,
                )
                self.foreign_documents[key] = document
                document._compose(plan.fragments)
                logger.debug(f"Opened foreign document {document.uri}")
                opened.append(self.foreign_context(document))
            else:
                document._compose(plan.fragments)
        return opened

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def to_virtual_position(self, editor_id: str, position: EditorPosition) -> lsp.Position | None:
        return to_virtual_position(self.blocks, self.lines, editor_id, position)

    def to_host_position(self, position: lsp.Position) -> tuple[str, EditorPosition] | None:
        return to_host_position(self.blocks, self.lines, position)

    def document_at_source_position(
        self, editor_id: str, position: EditorPosition
    ) -> VirtualDocument:
        """Deepest document in this tree holding the host position."""
        for document in self.foreign_documents.values():
            for block in document.blocks:
                if block.editor_id == editor_id and block.contains(position):
                    return document.document_at_source_position(editor_id, position)
        return self

    def editor_at_virtual_line(self, line: int) -> str | None:
        block = find_block_for_line(self.blocks, line)
        return block.editor_id if block else None

    def is_virtual_line(self, line: int) -> bool:
        return line in self.virtual_lines

    def foreign_context(self, document: VirtualDocument) -> ForeignContext:
        ranges = tuple(HostRange(b.editor_id, b.start, b.end) for b in document.blocks)
        return ForeignContext(foreign_document=document, parent_host=self, ranges=ranges)

    def iter_documents(self) -> Iterator[VirtualDocument]:
        """This document and all its descendants, parents first."""
        yield self
        for document in list(self.foreign_documents.values()):
            yield from document.iter_documents()

    # ------------------------------------------------------------------
    # Disposal
    # ------------------------------------------------------------------

    def _close_foreign(self, key: tuple[str, ...]) -> None:
        document = self.foreign_documents.pop(key)
        document._close_all_foreign()
        logger.debug(f"Closing foreign document {document.uri}")
        self.foreign_document_closed.emit(self.foreign_context(document))
        document._finish_dispose()

    def _close_all_foreign(self) -> None:
        for key in list(self.foreign_documents):
            self._close_foreign(key)

    def _finish_dispose(self) -> None:
        self._state = DocumentState.DISPOSED
        self.arena.remove(self)
        self.disposed.emit(self)
        for signal in (self.changed, self.foreign_document_opened, self.foreign_document_closed, self.disposed):
            signal.clear()

    def dispose(self) -> None:
        """Dispose this document and, first, all of its foreign documents."""
        if self.is_disposed:
            return
        self._close_all_foreign()
        self._finish_dispose()


class UpdateManager:
    """Serializes updates of a document tree and reports their progress."""

    def __init__(self, document: VirtualDocument) -> None:
        self.document = document
        self.update_began: Signal[Sequence[EditorState]] = Signal("update_began")
        self.update_finished: Signal[Sequence[EditorState]] = Signal("update_finished")
        self._last_states: tuple[EditorState, ...] | None = None

    async def update_documents(self, states: Sequence[EditorState]) -> bool:
        """Push current editor text into the document tree.

        Returns True when the root document text changed.
        """
        if self.document.is_disposed:
            raise DocumentDisposedError(f"Cannot update disposed document {self.document.uri}")
        states = tuple(states)
        if states == self._last_states:
            return False
        self.update_began.emit(states)
        changed = self.document.update(states)
        self._last_states = states
        self.update_finished.emit(states)
        return changed
