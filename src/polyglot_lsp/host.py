"""
Host editor interface.

The adapters only need a small surface from the editing application: per
region text, cell type and MIME type, a content-changed signal per region
and save/path/disposal signals per document. ``EditorRegion`` and
``HostDocument`` are plain in-memory implementations of that surface,
used by the command line and the tests.
"""

from __future__ import annotations

import itertools
from typing import Protocol, runtime_checkable

from polyglot_lsp.positioning import EditorPosition
from polyglot_lsp.signals import Signal


class IdAllocator:
    """Hands out unique, prefixed identifiers (``cell-1``, ``console-3``)."""

    def __init__(self) -> None:
        self._counters: dict[str, itertools.count[int]] = {}

    def next(self, prefix: str) -> str:
        counter = self._counters.setdefault(prefix, itertools.count(1))
        return f"{prefix}-{next(counter)}"


@runtime_checkable
class HostEditor(Protocol):
    editor_id: str
    mime_type: str
    cell_type: str
    content_changed: Signal

    @property
    def value(self) -> str:
        ...


class EditorRegion:
    """One editable region: a file editor, or one notebook/console cell."""

    def __init__(
        self,
        editor_id: str,
        value: str = "",
        mime_type: str = "text/x-python",
        cell_type: str = "code",
    ) -> None:
        self.editor_id = editor_id
        self.mime_type = mime_type
        self.cell_type = cell_type
        self.cursor = EditorPosition(0, 0)
        self._value = value
        self.content_changed: Signal[EditorRegion] = Signal("content_changed")

    def __repr__(self) -> str:
        return f"EditorRegion({self.editor_id!r}, {self.cell_type!r})"

    @property
    def value(self) -> str:
        return self._value

    def set_value(self, value: str) -> None:
        if value == self._value:
            return
        self._value = value
        self.content_changed.emit(self)


class HostDocument:
    """A document made of ordered editor regions.

    ``kind`` is ``"file"``, ``"notebook"`` or ``"console"`` and selects the
    adapter. ``language`` overrides the language derived from MIME types
    (a notebook's kernel language).
    """

    def __init__(
        self,
        kind: str,
        path: str | None,
        editors: list[EditorRegion] | None = None,
        language: str | None = None,
        document_id: str | None = None,
    ) -> None:
        self.kind = kind
        self.path = path
        self.language = language
        self.document_id = document_id or (path or kind)
        self.editors: list[EditorRegion] = list(editors or [])
        self.active_editor: EditorRegion | None = self.editors[0] if self.editors else None

        self.editor_added: Signal[EditorRegion] = Signal("editor_added")
        self.editor_removed: Signal[EditorRegion] = Signal("editor_removed")
        self.active_editor_changed: Signal[EditorRegion | None] = Signal("active_editor_changed")
        self.path_changed: Signal[str | None] = Signal("path_changed")
        self.save_state: Signal[str] = Signal("save_state")
        self.disposed: Signal[HostDocument] = Signal("disposed")

    def __repr__(self) -> str:
        return f"HostDocument({self.kind!r}, {self.path!r}, editors={len(self.editors)})"

    def add_editor(self, editor: EditorRegion, index: int | None = None) -> None:
        if index is None:
            self.editors.append(editor)
        else:
            self.editors.insert(index, editor)
        self.editor_added.emit(editor)

    def remove_editor(self, editor: EditorRegion) -> None:
        self.editors.remove(editor)
        if self.active_editor is editor:
            self.set_active_editor(self.editors[0] if self.editors else None)
        self.editor_removed.emit(editor)

    def set_active_editor(self, editor: EditorRegion | None) -> None:
        if editor is self.active_editor:
            return
        self.active_editor = editor
        self.active_editor_changed.emit(editor)

    def rename(self, path: str) -> None:
        if path == self.path:
            return
        self.path = path
        self.path_changed.emit(path)

    def save(self) -> None:
        self.save_state.emit("started")
        self.save_state.emit("completed")

    def dispose(self) -> None:
        self.disposed.emit(self)
