"""
Position mapping between host editor regions and virtual documents.

Host editors index columns by code point (Python ``str`` indices) while
LSP positions count UTF-16 code units. A virtual document is composed from
source blocks; each block records where its text came from in a host
editor region and where it landed in the virtual document, which is all
that is needed to translate positions in both directions.

Lines that belong to no block are padding and map to nothing (``None``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from lsprotocol import types as lsp


@dataclass(frozen=True, order=True)
class EditorPosition:
    """A position inside one host editor region (0-based, code points)."""

    line: int
    column: int


@dataclass(frozen=True)
class SourceBlock:
    """A run of virtual document lines copied from one host editor region."""

    editor_id: str
    """Identifier of the host editor region the text came from."""

    virtual_line: int
    """First line of the block in the virtual document."""

    line_count: int

    start: EditorPosition
    """Host position of the first character of the block."""

    end: EditorPosition
    """Host position just past the last character of the block."""

    reaches_end: bool = True
    """The block runs to the end of the region's text, so ``end`` itself
    still belongs to the block (a cursor after the last character)."""

    @property
    def virtual_end(self) -> int:
        """First virtual line after the block."""
        return self.virtual_line + self.line_count

    def contains_virtual_line(self, line: int) -> bool:
        return self.virtual_line <= line < self.virtual_end

    def contains(self, position: EditorPosition) -> bool:
        """Half-open containment test in host coordinates."""
        if position < self.start:
            return False
        if position < self.end:
            return True
        return self.reaches_end and position == self.end


# ---------------------------------------------------------------------------
# Text utilities
# ---------------------------------------------------------------------------

def normalize_line_endings(text: str) -> str:
    """Convert CRLF and lone CR line endings to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_lines(text: str) -> list[str]:
    """Split text into lines; ``""`` is one empty line."""
    return normalize_line_endings(text).split("\n")


def utf16_length(text: str) -> int:
    """Length of ``text`` in UTF-16 code units."""
    return sum(2 if ord(ch) > 0xFFFF else 1 for ch in text)


def to_utf16_column(line_text: str, column: int) -> int:
    """Convert a code point column to a UTF-16 column.

    Columns past the end of the line are carried over one to one.
    """
    if column <= len(line_text):
        return utf16_length(line_text[:column])
    return utf16_length(line_text) + (column - len(line_text))


def from_utf16_column(line_text: str, character: int) -> int:
    """Convert a UTF-16 column to a code point column.

    A column pointing at the low half of a surrogate pair resolves to the
    code point that owns it.
    """
    units = 0
    for index, ch in enumerate(line_text):
        width = 2 if ord(ch) > 0xFFFF else 1
        if units + width > character:
            return index
        units += width
    return len(line_text) + (character - units)


def offset_at_position(text: str, position: lsp.Position) -> int:
    """Flat code point offset of an LSP position in ``text``."""
    lines = split_lines(text)
    line = min(max(position.line, 0), len(lines) - 1)
    offset = sum(len(lines[i]) + 1 for i in range(line))
    column = min(from_utf16_column(lines[line], position.character), len(lines[line]))
    return offset + column


def position_at_offset(text: str, offset: int) -> lsp.Position:
    """LSP position of a flat code point offset in ``text``."""
    offset = min(max(offset, 0), len(text))
    before = text[:offset]
    line = before.count("\n")
    line_start = before.rfind("\n") + 1
    line_end = text.find("\n", line_start)
    line_text = text[line_start:] if line_end == -1 else text[line_start:line_end]
    return lsp.Position(line=line, character=to_utf16_column(line_text, offset - line_start))


# ---------------------------------------------------------------------------
# Block mapping
# ---------------------------------------------------------------------------

def find_block_for_editor(
    blocks: Sequence[SourceBlock], editor_id: str, position: EditorPosition
) -> SourceBlock | None:
    """First block of ``editor_id`` containing ``position``.

    Blocks are searched in composition order, so a position on the shared
    boundary of two blocks lands at the start of the later block.
    """
    for block in blocks:
        if block.editor_id == editor_id and block.contains(position):
            return block
    return None


def find_block_for_line(blocks: Sequence[SourceBlock], line: int) -> SourceBlock | None:
    for block in blocks:
        if block.contains_virtual_line(line):
            return block
    return None


def to_virtual_position(
    blocks: Sequence[SourceBlock],
    lines: Sequence[str],
    editor_id: str,
    position: EditorPosition,
) -> lsp.Position | None:
    """Map a host editor position to a virtual document position.

    Returns ``None`` when no block of the document holds the position.
    """
    block = find_block_for_editor(blocks, editor_id, position)
    if block is None:
        return None
    virtual_line = block.virtual_line + (position.line - block.start.line)
    column = position.column
    if position.line == block.start.line:
        column -= block.start.column
    line_text = lines[virtual_line] if virtual_line < len(lines) else ""
    return lsp.Position(line=virtual_line, character=to_utf16_column(line_text, column))


def to_host_position(
    blocks: Sequence[SourceBlock],
    lines: Sequence[str],
    position: lsp.Position,
) -> tuple[str, EditorPosition] | None:
    """Map a virtual document position back to ``(editor_id, position)``.

    Returns ``None`` for positions on padding lines.
    """
    block = find_block_for_line(blocks, position.line)
    if block is None:
        return None
    line_text = lines[position.line] if position.line < len(lines) else ""
    column = from_utf16_column(line_text, position.character)
    offset = position.line - block.virtual_line
    if offset == 0:
        column += block.start.column
    return block.editor_id, EditorPosition(line=block.start.line + offset, column=column)
