"""
Foreign code extraction.

An extractor recognises text in another language inside one host editor
region (a Markdown cell, an IPython ``%%sql`` cell magic, ...) and returns
the extracted fragments with their ranges. The registry maps a
``(cell type, host language)`` pair to an ordered list of extractors.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Protocol, runtime_checkable

from polyglot_lsp.positioning import EditorPosition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractedCode:
    """One fragment of foreign code found in a host region."""

    language: str
    foreign_code: str
    start: EditorPosition
    """Host position where ``foreign_code`` begins."""

    end: EditorPosition
    """Host position just past the end of ``foreign_code``."""

    host_start: EditorPosition
    """Start of the host text that the fragment occupies (may include
    markers such as a magic line)."""

    host_end: EditorPosition
    standalone: bool = False
    reaches_end: bool = False
    """The fragment runs to the end of the host text."""


@runtime_checkable
class ForeignCodeExtractor(Protocol):
    """Protocol implemented by all extractors."""

    language: str
    standalone: bool
    file_extension: str
    keep_in_host: bool

    def has_foreign_code(self, content: str, cell_type: str) -> bool:
        """Cheap check whether ``extract_foreign_code`` can find anything."""
        ...

    def extract_foreign_code(self, content: str) -> list[ExtractedCode]:
        """Extract fragments, in source order."""
        ...


def position_of(content: str, offset: int) -> EditorPosition:
    """Code point ``(line, column)`` of a flat offset in ``content``."""
    line = content.count("\n", 0, offset)
    line_start = content.rfind("\n", 0, offset) + 1
    return EditorPosition(line=line, column=offset - line_start)


def offset_of(content: str, position: EditorPosition) -> int:
    """Flat offset of a code point ``(line, column)`` in ``content``."""
    offset = 0
    for _ in range(position.line):
        newline = content.find("\n", offset)
        if newline == -1:
            return len(content)
        offset = newline + 1
    return min(offset + position.column, len(content))


class TextForeignCodeExtractor:
    """Treats the whole region as foreign code (e.g. Markdown cells)."""

    keep_in_host = False

    def __init__(
        self,
        language: str,
        cell_types: Iterable[str],
        standalone: bool = False,
        file_extension: str = "txt",
    ) -> None:
        self.language = language
        self.cell_types = tuple(cell_types)
        self.standalone = standalone
        self.file_extension = file_extension

    def __repr__(self) -> str:
        return f"TextForeignCodeExtractor({self.language!r}, cell_types={self.cell_types!r})"

    def has_foreign_code(self, content: str, cell_type: str) -> bool:
        return cell_type in self.cell_types

    def extract_foreign_code(self, content: str) -> list[ExtractedCode]:
        start = EditorPosition(0, 0)
        end = position_of(content, len(content))
        return [
            ExtractedCode(
                language=self.language,
                foreign_code=content,
                start=start,
                end=end,
                host_start=start,
                host_end=end,
                standalone=self.standalone,
                reaches_end=True,
            )
        ]


class RegExpForeignCodeExtractor:
    """Extracts the ``code`` group of every match of a pattern."""

    def __init__(
        self,
        language: str,
        pattern: str | re.Pattern[str],
        cell_types: Iterable[str] = ("code",),
        standalone: bool = False,
        file_extension: str = "txt",
        keep_in_host: bool = False,
        group: str = "code",
    ) -> None:
        self.language = language
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.cell_types = tuple(cell_types)
        self.standalone = standalone
        self.file_extension = file_extension
        self.keep_in_host = keep_in_host
        self.group = group

    def __repr__(self) -> str:
        return f"RegExpForeignCodeExtractor({self.language!r}, {self.pattern.pattern!r})"

    def has_foreign_code(self, content: str, cell_type: str) -> bool:
        if cell_type not in self.cell_types:
            return False
        return self.pattern.search(content) is not None

    def extract_foreign_code(self, content: str) -> list[ExtractedCode]:
        results: list[ExtractedCode] = []
        for match in self.pattern.finditer(content):
            code_start, code_end = match.span(self.group)
            if code_start == -1:
                continue
            results.append(
                ExtractedCode(
                    language=self.language,
                    foreign_code=match.group(self.group),
                    start=position_of(content, code_start),
                    end=position_of(content, code_end),
                    host_start=position_of(content, match.start()),
                    host_end=position_of(content, match.end()),
                    standalone=self.standalone,
                    reaches_end=code_end == len(content),
                )
            )
        return results


class ExtractorRegistry:
    """Ordered extractors keyed by ``(cell type, host language)``.

    Extractors registered with ``host_language=None`` apply to every host
    language and come after the language-specific ones.
    """

    def __init__(self) -> None:
        self._extractors: dict[tuple[str, str | None], list[ForeignCodeExtractor]] = {}

    def register(
        self,
        extractor: ForeignCodeExtractor,
        host_language: str | None,
        cell_types: Iterable[str] | None = None,
    ) -> None:
        types = cell_types if cell_types is not None else getattr(extractor, "cell_types", ("code",))
        for cell_type in types:
            key = (cell_type, host_language.lower() if host_language else None)
            self._extractors.setdefault(key, []).append(extractor)
        logger.debug(f"Registered {extractor!r} for host language {host_language}")

    def get_extractors(self, cell_type: str, host_language: str | None) -> list[ForeignCodeExtractor]:
        extractors: list[ForeignCodeExtractor] = []
        if host_language:
            extractors.extend(self._extractors.get((cell_type, host_language.lower()), []))
        extractors.extend(self._extractors.get((cell_type, None), []))
        return extractors


# IPython cell magics: magic name -> (language, file extension)
IPYTHON_CELL_MAGICS: dict[str, tuple[str, str]] = {
    "markdown": ("markdown", "md"),
    "html": ("html", "html"),
    "javascript": ("javascript", "js"),
    "js": ("javascript", "js"),
    "sql": ("sql", "sql"),
    "bash": ("shellscript", "sh"),
    "R": ("r", "R"),
}


def cell_magic_pattern(magic: str) -> re.Pattern[str]:
    """Pattern matching a whole cell that starts with ``%%magic``."""
    return re.compile(
        rf"\A%%{re.escape(magic)}(?:[ \t][^\n]*)?\n(?P<code>.*)\Z",
        re.DOTALL,
    )


def default_registry() -> ExtractorRegistry:
    """Registry with the notebook extractors enabled out of the box."""
    registry = ExtractorRegistry()
    registry.register(
        TextForeignCodeExtractor("markdown", ["markdown"], standalone=True, file_extension="md"),
        None,
    )
    registry.register(
        TextForeignCodeExtractor("text", ["raw"], standalone=False, file_extension="txt"),
        None,
    )
    for magic, (language, extension) in IPYTHON_CELL_MAGICS.items():
        registry.register(
            RegExpForeignCodeExtractor(
                language,
                cell_magic_pattern(magic),
                standalone=False,
                file_extension=extension,
            ),
            "python",
        )
    return registry
