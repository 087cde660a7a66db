"""
Command line interface.

``polyglot-lsp diagnose PATH`` opens a file or a notebook the way an editor
would, lets the configured language servers analyse every virtual
document, and prints the diagnostics mapped back to cells and lines.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from lsprotocol import types as lsp

from polyglot_lsp import __version__
from polyglot_lsp.adapter import LANGUAGE_EXTENSIONS, HostDiagnostic, WidgetAdapter
from polyglot_lsp.config import LspSettings
from polyglot_lsp.connection import TcpTransport
from polyglot_lsp.host import HostDocument
from polyglot_lsp.session import LspSession

logger = logging.getLogger(__name__)

EXTENSION_LANGUAGES: dict[str, str] = {ext.lower(): lang for lang, ext in LANGUAGE_EXTENSIONS.items()}


def _cell_source(source: Any) -> str:
    if isinstance(source, list):
        return "".join(source)
    return source or ""


def load_host(session: LspSession, path: Path) -> HostDocument:
    """Build a host document for a plain file or an ``.ipynb`` notebook."""
    if path.suffix == ".ipynb":
        with open(path, encoding="utf-8") as f:
            notebook = json.load(f)
        metadata = notebook.get("metadata", {})
        language = (
            metadata.get("language_info", {}).get("name")
            or metadata.get("kernelspec", {}).get("language")
            or "python"
        )
        cells = [
            (cell.get("cell_type", "code"), _cell_source(cell.get("source")))
            for cell in notebook.get("cells", [])
        ]
        return session.new_notebook(str(path), cells, language=language)

    language = EXTENSION_LANGUAGES.get(path.suffix[1:].lower(), "plaintext")
    mime_type = "text/x-ipython" if language == "python" else f"text/x-{language}"
    return session.new_file(str(path), path.read_text(encoding="utf-8"), mime_type=mime_type)


def format_diagnostic(adapter: WidgetAdapter, path: str, item: HostDiagnostic) -> str:
    severity = lsp.DiagnosticSeverity(item.diagnostic.severity).name if item.diagnostic.severity else "Error"
    location = f"{path}:{item.start.line + 1}:{item.start.column + 1}"
    if adapter.host.kind != "file":
        index = next(
            (i for i, e in enumerate(adapter.editors) if e.editor_id == item.editor_id), None
        )
        location = f"{path}:cell {index}:{item.start.line + 1}:{item.start.column + 1}"
    source = f" [{item.diagnostic.source}]" if item.diagnostic.source else ""
    return f"{location}: {severity.lower()}: {item.message}{source}"


async def diagnose(args: argparse.Namespace) -> int:
    settings = LspSettings.load(args.settings) if args.settings else LspSettings()
    if args.server:
        spec = settings.server(args.server)
        if spec is None:
            print(f"Unknown server: {args.server}", file=sys.stderr)
            return 2
        settings.servers[args.server] = replace(spec, rank=max(s.rank for s in settings.servers.values()) + 1)

    transport = None
    if args.tcp:
        if not args.server:
            print("--tcp needs --server", file=sys.stderr)
            return 2
        host, _, port = args.tcp.rpartition(":")
        transport = TcpTransport({args.server: (host or "127.0.0.1", int(port))})

    path = Path(args.path)
    session = LspSession(settings, transport=transport, root_uri=Path.cwd().as_uri())
    try:
        adapter = await session.open(load_host(session, path))
        await session.manager.wait_started()
        if not session.running_servers():
            print("No language server could be started", file=sys.stderr)
            return 2
        await asyncio.sleep(args.wait)

        count = 0
        for editor in adapter.editors:
            for item in adapter.diagnostics_by_editor().get(editor.editor_id, []):
                print(format_diagnostic(adapter, str(path), item))
                count += 1
        return 1 if count else 0
    finally:
        await session.close()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the command line."""
    parser = argparse.ArgumentParser(
        prog="polyglot-lsp",
        description="Polyglot LSP client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set the logging level (default: WARNING)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"polyglot-lsp {__version__}",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    diagnose_parser = subparsers.add_parser("diagnose", help="Print diagnostics for a file or notebook")
    diagnose_parser.add_argument("path", help="File or .ipynb notebook to analyse")
    diagnose_parser.add_argument("--server", help="Server id to prefer (e.g. pyright)")
    diagnose_parser.add_argument(
        "--wait",
        type=float,
        default=3.0,
        help="Seconds to wait for diagnostics (default: 3)",
    )
    diagnose_parser.add_argument("--settings", help="JSON settings file (languageServers, setTrace, ...)")
    diagnose_parser.add_argument("--tcp", metavar="HOST:PORT", help="Connect to a running server over TCP")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "diagnose":
        return asyncio.run(diagnose(args))
    return 2


if __name__ == "__main__":
    sys.exit(main())
