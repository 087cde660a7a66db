"""
Configuration for polyglot-lsp.

Server specs say how to reach a language server and which languages it
serves; ``LspSettings`` is the user-facing blob (JupyterLab-style
``languageServers`` mapping plus global logging flags).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from lsprotocol import types as lsp

logger = logging.getLogger(__name__)

DEFAULT_RANK = 50


@dataclass(frozen=True)
class ServerSpec:
    """How to start one language server."""

    server_id: str
    command: tuple[str, ...] = ()
    languages: tuple[str, ...] = ()
    rank: int = DEFAULT_RANK
    configuration: dict[str, Any] = field(default_factory=dict)
    initialization_options: dict[str, Any] | None = None

    def serves(self, language: str) -> bool:
        return language.lower() in self.languages

    def resolve_section(self, section: str | None) -> Any:
        """Look up a dotted configuration section (``"python.analysis"``)."""
        value: Any = self.configuration
        if section:
            for part in section.split("."):
                if isinstance(value, dict) and part in value:
                    value = value[part]
                else:
                    return {}
        return value


# Known servers: id -> spec
KNOWN_SERVERS: dict[str, ServerSpec] = {
    spec.server_id: spec
    for spec in (
        ServerSpec("pyright", ("pyright-langserver", "--stdio"), ("python",), rank=60),
        ServerSpec("basedpyright", ("basedpyright-langserver", "--stdio"), ("python",), rank=55),
        ServerSpec("pylsp", ("pylsp",), ("python",)),
        ServerSpec("ty", ("ty", "server"), ("python",), rank=40),
        ServerSpec("r-languageserver", ("R", "--slave", "-e", "languageserver::run()"), ("r",)),
        ServerSpec("marksman", ("marksman", "server"), ("markdown",)),
        ServerSpec("sql-language-server", ("sql-language-server", "up", "--method", "stdio"), ("sql",)),
        ServerSpec("bash-language-server", ("bash-language-server", "start"), ("shellscript",)),
    )
}

TRACE_VALUES = {
    "off": lsp.TraceValue.Off,
    "messages": lsp.TraceValue.Messages,
    "verbose": lsp.TraceValue.Verbose,
}


@dataclass
class LspSettings:
    """Settings shared by every connection."""

    servers: dict[str, ServerSpec] = field(default_factory=lambda: dict(KNOWN_SERVERS))
    log_all_communication: bool = False
    trace: str = "off"
    blank_lines_between_cells: int = 2
    incremental_sync: bool = False
    idle_timeout: float | None = None

    @property
    def trace_value(self) -> lsp.TraceValue:
        return TRACE_VALUES.get(self.trace, lsp.TraceValue.Off)

    def server(self, server_id: str) -> ServerSpec | None:
        return self.servers.get(server_id)

    def servers_for(self, language: str) -> list[ServerSpec]:
        """Specs serving ``language``, best rank first (ties by id)."""
        matching = [s for s in self.servers.values() if s.serves(language)]
        return sorted(matching, key=lambda s: (-s.rank, s.server_id))

    def solve_server(self, language: str) -> ServerSpec | None:
        candidates = self.servers_for(language)
        return candidates[0] if candidates else None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LspSettings:
        """Build settings from a JupyterLab-style settings blob.

        User entries in ``languageServers`` are merged over the known
        defaults; unknown ids need ``command`` and ``languages``.
        """
        servers = dict(KNOWN_SERVERS)
        for server_id, options in (data.get("languageServers") or {}).items():
            if not isinstance(options, dict):
                logger.warning(f"Ignoring malformed settings for server '{server_id}'")
                continue
            base = servers.get(server_id, ServerSpec(server_id))
            spec = replace(
                base,
                command=tuple(options.get("command", base.command)),
                languages=tuple(l.lower() for l in options.get("languages", base.languages)),
                rank=int(options.get("rank", base.rank)),
                configuration=options.get("configuration", base.configuration) or {},
                initialization_options=options.get(
                    "initializationOptions", base.initialization_options
                ),
            )
            if not spec.command:
                logger.warning(f"Server '{server_id}' has no command, it cannot be started")
            servers[server_id] = spec

        return cls(
            servers=servers,
            log_all_communication=bool(data.get("logAllCommunication", False)),
            trace=str(data.get("setTrace") or "off"),
            blank_lines_between_cells=int(data.get("blankLinesBetweenCells", 2)),
            incremental_sync=bool(data.get("incrementalSync", False)),
            idle_timeout=data.get("idleTimeout"),
        )

    @classmethod
    def load(cls, path: str | Path) -> LspSettings:
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
