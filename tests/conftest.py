"""Shared fixtures: a fake pygls client that records what is sent."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from lsprotocol import types as lsp


def make_client(capabilities: lsp.ServerCapabilities | None = None) -> MagicMock:
    """Mock ``LanguageClient`` keeping the handlers registered with ``feature``."""
    client = MagicMock()
    client.handlers = {}

    def feature(name):
        def decorator(fn):
            client.handlers[name] = fn
            return fn
        return decorator

    client.feature.side_effect = feature
    client.start_io = AsyncMock()
    client.start_tcp = AsyncMock()
    client.initialize_async = AsyncMock(
        return_value=lsp.InitializeResult(
            capabilities=capabilities
            or lsp.ServerCapabilities(
                text_document_sync=lsp.TextDocumentSyncKind.Full,
                hover_provider=True,
            )
        )
    )
    client.shutdown_async = AsyncMock()
    client.stop = AsyncMock()
    client.protocol.send_request_async = AsyncMock(return_value=None)
    return client


class ClientFactory:
    """Callable handing out a fresh mock client per connection."""

    def __init__(self, capabilities: lsp.ServerCapabilities | None = None) -> None:
        self.capabilities = capabilities
        self.clients: list[MagicMock] = []

    def __call__(self) -> MagicMock:
        client = make_client(self.capabilities)
        self.clients.append(client)
        return client


@pytest.fixture
def client_factory():
    return ClientFactory()


def opened_uris(client: MagicMock) -> list[str]:
    return [c.args[0].text_document.uri for c in client.text_document_did_open.call_args_list]


def changed_texts(client: MagicMock) -> list[str]:
    return [c.args[0].content_changes[0].text for c in client.text_document_did_change.call_args_list]


def closed_uris(client: MagicMock) -> list[str]:
    return [c.args[0].text_document.uri for c in client.text_document_did_close.call_args_list]


def saved_uris(client: MagicMock) -> list[str]:
    return [c.args[0].text_document.uri for c in client.text_document_did_save.call_args_list]
