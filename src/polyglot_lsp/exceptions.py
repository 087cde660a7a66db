"""Exceptions raised by polyglot-lsp."""

from __future__ import annotations


class PolyglotLspError(Exception):
    """Base class for all polyglot-lsp errors."""


class AdapterDisposedError(PolyglotLspError):
    """Raised when a disposed widget adapter is asked to do work."""


class DocumentDisposedError(PolyglotLspError):
    """Raised when a disposed virtual document is updated."""


class ConnectionNotReadyError(PolyglotLspError):
    """Raised when a request is made on a connection that is not ready."""


class UnknownServerError(PolyglotLspError):
    """Raised for a server identifier that has no spec or connection."""
