"""
Polyglot LSP

Synchronizes multi-language editor documents (files, notebooks, consoles)
with single-language Language Server Protocol servers through composed
virtual documents.
"""

__version__ = "0.1.0"


# Import on demand to avoid pulling in pygls for position/extraction users
def get_session():
    from polyglot_lsp.session import LspSession
    return LspSession

__all__ = ["get_session", "__version__"]
