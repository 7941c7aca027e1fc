"""Full-document access for context substitution."""

from libs.documents.loader import DocumentLoader, DocumentNotFoundError, UnsupportedDocumentError

__all__ = ["DocumentLoader", "DocumentNotFoundError", "UnsupportedDocumentError"]
