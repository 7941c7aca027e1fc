"""
Loads full document text for file-backed sources.

Used when retrieved chunks cover a small or heavily sampled document and the
whole document is cheaper to read than its fragments. Text-like files are
read as UTF-8, markdown loses its YAML front matter, PDF text comes from
PyMuPDF and DOCX paragraphs from python-docx. Anything else raises
``UnsupportedDocumentError`` and the caller keeps chunk-level content.
"""

import asyncio
import re
from pathlib import Path
from typing import Union

import structlog

logger = structlog.get_logger(__name__)

TEXT_EXTENSIONS = frozenset({
    ".txt", ".md", ".markdown", ".rst", ".csv", ".tsv", ".json",
    ".yaml", ".yml", ".xml", ".html", ".htm", ".log", ".org",
})
MARKDOWN_EXTENSIONS = frozenset({".md", ".markdown"})
PDF_EXTENSION = ".pdf"
DOCX_EXTENSION = ".docx"
SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | {PDF_EXTENSION, DOCX_EXTENSION}

_FRONT_MATTER = re.compile(r"\A---[ \t]*\r?\n.*?\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


class DocumentNotFoundError(FileNotFoundError):
    """The requested document does not exist under the documents root."""


class UnsupportedDocumentError(ValueError):
    """The document exists but its text cannot be extracted."""


def strip_front_matter(text: str) -> str:
    """Drop a leading ``---`` delimited YAML block, keeping the body."""
    return _FRONT_MATTER.sub("", text, count=1)


def extract_pdf_text(path: Path) -> str:
    import fitz

    with fitz.open(str(path)) as doc:
        return "\n\n".join(page.get_text() for page in doc)


def extract_docx_text(path: Path) -> str:
    from docx import Document

    doc = Document(str(path))
    return "\n\n".join(para.text for para in doc.paragraphs)


def read_document(path: Path) -> str:
    """Blocking text extraction by file extension; run it off the event loop."""
    suffix = path.suffix.lower()
    if suffix == PDF_EXTENSION:
        return extract_pdf_text(path)
    if suffix == DOCX_EXTENSION:
        return extract_docx_text(path)
    text = path.read_text(encoding="utf-8", errors="replace")
    if suffix in MARKDOWN_EXTENSIONS:
        return strip_front_matter(text)
    return text


class DocumentLoader:
    """
    Reads documents under a configured root directory.

    Features:
    - Relative paths resolve against the root, absolute paths must live under it
    - Extraction runs in a worker thread
    - Undecodable bytes in text files are replaced rather than failing the load

    Usage:
        loader = DocumentLoader("./data/documents")
        text = await loader.load("notes/2024/plan.md")
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser().resolve()

    def resolve(self, path: Union[str, Path]) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        candidate = candidate.resolve()
        if not candidate.is_relative_to(self.root):
            raise DocumentNotFoundError(f"{path} is outside the documents root")
        return candidate

    async def load(self, path: Union[str, Path]) -> str:
        """
        Load the full text of a document.

        Raises:
            DocumentNotFoundError: Path missing or outside the root
            UnsupportedDocumentError: Unknown format, or a PDF/DOCX that cannot be parsed
        """
        resolved = self.resolve(path)
        if not resolved.is_file():
            raise DocumentNotFoundError(str(path))
        suffix = resolved.suffix.lower()
        if suffix not in SUPPORTED_EXTENSIONS:
            raise UnsupportedDocumentError(f"Unsupported document type: {resolved.suffix or 'none'}")

        try:
            content = await asyncio.to_thread(read_document, resolved)
        except Exception as e:
            if suffix in TEXT_EXTENSIONS:
                raise
            logger.warning("Document extraction failed", path=str(resolved), error=str(e))
            raise UnsupportedDocumentError(f"Cannot extract text from {resolved.name}") from e

        logger.debug("Document loaded", path=str(resolved), chars=len(content))
        return content
