"""Document text extraction for various file types.

Supports: TXT, Markdown, PDF, XLS/XLSX, DOC/DOCX, CSV, JSON, XML
"""

import asyncio
import csv
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from io import BytesIO, StringIO
from pathlib import Path

import openpyxl
import xlrd
import xmltodict
from bs4 import BeautifulSoup
from docx import Document as DocxDocument
from markdown_it import MarkdownIt
from pypdf import PdfReader

from docchat.rag.exceptions import DocumentLoadError, UnsupportedFormatError

logger = logging.getLogger(__name__)


@dataclass
class LoadedDocument:
    """Plain text of a document plus its source metadata."""

    content: str
    metadata: dict = field(default_factory=dict)


@dataclass
class Extraction:
    """Raw output of a single extractor."""

    text: str
    metadata: dict = field(default_factory=dict)


def decode_text(content: bytes) -> str:
    """Decode bytes to text, trying common encodings."""
    if content.startswith((b"\xff\xfe", b"\xfe\xff")):
        return content.decode("utf-16")
    for encoding in ["utf-8-sig", "cp1252"]:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    # latin-1 maps every byte
    return content.decode("latin-1")


class TextExtractor(ABC):
    """Base class for text extractors."""

    file_type: str = "text"

    @abstractmethod
    def extract(self, content: bytes) -> Extraction:
        """Extract text from document content."""

    @abstractmethod
    def supported_extensions(self) -> list[str]:
        """Return list of supported file extensions (lower-case, with dot)."""


class PlainTextExtractor(TextExtractor):
    """Plain text passthrough."""

    file_type = "text"

    def extract(self, content: bytes) -> Extraction:
        return Extraction(decode_text(content))

    def supported_extensions(self) -> list[str]:
        return [".txt"]


class MarkdownExtractor(TextExtractor):
    """Parse Markdown into tokens, render them and keep only the text."""

    file_type = "markdown"

    def __init__(self):
        self._md = MarkdownIt("commonmark")

    def extract(self, content: bytes) -> Extraction:
        tokens = self._md.parse(decode_text(content))
        html = self._md.renderer.render(tokens, self._md.options, {})
        text = BeautifulSoup(html, "html.parser").get_text()
        return Extraction(text)

    def supported_extensions(self) -> list[str]:
        return [".md", ".markdown"]


class PDFExtractor(TextExtractor):
    """Extract text from PDF files using pypdf."""

    file_type = "pdf"

    def extract(self, content: bytes) -> Extraction:
        reader = PdfReader(BytesIO(content))

        text_parts = []
        for page in reader.pages:
            page_text = page.extract_text()
            if page_text:
                text_parts.append(page_text)

        metadata: dict = {"page_count": len(reader.pages)}
        for key, value in (reader.metadata or {}).items():
            name = key.lstrip("/")
            if name and value is not None:
                metadata[name] = str(value)

        return Extraction("\n\n".join(text_parts), metadata)

    def supported_extensions(self) -> list[str]:
        return [".pdf"]


def _rows_to_csv(rows) -> str:
    buffer = StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    for row in rows:
        writer.writerow(["" if value is None else value for value in row])
    return buffer.getvalue()


class SpreadsheetExtractor(TextExtractor):
    """Render each sheet as CSV under a ``Sheet: <name>`` banner.

    ``.xlsx`` is read with openpyxl, legacy ``.xls`` with xlrd.
    """

    file_type = "excel"

    def extract(self, content: bytes) -> Extraction:
        if content[:4] == b"PK\x03\x04":
            sheets = self._read_xlsx(content)
        else:
            sheets = self._read_xls(content)

        parts = [f"Sheet: {name}\n{_rows_to_csv(rows)}" for name, rows in sheets]
        return Extraction("\n\n".join(parts).strip(), {"sheets": [name for name, _ in sheets]})

    @staticmethod
    def _read_xlsx(content: bytes) -> list[tuple[str, list]]:
        workbook = openpyxl.load_workbook(BytesIO(content), read_only=True, data_only=True)
        try:
            return [
                (sheet.title, list(sheet.iter_rows(values_only=True)))
                for sheet in workbook.worksheets
            ]
        finally:
            workbook.close()

    @staticmethod
    def _read_xls(content: bytes) -> list[tuple[str, list]]:
        workbook = xlrd.open_workbook(file_contents=content)
        return [
            (sheet.name, [sheet.row_values(i) for i in range(sheet.nrows)])
            for sheet in workbook.sheets()
        ]

    def supported_extensions(self) -> list[str]:
        return [".xlsx", ".xls"]


class DOCXExtractor(TextExtractor):
    """Extract raw text from Word documents using python-docx."""

    file_type = "word"

    def extract(self, content: bytes) -> Extraction:
        doc = DocxDocument(BytesIO(content))

        text_parts = [para.text.strip() for para in doc.paragraphs if para.text.strip()]

        for table in doc.tables:
            for row in table.rows:
                row_text = "\t".join(cell.text.strip() for cell in row.cells)
                if row_text.strip():
                    text_parts.append(row_text)

        return Extraction("\n\n".join(text_parts))

    def supported_extensions(self) -> list[str]:
        # Legacy binary .doc files are routed here too and fail as load errors
        return [".docx", ".doc"]


class CSVExtractor(TextExtractor):
    """Re-serialize delimited text as comma-separated CSV."""

    file_type = "csv"

    def extract(self, content: bytes) -> Extraction:
        text = decode_text(content)
        try:
            dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|")
        except csv.Error:
            dialect = csv.excel
        rows = csv.reader(StringIO(text), dialect)
        return Extraction(_rows_to_csv(rows))

    def supported_extensions(self) -> list[str]:
        return [".csv"]


class JSONExtractor(TextExtractor):
    """Pretty-print JSON documents."""

    file_type = "json"

    def extract(self, content: bytes) -> Extraction:
        parsed = json.loads(decode_text(content))
        return Extraction(json.dumps(parsed, indent=2, ensure_ascii=False))

    def supported_extensions(self) -> list[str]:
        return [".json"]


class XMLExtractor(TextExtractor):
    """Parse XML into an object tree and pretty-print it as JSON."""

    file_type = "xml"

    def extract(self, content: bytes) -> Extraction:
        parsed = xmltodict.parse(decode_text(content))
        return Extraction(json.dumps(parsed, indent=2, ensure_ascii=False))

    def supported_extensions(self) -> list[str]:
        return [".xml"]


class DocumentLoader:
    """Unified document loader that delegates to extractors by file extension.

    PDF parse failures degrade to an empty document (logged) unless
    ``degrade_pdf_errors`` is False; every other parse failure raises
    ``DocumentLoadError``.
    """

    def __init__(self, degrade_pdf_errors: bool = True):
        self.degrade_pdf_errors = degrade_pdf_errors
        self.extractors: list[TextExtractor] = [
            PlainTextExtractor(),
            MarkdownExtractor(),
            PDFExtractor(),
            SpreadsheetExtractor(),
            DOCXExtractor(),
            CSVExtractor(),
            JSONExtractor(),
            XMLExtractor(),
        ]

        # Build extension mapping
        self._extension_map: dict[str, TextExtractor] = {}
        for extractor in self.extractors:
            for extension in extractor.supported_extensions():
                self._extension_map[extension] = extractor

    def supports(self, filename: str) -> bool:
        """Check if a file name has a supported extension."""
        return Path(filename).suffix.lower() in self._extension_map

    def supported_extensions(self) -> list[str]:
        """Get all supported extensions."""
        return list(self._extension_map.keys())

    def file_type_for(self, filename: str) -> str:
        """Map a file name to its type tag (``"unknown"`` if unsupported)."""
        extractor = self._extension_map.get(Path(filename).suffix.lower())
        return extractor.file_type if extractor else "unknown"

    def load_bytes(self, content: bytes, filename: str) -> LoadedDocument:
        """Extract text from raw document bytes.

        Args:
            content: Raw document bytes
            filename: Original file name, used for dispatch and as ``source``

        Returns:
            LoadedDocument with cleaned text and metadata

        Raises:
            UnsupportedFormatError: If the extension has no extractor
            DocumentLoadError: If extraction fails
        """
        source = Path(filename).name
        extension = Path(filename).suffix.lower()
        extractor = self._extension_map.get(extension)

        if not extractor:
            raise UnsupportedFormatError(extension)

        base_metadata = {"source": source, "file_type": extractor.file_type}

        try:
            extraction = extractor.extract(content)
        except Exception as e:
            if isinstance(extractor, PDFExtractor) and self.degrade_pdf_errors:
                logger.warning(f"[Loader] PDF parse failed for {source}, continuing with empty text: {e}")
                return LoadedDocument(content="", metadata=base_metadata)
            raise DocumentLoadError(source, str(e)) from e

        text = self._clean_text(extraction.text)
        logger.debug(f"[Loader] Loaded {source}: {len(text)} characters")

        return LoadedDocument(content=text, metadata={**extraction.metadata, **base_metadata})

    async def load_file(self, path: str | Path) -> LoadedDocument:
        """Read a file from disk and extract its text."""
        path = Path(path)
        if not self.supports(path.name):
            raise UnsupportedFormatError(path.suffix.lower())
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise DocumentLoadError(path.name, str(e)) from e
        return await asyncio.to_thread(self.load_bytes, content, path.name)

    def _clean_text(self, text: str) -> str:
        """Clean and normalize extracted text."""
        # Normalize line endings
        text = text.replace("\r\n", "\n").replace("\r", "\n")

        # Remove excessive whitespace
        text = re.sub(r"[ \t]+", " ", text)

        # Strip leading/trailing whitespace from each line
        lines = [line.strip() for line in text.split("\n")]
        text = "\n".join(lines)

        # Remove excessive newlines (more than 2)
        text = re.sub(r"\n{3,}", "\n\n", text)

        return text.strip()
