"""Plain-text extraction per source format.

Binary office formats and PDFs go through their parsing libraries; text-like
formats are decoded as UTF-8. Every failure, including an unsupported
extension, surfaces as ``ConversionError`` so one bad file never escapes the
per-document error path.
"""

from __future__ import annotations

import csv
from collections.abc import Callable
import io
import json
from pathlib import PurePosixPath
import re
import zipfile

import docx
from docx.opc.exceptions import PackageNotFoundError as DocxPackageNotFoundError
import fitz
from lxml import etree
from pptx import Presentation
from pptx.exc import PackageNotFoundError as PptxPackageNotFoundError

from corpus.errors import ConversionError

STRUCTURED_EXTENSIONS = frozenset({".pdf", ".doc", ".docx", ".pptx"})

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_WORDLIKE = re.compile(r"[\u3000-\u9fffa-zA-Z0-9]{2,}")


def _decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ConversionError(f"not valid UTF-8 text: {exc}") from exc


def extract_pdf(content: bytes) -> str:
    with fitz.open(stream=content, filetype="pdf") as document:
        pages = [page.get_text("text").strip() for page in document]
    return "\n\n".join(page for page in pages if page)


def extract_legacy_doc(content: bytes) -> str:
    """Scrape readable words out of a binary Word 97-2003 file.

    There is no parser for the OLE format here; runs of letters, digits or CJK
    characters survive and everything else is dropped.
    """
    raw = _CONTROL_CHARS.sub(" ", content.decode("utf-8", errors="replace"))
    return " ".join(word for word in raw.split() if _WORDLIKE.search(word))


def extract_docx(content: bytes) -> str:
    document = docx.Document(io.BytesIO(content))
    blocks = [paragraph.text for paragraph in document.paragraphs if paragraph.text.strip()]

    for table in document.tables:
        rows = [
            " | ".join(cell.text.strip() for cell in row.cells)
            for row in table.rows
        ]
        if rows:
            blocks.append("\n".join(rows))

    return "\n\n".join(blocks)


def extract_pptx(content: bytes) -> str:
    presentation = Presentation(io.BytesIO(content))
    slides: list[str] = []

    for number, slide in enumerate(presentation.slides, start=1):
        lines: list[str] = []
        for shape in slide.shapes:
            if shape.has_text_frame:
                text = shape.text_frame.text.strip()
                if text:
                    lines.append(text)
            if getattr(shape, "has_table", False) and shape.has_table:
                for row in shape.table.rows:
                    lines.append(" | ".join(cell.text.strip() for cell in row.cells))
        if lines:
            slides.append(f"[Slide {number}]\n" + "\n".join(lines))

    return "\n\n".join(slides)


def extract_csv(content: bytes) -> str:
    reader = csv.DictReader(io.StringIO(_decode_text(content)))
    records = [dict(row) for row in reader]
    return json.dumps(records, ensure_ascii=False, indent=2)


def extract_json(content: bytes) -> str:
    try:
        parsed = json.loads(_decode_text(content))
    except json.JSONDecodeError as exc:
        raise ConversionError(f"invalid JSON: {exc}") from exc
    return json.dumps(parsed, ensure_ascii=False, indent=2)


def extract_plain(content: bytes) -> str:
    return _decode_text(content)


_EXTRACTORS: dict[str, Callable[[bytes], str]] = {
    ".pdf": extract_pdf,
    ".doc": extract_legacy_doc,
    ".docx": extract_docx,
    ".pptx": extract_pptx,
    ".csv": extract_csv,
    ".json": extract_json,
    ".txt": extract_plain,
    ".md": extract_plain,
    ".msg": extract_plain,
    ".eml": extract_plain,
    ".urls": extract_plain,
}


def extract_text(filename: str, content: bytes) -> str:
    suffix = PurePosixPath(filename).suffix.lower()
    extractor = _EXTRACTORS.get(suffix)
    if extractor is None:
        raise ConversionError(f"unsupported file type: {suffix or '(none)'}")

    try:
        return extractor(content)
    except ConversionError:
        raise
    except (
        zipfile.BadZipFile,
        DocxPackageNotFoundError,
        PptxPackageNotFoundError,
        etree.LxmlError,
        KeyError,
        ValueError,
        RuntimeError,
        csv.Error,
    ) as exc:
        raise ConversionError(f"failed to extract {suffix} text from {filename}: {exc}") from exc


def needs_structuring(filename: str) -> bool:
    return PurePosixPath(filename).suffix.lower() in STRUCTURED_EXTENSIONS
