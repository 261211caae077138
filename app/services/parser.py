# =============================================================================
# Text Extraction — Docling for PDFs, UTF-8 for everything else
# =============================================================================
#
# Turns the raw bytes of an uploaded study document into plain text for the
# chunker.
#
# DESIGN DECISION: Docling over PyPDF/pdfplumber because lecture notes and
# papers mix headings, lists, tables and scanned pages; Docling handles all
# of them (OCR included) and gives items in reading order.
#
# DESIGN DECISION: We iterate items rather than export_to_markdown() so
# tables can be rendered as markdown through pandas and everything else as
# its plain text, joined by blank lines. The chunker only needs text.
# =============================================================================

from __future__ import annotations

import logging
from io import BytesIO

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"


# ---------------------------------------------------------------------------
# Docling Converter — Lazy Singleton
# ---------------------------------------------------------------------------
# Initialisation loads layout/OCR models (seconds on first use) and pulls in
# a heavy import tree, so both the import and the construction are deferred
# until the first PDF arrives.
# ---------------------------------------------------------------------------

_converter = None


def _get_converter():
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        from docling.datamodel.base_models import InputFormat
        from docling.datamodel.pipeline_options import PdfPipelineOptions
        from docling.document_converter import DocumentConverter, PdfFormatOption

        logger.info(
            "Initializing Docling DocumentConverter "
            "(first use, may take a few seconds)..."
        )
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(
                    pipeline_options=pipeline_options,
                ),
            }
        )
        logger.info("Docling DocumentConverter initialized")
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def extract_text(data: bytes, mime_type: str, filename: str = "document") -> str:
    """
    Extract plain text from a document's raw bytes.

    Args:
        data: Raw file content.
        mime_type: MIME type recorded on the job.
        filename: Name used for Docling's stream and for log lines.

    Returns:
        The document text. May be empty (e.g. a blank PDF).

    Raises:
        RuntimeError: If Docling fails to convert a PDF.
    """
    if mime_type == PDF_MIME_TYPE:
        return _extract_pdf_text(data, filename)

    # Plain text, markdown, csv... Bad bytes are replaced rather than fatal;
    # a few garbled characters should not fail a whole document.
    text = data.decode("utf-8", errors="replace")
    logger.info(
        "Decoded '%s' as UTF-8 text (%s): %d characters",
        filename, mime_type, len(text),
    )
    return text


def _extract_pdf_text(data: bytes, filename: str) -> str:
    """Run Docling over PDF bytes and join the items in reading order."""
    from docling.datamodel.base_models import DocumentStream
    from docling_core.types.doc.labels import DocItemLabel

    converter = _get_converter()
    name = filename if filename.lower().endswith(".pdf") else f"{filename}.pdf"

    try:
        result = converter.convert(DocumentStream(name=name, stream=BytesIO(data)))
    except Exception as exc:
        raise RuntimeError(f"Docling failed to parse '{name}': {exc}") from exc

    parts: list[str] = []
    for item, _level in result.document.iterate_items():
        label = getattr(item, "label", None)
        if label == DocItemLabel.TABLE:
            table_md = _table_to_markdown(item)
            if table_md:
                parts.append(table_md)
            continue

        text = getattr(item, "text", "") or ""
        text = text.strip()
        if text:
            parts.append(text)

    text = "\n\n".join(parts)
    logger.info(
        "Parsed '%s' with Docling: %d items, %d characters",
        name, len(parts), len(text),
    )
    return text


def _table_to_markdown(table_item: object) -> str:
    """
    Convert a Docling TableItem to markdown.

    Falls back to the item's plain text if the DataFrame export fails.
    """
    try:
        if hasattr(table_item, "export_to_dataframe"):
            df = table_item.export_to_dataframe()
            return df.to_markdown(index=False)
    except Exception as exc:
        logger.warning("Table export to DataFrame failed: %s", exc)

    text = getattr(table_item, "text", "")
    return text.strip() if text else ""
