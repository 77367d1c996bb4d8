"""
FAA Certification RAG - PDF Text Extraction
Turns downloaded DRS PDFs into plain text with PyMuPDF
"""

import re
from loguru import logger

import fitz  # PyMuPDF


class PDFExtractionError(ValueError):
    """The PDF could not be read or contained no extractable text."""


class PDFExtractor:
    """
    Extract text from in-memory PDF documents.

    Scanned documents are not OCR'd: a PDF with no text layer is an
    extraction failure, not an empty document.
    """

    def _clean_text(self, text: str) -> str:
        """
        Clean extracted text while preserving paragraph structure.

        - Collapse runs of spaces and tabs
        - Rejoin words hyphenated across line breaks
        - Drop lines that only hold a page number
        - Limit blank lines to one paragraph break
        """
        if not text:
            return ""

        text = re.sub(r'[ \t]+', ' ', text)
        text = re.sub(r'(\w)-\n(\w)', r'\1\2', text)
        text = re.sub(r'^\d+\s*$', '', text, flags=re.MULTILINE)

        lines = [line.strip() for line in text.split('\n')]
        text = '\n'.join(lines)
        text = re.sub(r'\n{3,}', '\n\n', text)

        return text.strip()

    def extract_text(self, data: bytes) -> str:
        """
        Extract the text of every page.

        Raises:
            PDFExtractionError: if the bytes are not a readable PDF or no text was found
        """
        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                pages = [page.get_text("text", sort=True) for page in doc]
        except Exception as e:
            raise PDFExtractionError(f"Could not read PDF: {e}") from e

        text = self._clean_text("\n\n".join(pages))
        if not text:
            raise PDFExtractionError("No text extracted from PDF")

        logger.debug(f"Extracted {len(text)} chars from {len(pages)} pages")
        return text


# Singleton instance
pdf_extractor = PDFExtractor()
