"""
Document Type Detector - container format by extension, issuing bank by content.

Bank rules are applied in order; first match wins. Institutions whose
keywords overlap with others must sit above them.
"""
import logging
from typing import Optional, List, Tuple

from .config import Config
from .errors import UnsupportedDocumentError
from .models import DetectedFormat


CONTAINER_TYPES = {
    'csv': 'csv',
    'pdf': 'pdf',
    'png': 'image',
    'jpg': 'image',
    'jpeg': 'image',
    'gif': 'image',
    'webp': 'image',
    'ofx': 'ofx',
    'qif': 'qif',
}

# (keywords, bank name, statement type)
BANK_RULES: List[Tuple[Tuple[str, ...], str, str]] = [
    (("american express", "amex"), "American Express", "credit_card"),
    (("commonwealth bank", "commbank"), "Commonwealth Bank", "transaction"),
    (("national australia bank", "nab"), "NAB", "transaction"),
    (("westpac",), "Westpac", "transaction"),
    (("anz bank", "australia and new zealand banking"), "ANZ", "transaction"),
    (("ing bank", "ing direct"), "ING", "transaction"),
    (("macquarie bank",), "Macquarie", "transaction"),
    (("bank of melbourne",), "Bank of Melbourne", "transaction"),
    (("st.george", "st george"), "St.George", "transaction"),
]


class DocumentTypeDetector:
    """
    Usage:
        detector = DocumentTypeDetector()
        detected = detector.detect("statement.pdf", pdf_text)
        # DetectedFormat(container_type='pdf', bank_name='Westpac', statement_type='transaction')
    """

    def __init__(self, rules: Optional[list] = None, scan_window: int = None):
        self.rules = rules if rules else BANK_RULES
        self.scan_window = scan_window or Config.BANK_SCAN_WINDOW

    def container_type(self, filename: str) -> str:
        ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
        if ext not in Config.ALLOWED_EXTENSIONS or ext not in CONTAINER_TYPES:
            raise UnsupportedDocumentError(f"Unsupported file type: {filename}")
        return CONTAINER_TYPES[ext]

    def detect(self, filename: str, text: Optional[str] = None) -> DetectedFormat:
        """
        Classify a document.

        Args:
            filename: Declared upload name (extension decides the container)
            text: Extracted text; only consulted for PDFs

        Returns:
            DetectedFormat; container_type is None for unsupported files
        """
        try:
            container = self.container_type(filename)
        except UnsupportedDocumentError:
            logging.warning(f"[Detector] Unsupported file type, skipping: {filename}")
            return DetectedFormat(container_type=None)

        if container != 'pdf' or not text:
            return DetectedFormat(container_type=container)

        bank, statement_type = self.detect_bank(text)
        logging.info(f"[Detector] {filename}: {bank} ({statement_type})")
        return DetectedFormat(container_type=container, bank_name=bank, statement_type=statement_type)

    def detect_bank(self, text: str) -> Tuple[str, str]:
        head = text[:self.scan_window].lower()
        for keywords, bank, statement_type in self.rules:
            if any(kw in head for kw in keywords):
                return bank, statement_type
        return "Unknown", "unknown"
