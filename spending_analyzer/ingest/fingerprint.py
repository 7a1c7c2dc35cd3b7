"""
Statement fingerprinting.

A fingerprint identifies a statement template, not a statement: dates,
amounts and long digit runs are replaced by placeholders before the
first-page text is encoded, so two periods of the same bank layout
produce the same value.
"""
import re
import base64

from .config import Config


DATE_PATTERN = re.compile(r'\d{1,2}[/-]\d{1,2}[/-]\d{2,4}')
MONTHS = (r'(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?'
          r'|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?')
MONTH_DATE_PATTERN = re.compile(
    r'\b\d{1,2}\s+' + MONTHS + r'(?:,?\s+\d{4})?\b'
    r'|\b' + MONTHS + r'\s+\d{1,2}(?:,?\s+\d{4})?\b',
    re.I,
)
AMOUNT_PATTERN = re.compile(r'\$?\d{1,3}(?:,\d{3})*\.\d{2}|\$?\d+\.\d{2}')
NUMBER_PATTERN = re.compile(r'\d{4,}')
WHITESPACE = re.compile(r'\s+')


def normalize_layout(text: str, window: int = None) -> str:
    first_page = text[:window or Config.FINGERPRINT_WINDOW]
    normalized = DATE_PATTERN.sub('DATE', first_page)
    normalized = MONTH_DATE_PATTERN.sub('DATE', normalized)
    normalized = AMOUNT_PATTERN.sub('AMOUNT', normalized)
    normalized = NUMBER_PATTERN.sub('NUMBER', normalized)
    normalized = WHITESPACE.sub(' ', normalized)
    return normalized.lower().strip()


def fingerprint(text: str, window: int = None, length: int = None) -> str:
    """
    Derive the layout fingerprint of a statement.

    Args:
        text: Full extracted statement text
        window: Characters treated as the first page (default 2000)
        length: Characters of normalized text kept (default 500)

    Returns:
        Base64 of the normalized first-page prefix
    """
    normalized = normalize_layout(text, window)
    prefix = normalized[:length or Config.FINGERPRINT_LENGTH]
    return base64.b64encode(prefix.encode('utf-8')).decode('ascii')


def decode_fingerprint(value: str) -> str:
    """Recover the normalized layout text a fingerprint was built from."""
    return base64.b64decode(value.encode('ascii')).decode('utf-8')
