"""
Pattern Layer - Deterministic transaction extraction and normalization.

This module implements:
1. Date/amount/merchant normalization shared by every extraction strategy
2. Column-heuristic parsing of CSV rows (fallback when assisted parsing fails)
3. Regex-driven statement text extraction for single-line and multi-line layouts
"""
import re
import logging
from datetime import datetime, date
from typing import Dict, List, Any, Optional, Iterable

from dateutil import parser as date_parser

from .config import Config
from .models import RawTransaction


MONTHS = {
    'january': 1, 'february': 2, 'march': 3, 'april': 4, 'may': 5, 'june': 6,
    'july': 7, 'august': 8, 'september': 9, 'october': 10, 'november': 11, 'december': 12,
}

ISO_DATE = re.compile(r'^(\d{4})[/-](\d{1,2})[/-](\d{1,2})')
DMY_DATE = re.compile(r'^(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})$')
DM_DATE = re.compile(r'^(\d{1,2})[/-](\d{1,2})$')

MONTH_NAME_DATE = re.compile(
    r'^(January|February|March|April|May|June|July|August|September|October|November|December)\s+(\d{1,2})\s+',
    re.I,
)
NUMERIC_DATE_PATTERNS = [
    re.compile(r'(\d{4}[/-]\d{1,2}[/-]\d{1,2})'),
    re.compile(r'(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})'),
    re.compile(r'(\d{1,2}[/-]\d{1,2})'),
]
STATEMENT_AMOUNT = re.compile(r'(\d{1,3}(?:,\d{3})*\.\d{2})')
CURRENCY_LINE = re.compile(r'^(UNITED STATES DOLLAR|EUROPEAN UNION EURO|AUSTRALIAN DOLLAR|AUD|USD|EUR|GBP)', re.I)
CONVERSION_LINE = re.compile(r'^AUD.*includes conversion', re.I)

TXN_TYPE_PREFIX = re.compile(
    r'^(EFTPOS|POS|VISA|DEBIT|CREDIT|PURCHASE|PAYMENT|DIRECT DEBIT|DD)\s+', re.I)
DESCRIPTION_NOISE = [
    re.compile(r'REF:\s*\d+', re.I),
    re.compile(r'\bREF\s+\d+', re.I),
    re.compile(r'CARD\s+\d{4}', re.I),
    re.compile(r'\*{4}\d{4}'),
    re.compile(r'\d{3}-\d{3}-\d{4}'),
]
TRAILING_PLACE = re.compile(
    r'\s+(UNITED STATES|NEW YORK|CALIFORNIA|SAN FRANCISCO|AMSTERDAM|DUBLIN|LONDON|SINGAPORE|AUSTRALIA)\s*$', re.I)


# ─────────────────────────────────────────────────────────────
# Normalization
# ─────────────────────────────────────────────────────────────

def _valid_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _full_year(year: int) -> int:
    return year + 2000 if year < 100 else year


def normalize_date(value: Any, default_year: Optional[int] = None) -> Optional[str]:
    """
    Normalize a statement date to ISO YYYY-MM-DD.

    Slash/dash numeric dates are read day-first (Australian statements);
    a two-part date falls back to month-first only when day-first is not
    a real calendar date. Year-less dates take default_year.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if not text:
        return None

    m = ISO_DATE.match(text)
    if m:
        d = _valid_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        return d.isoformat() if d else None

    m = DMY_DATE.match(text)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), _full_year(int(m.group(3)))
        d = _valid_date(year, month, day) or _valid_date(year, day, month)
        return d.isoformat() if d else None

    year = default_year or datetime.now().year
    m = DM_DATE.match(text)
    if m:
        first, second = int(m.group(1)), int(m.group(2))
        d = _valid_date(year, second, first) or _valid_date(year, first, second)
        return d.isoformat() if d else None

    try:
        parsed = date_parser.parse(text, dayfirst=True, default=datetime(year, 1, 1))
    except (ValueError, OverflowError):
        return None
    return parsed.date().isoformat()


def parse_amount(value: Any) -> float:
    """
    Parse a currency string into a signed float.

    Parentheses, a leading/trailing minus and a trailing DR mark a debit;
    a trailing CR marks a credit.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    if not text or text == '-':
        return 0.0

    upper = text.upper()
    negative = (text.startswith('(') and text.endswith(')')) or '-' in text or upper.endswith('DR')
    if upper.endswith('CR'):
        negative = False
    cleaned = re.sub(r'[^\d.]', '', text)
    if not cleaned or cleaned.count('.') > 1:
        return 0.0
    try:
        amount = float(cleaned)
    except ValueError:
        return 0.0
    return -abs(amount) if negative else amount


def extract_merchant(description: str) -> str:
    if not description:
        return ""
    cleaned = TXN_TYPE_PREFIX.sub('', description)
    cleaned = re.sub(r'^CARD\s+\d{4}\s+', '', cleaned)
    cleaned = re.sub(r'\s+\d{2}/\d{2}/\d{2,4}.*$', '', cleaned)
    cleaned = re.sub(r'\s+REF:.*$', '', cleaned).strip()

    parts = re.split(r'\s{2,}|\s+(?=\d{4,})', cleaned)
    if parts and parts[0].strip():
        return parts[0].strip()
    return ' '.join(cleaned.split()[:3])


def clean_description(description: str) -> str:
    text = description
    for pattern in DESCRIPTION_NOISE:
        text = pattern.sub('', text).strip()
    text = TXN_TYPE_PREFIX.sub('', text).strip()
    text = TRAILING_PLACE.sub('', text).strip()
    return re.sub(r'\s{2,}', ' ', text).strip()


def normalize_transactions(rows: Iterable[Any], accepted_years: Optional[Iterable[int]] = None,
                           default_year: Optional[int] = None) -> List[RawTransaction]:
    """
    Coerce collaborator/procedure rows into RawTransactions.

    Rows without a usable date or amount are dropped; so are rows outside
    accepted_years when it is given.
    """
    years = set(accepted_years) if accepted_years else None
    results: List[RawTransaction] = []
    dropped = 0

    for row in rows:
        if not isinstance(row, dict):
            dropped += 1
            continue
        iso = normalize_date(row.get('date'), default_year)
        raw_amount = row.get('amount')
        amount = parse_amount(raw_amount)
        if not iso or raw_amount in (None, '') or (amount == 0 and not _is_zero(raw_amount)):
            dropped += 1
            continue
        if years and int(iso[:4]) not in years:
            dropped += 1
            continue
        description = str(row.get('description') or row.get('merchant') or '').strip()
        merchant = str(row.get('merchant') or '').strip() or extract_merchant(description)
        results.append(RawTransaction(date=iso, description=description, amount=amount, merchant=merchant))

    if dropped:
        logging.info(f"[Normalize] Dropped {dropped} row(s) without a usable date/amount")
    return results


def _is_zero(value: Any) -> bool:
    try:
        return float(str(value).replace(',', '').replace('$', '')) == 0
    except ValueError:
        return False


# ─────────────────────────────────────────────────────────────
# CSV Column Heuristics
# ─────────────────────────────────────────────────────────────

class ColumnHeuristicParser:
    """
    Deterministic CSV row parser keyed on header names.

    'date' -> date, 'description'/'narrative' -> description,
    'amount'/'debit'/'credit' -> amount. Debit columns are always
    expenses and credit columns always income, whatever sign the bank used.
    """

    def parse(self, rows: List[Dict[str, Any]]) -> List[RawTransaction]:
        transactions = []
        for row in rows:
            tx = self._parse_row(row)
            if tx:
                transactions.append(tx)
        logging.info(f"[Basic Parser] Parsed {len(transactions)} of {len(rows)} rows")
        return transactions

    def _parse_row(self, row: Dict[str, Any]) -> Optional[RawTransaction]:
        iso = None
        description = ""
        amount = 0.0

        for key, value in row.items():
            key_lower = str(key).lower()
            if value is None or str(value).strip() == "":
                continue
            if 'date' in key_lower:
                iso = iso or normalize_date(value)
            elif 'description' in key_lower or 'narrative' in key_lower:
                description = str(value).strip()
            elif 'debit' in key_lower:
                parsed = parse_amount(value)
                if parsed != 0:
                    amount = -abs(parsed)
            elif 'credit' in key_lower:
                parsed = parse_amount(value)
                if parsed != 0:
                    amount = abs(parsed)
            elif 'amount' in key_lower:
                parsed = parse_amount(value)
                if parsed != 0:
                    amount = parsed

        if not iso or amount == 0:
            return None
        return RawTransaction(date=iso, description=description, amount=amount,
                              merchant=extract_merchant(description))


# ─────────────────────────────────────────────────────────────
# Statement Text Patterns
# ─────────────────────────────────────────────────────────────

class PatternExtractor:
    """
    Regex extractor for statement text.
    No AI - accepted only when it finds at least min_transactions rows.
    """

    def __init__(self, min_transactions: int = None, lookahead: int = 5, year: Optional[int] = None):
        self.min_transactions = min_transactions or Config.PATTERN_MIN_TRANSACTIONS
        self.lookahead = lookahead
        self.year = year

    def extract(self, text: str) -> List[RawTransaction]:
        """
        Returns:
            Cleaned transactions, or [] when fewer than min_transactions were found
        """
        candidates = self.find_candidates(text)
        if len(candidates) < self.min_transactions:
            logging.info(f"[Pattern Parser] Only found {len(candidates)} potential transactions "
                         f"(need at least {self.min_transactions})")
            return []

        single = sum(1 for c in candidates if c['layout'] == 'single-line')
        logging.info(f"[Pattern Parser] Format breakdown: {single} single-line, {len(candidates) - single} multi-line")

        transactions = []
        for c in candidates:
            description = clean_description(c['description'])
            if len(description) < 2:
                continue
            transactions.append(RawTransaction(
                date=c['date'],
                description=description,
                amount=c['amount'],
                merchant=extract_merchant(description),
            ))
        return transactions

    def find_candidates(self, text: str) -> List[Dict[str, Any]]:
        year = self.year or datetime.now().year
        lines = text.split('\n')
        candidates = []
        i = 0

        while i < len(lines):
            line = lines[i].strip()
            i += 1
            if len(line) < 5:
                continue

            found = self._match_date(line, year)
            if not found:
                continue
            date_str, iso = found

            rest = line[line.index(date_str) + len(date_str):].strip()
            if len(rest) < 2:
                continue

            # Single-line: date, description and amount together
            amounts = STATEMENT_AMOUNT.findall(rest)
            if amounts:
                last = amounts[-1]
                value = float(last.replace(',', ''))
                if value > 0:
                    desc = rest[:rest.rfind(last)].strip() or rest
                    candidates.append({'date': iso, 'description': desc, 'amount': -value,
                                       'layout': 'single-line'})
                    continue

            # Multi-line: amount appears within the next few lines
            for j in range(i, min(i + self.lookahead, len(lines))):
                nxt = lines[j].strip()
                if not nxt or CURRENCY_LINE.match(nxt) or CONVERSION_LINE.match(nxt):
                    continue
                amounts = STATEMENT_AMOUNT.findall(nxt)
                if not amounts:
                    continue
                value = float(amounts[-1].replace(',', ''))
                if value > 0:
                    candidates.append({'date': iso, 'description': rest, 'amount': -value,
                                       'layout': 'multi-line'})
                    i = j + 1
                    break

        return candidates

    def _match_date(self, line: str, year: int):
        m = MONTH_NAME_DATE.match(line)
        if m:
            d = _valid_date(year, MONTHS[m.group(1).lower()], int(m.group(2)))
            return (m.group(0).strip(), d.isoformat()) if d else None

        for pattern in NUMERIC_DATE_PATTERNS:
            m = pattern.search(line)
            if m:
                iso = normalize_date(m.group(1), year)
                if iso:
                    return m.group(1), iso
        return None
