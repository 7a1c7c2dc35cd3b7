"""
Learned extraction procedures.

A procedure is a declarative rule set produced once per statement layout
and replayed on later statements of that layout. It is data, never code:
a line regex with named groups, date formats, sign rules and an optional
amount lookahead. Replays run in a child process under a timeout, and
their output is shape-checked before anything downstream sees it.
"""
import re
import logging
import multiprocessing
from datetime import datetime
from typing import Dict, List, Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import Config
from .errors import ProcedureError
from .models import RawTransaction
from .patterns import parse_amount, extract_merchant, normalize_transactions


YEAR_PATTERN = re.compile(r'\b(20\d{2})\b')
DEFAULT_AMOUNT_PATTERN = r'-?\$?\d{1,3}(?:,\d{3})*\.\d{2}(?:\s?(?:CR|DR))?'


class ExtractionProcedure(BaseModel):
    """Rule set describing how one statement layout lists its transactions."""
    line_pattern: str
    date_formats: List[str] = Field(default_factory=lambda: ["%d/%m/%Y"])
    amount_pattern: str = DEFAULT_AMOUNT_PATTERN
    amount_lookahead: int = Field(0, ge=0, le=5)
    skip_patterns: List[str] = Field(default_factory=list)
    credit_markers: List[str] = Field(default_factory=list)
    amounts_are_debits: bool = True
    merchant_pattern: Optional[str] = None

    @field_validator('line_pattern', 'amount_pattern', 'merchant_pattern')
    @classmethod
    def must_compile(cls, v):
        if v is None:
            return v
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regex {v!r}: {e}")
        return v

    @field_validator('skip_patterns')
    @classmethod
    def skip_patterns_compile(cls, v):
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid skip pattern {pattern!r}: {e}")
        return v

    @field_validator('date_formats')
    @classmethod
    def formats_present(cls, v):
        if not v:
            raise ValueError("at least one date format is required")
        return v

    @model_validator(mode='after')
    def groups_present(self):
        groups = re.compile(self.line_pattern).groupindex
        if 'date' not in groups or 'description' not in groups:
            raise ValueError("line_pattern needs named groups 'date' and 'description'")
        if not ({'amount', 'debit', 'credit'} & set(groups)) and self.amount_lookahead == 0:
            raise ValueError("line_pattern has no amount group and amount_lookahead is 0")
        return self


def load_procedure(data: Dict[str, Any]) -> ExtractionProcedure:
    try:
        return ExtractionProcedure.model_validate(data)
    except ValidationError as e:
        raise ProcedureError(f"invalid procedure: {e.errors()[0].get('msg', e)}")


# ─────────────────────────────────────────────────────────────
# Execution
# ─────────────────────────────────────────────────────────────

def statement_year(text: str) -> int:
    m = YEAR_PATTERN.search(text[:3000])
    return int(m.group(1)) if m else datetime.now().year


def _parse_date(value: str, formats: List[str], year: int) -> Optional[str]:
    value = ' '.join(value.split())
    for fmt in formats:
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if '%Y' not in fmt and '%y' not in fmt:
            parsed = parsed.replace(year=year)
        return parsed.date().isoformat()
    return None


def _signed(raw: str, line: str, proc: ExtractionProcedure) -> Optional[float]:
    value = parse_amount(raw)
    if value == 0:
        return None
    upper = line.upper()
    if any(marker.upper() in upper for marker in proc.credit_markers) or raw.strip().upper().endswith('CR'):
        return abs(value)
    if value < 0:
        return value
    return -value if proc.amounts_are_debits else value


def apply_procedure(data: Dict[str, Any], text: str) -> List[Dict[str, Any]]:
    """
    Run a rule set over statement text.

    Pure function of its inputs; safe to run in a child process.

    Returns:
        [{date (ISO), merchant, amount, description}, ...]
    """
    proc = load_procedure(data)
    line_re = re.compile(proc.line_pattern)
    amount_re = re.compile(proc.amount_pattern)
    merchant_re = re.compile(proc.merchant_pattern) if proc.merchant_pattern else None
    skips = [re.compile(p, re.I) for p in proc.skip_patterns]
    year = statement_year(text)

    lines = text.split('\n')
    rows = []
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if any(s.search(line) for s in skips):
            continue
        m = line_re.search(line)
        if not m:
            continue

        iso = _parse_date(m.group('date'), proc.date_formats, year)
        if not iso:
            continue
        groups = m.groupdict()
        description = ' '.join((groups.get('description') or '').split())

        amount = None
        if groups.get('debit'):
            amount = -abs(parse_amount(groups['debit'])) or None
        elif groups.get('credit'):
            amount = abs(parse_amount(groups['credit'])) or None
        elif groups.get('amount'):
            amount = _signed(groups['amount'], line, proc)

        if amount is None and proc.amount_lookahead:
            for j in range(i, min(i + proc.amount_lookahead, len(lines))):
                found = amount_re.findall(lines[j])
                if found:
                    last = found[-1] if isinstance(found[-1], str) else found[-1][0]
                    amount = _signed(last, f"{line} {lines[j]}", proc)
                    if amount is not None:
                        i = j + 1
                        break

        if amount is None:
            continue

        merchant = groups.get('merchant')
        if not merchant and merchant_re:
            mm = merchant_re.search(description)
            if mm:
                merchant = mm.group(1) if mm.groups() else mm.group(0)
        rows.append({
            "date": iso,
            "merchant": (merchant or extract_merchant(description)).strip(),
            "amount": round(amount, 2),
            "description": description,
        })
    return rows


class ProcedureRunner:
    """
    Replays learned procedures with a timeout and output-shape validation.

    With isolate=True each replay runs in a one-process pool that is
    terminated if the timeout expires (runaway regexes cannot hang a request).
    """

    def __init__(self, timeout: float = None, isolate: bool = None):
        self.timeout = timeout if timeout is not None else Config.PROCEDURE_TIMEOUT
        self.isolate = Config.PROCEDURE_ISOLATION if isolate is None else isolate

    def run(self, procedure: Dict[str, Any], text: str) -> List[RawTransaction]:
        """
        Raises:
            ProcedureError: invalid rule set, timeout, non-list or empty result
        """
        load_procedure(procedure)
        rows = self._execute(procedure, text)

        if not isinstance(rows, list):
            raise ProcedureError(f"procedure returned {type(rows).__name__}, expected a list")
        if not rows:
            raise ProcedureError("procedure returned no transactions")

        transactions = normalize_transactions(rows)
        if not transactions:
            raise ProcedureError("procedure output failed validation")
        return transactions

    def _execute(self, procedure: Dict[str, Any], text: str):
        if not self.isolate:
            try:
                return apply_procedure(procedure, text)
            except ProcedureError:
                raise
            except Exception as e:
                raise ProcedureError(f"procedure raised {type(e).__name__}: {e}")

        pool = multiprocessing.Pool(processes=1)
        try:
            async_result = pool.apply_async(apply_procedure, (procedure, text))
            return async_result.get(timeout=self.timeout)
        except multiprocessing.TimeoutError:
            logging.error(f"[Procedure] Replay exceeded {self.timeout}s; terminating worker")
            raise ProcedureError(f"procedure timed out after {self.timeout}s")
        except ProcedureError:
            raise
        except Exception as e:
            raise ProcedureError(f"procedure raised {type(e).__name__}: {e}")
        finally:
            pool.terminate()
            pool.join()
