"""
Transaction Extraction Engine - one document in, RawTransactions out.

Dispatch is by container type. PDFs go through an ordered strategy list
(learned procedure -> pattern extraction -> assisted extraction); the
first strategy that returns transactions wins. A failing collaborator
call costs the current batch or file its transactions, never the upload.
"""
import json
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Callable

from .config import Config
from .detect import DocumentTypeDetector
from .errors import CompletionError, MalformedResponseError, ProcedureError
from .extract import PDFReader, CSVReader, TextReader, ImageReader
from .fingerprint import fingerprint
from .formats import FormatLearningStore
from .models import (
    UploadedDocument, DetectedFormat, RawTransaction, LearnedFormat, ExtractionResult,
)
from .patterns import PatternExtractor, ColumnHeuristicParser, normalize_transactions


# ─────────────────────────────────────────────────────────────
# Prompts
# ─────────────────────────────────────────────────────────────

CSV_SYSTEM = "You are a financial CSV parser. Extract ALL transactions accurately."

CSV_PROMPT = """Analyze this bank statement CSV data and extract transactions.

Columns found: {columns}

For EACH row, extract:
1. date (ISO format YYYY-MM-DD) - Convert DD/MM/YYYY to YYYY-MM-DD; read ambiguous dates such as 03/04 as DD/MM
2. description (transaction description)
3. amount (negative for debits, positive for credits)
4. merchant (extracted from description)

Important:
- Handle DD/MM/YYYY format (common in Australia)
- Negative amounts are expenses/debits, positive amounts are income/credits
- Include ALL transactions, skip NONE

Return JSON: {{"transactions": [{{"date": "2024-07-26", "description": "...", "amount": -50.00, "merchant": "..."}}]}}

Data to parse ({count} rows):
{rows}"""

PDF_SYSTEM = "You are a financial document analyzer. You extract transactions exactly as printed and never invent any."

PDF_PROMPT = """Extract ALL transactions from this {bank} {statement_type} bank statement.

Rules:
- Return ONLY transactions that actually appear in the text. Never invent, merge or guess transactions.
- Skip opening/closing balances, totals, interest summaries and other non-transaction lines.
- Dates must be ISO YYYY-MM-DD; convert DD/MM/YYYY. Only dates in {years} are valid.
- Debits/expenses are negative, credits/income are positive.

STATEMENT TEXT:
{text}

Return JSON: {{"transactions": [{{"date": "YYYY-MM-DD", "description": "...", "amount": -00.00, "merchant": "..."}}]}}"""

IMAGE_SYSTEM = "You are a financial document analyzer. Extract all transactions from bank statement screenshots."

IMAGE_PROMPT = """Extract ALL transactions from this bank statement screenshot. For each transaction, provide:
1. date (YYYY-MM-DD format; convert DD/MM/YYYY)
2. description
3. amount (negative for debits, positive for credits)
4. merchant name

Include ALL visible transactions. If the image shows a mobile app or website, extract all transaction data.

Return as JSON: {"transactions": [{"date": "YYYY-MM-DD", "description": "...", "amount": -00.00, "merchant": "..."}]}"""

OFX_SYSTEM = "You are a financial data parser for OFX and QIF formats."

OFX_PROMPT = """Parse this {kind} file and extract all transactions.
Dates must be YYYY-MM-DD; debits negative, credits positive.

Return as JSON: {{"transactions": [{{"date": "YYYY-MM-DD", "description": "...", "amount": -00.00, "merchant": "..."}}]}}

File content:
{text}"""


def transactions_from_response(response: Dict[str, Any], operation: str) -> List[Any]:
    rows = response.get("transactions")
    if not isinstance(rows, list):
        raise MalformedResponseError(operation, "response has no 'transactions' list")
    return rows


# ─────────────────────────────────────────────────────────────
# PDF Strategies
# ─────────────────────────────────────────────────────────────

@dataclass
class StatementContext:
    text: str
    detected: DetectedFormat
    fingerprint: str
    learned: Optional[LearnedFormat] = None


@dataclass
class StrategyOutcome:
    transactions: List[RawTransaction] = field(default_factory=list)
    method: str = "failed"
    format_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.transactions)

    @classmethod
    def failure(cls, reason: str) -> "StrategyOutcome":
        return cls(reason=reason)


class ExtractionStrategy(ABC):
    name = "strategy"

    @abstractmethod
    def attempt(self, ctx: StatementContext) -> StrategyOutcome:
        pass


class LearnedProcedureStrategy(ExtractionStrategy):
    """Replay a stored procedure; no completion call is made."""
    name = "learned_procedure"

    def __init__(self, formats: FormatLearningStore):
        self.formats = formats

    def attempt(self, ctx: StatementContext) -> StrategyOutcome:
        if not ctx.learned:
            return StrategyOutcome.failure("no learned format for fingerprint")
        try:
            transactions = self.formats.replay(ctx.learned, ctx.text)
        except ProcedureError as e:
            logging.warning(f"[PDF Parser] Learned procedure failed, falling through: {e}")
            return StrategyOutcome.failure(str(e))

        self.formats.record_usage(ctx.learned.id)
        logging.info(f"[PDF Parser] Extracted {len(transactions)} transactions using learned procedure")
        return StrategyOutcome(transactions, self.name, ctx.learned.id)


class PatternStrategy(ExtractionStrategy):
    name = "pattern"

    def __init__(self, extractor: Optional[PatternExtractor] = None):
        self.extractor = extractor or PatternExtractor()

    def attempt(self, ctx: StatementContext) -> StrategyOutcome:
        transactions = self.extractor.extract(ctx.text)
        if not transactions:
            return StrategyOutcome.failure("pattern extraction below acceptance floor")
        logging.info(f"[PDF Parser] Pattern matcher extracted {len(transactions)} transactions")
        return StrategyOutcome(transactions, self.name)


class AssistedStrategy(ExtractionStrategy):
    """
    Full extraction by the completion service, followed by learning the
    layout when the bank is known and nothing was learned for it yet.
    """
    name = "assisted"

    def __init__(self, completion, formats: FormatLearningStore):
        self.completion = completion
        self.formats = formats

    def attempt(self, ctx: StatementContext) -> StrategyOutcome:
        text = ctx.text
        if len(text) > Config.PDF_TEXT_LIMIT:
            logging.info(f"[AI Extraction] Text too large, truncating to {Config.PDF_TEXT_LIMIT} chars")
            text = text[:Config.PDF_TEXT_LIMIT]

        prompt = PDF_PROMPT.format(
            bank=ctx.detected.bank_name,
            statement_type=ctx.detected.statement_type,
            years=" and ".join(str(y) for y in Config.ACCEPTED_YEARS),
            text=text,
        )
        try:
            response = self.completion.complete_json(prompt, system=PDF_SYSTEM, operation="AI Transaction Extraction",
                                                     timeout=90)
            rows = transactions_from_response(response, "AI Transaction Extraction")
        except CompletionError as e:
            logging.error(f"[AI Extraction] Error: {e}")
            return StrategyOutcome.failure(str(e))

        transactions = normalize_transactions(rows, accepted_years=Config.ACCEPTED_YEARS)
        if not transactions:
            return StrategyOutcome.failure("assisted extraction returned no transactions")
        logging.info(f"[AI Extraction] Extracted {len(transactions)} transactions")

        if ctx.detected.bank_name == "Unknown" or ctx.learned is not None:
            return StrategyOutcome(transactions, self.name)

        learned = self.formats.learn(ctx.detected.bank_name, ctx.detected.statement_type,
                                     ctx.text, ctx.fingerprint, transactions)
        if learned is None:
            return StrategyOutcome(transactions, self.name)
        return StrategyOutcome(transactions, "assisted_learned", learned.id)


# ─────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────

class TransactionExtractionEngine:
    """
    Usage:
        engine = TransactionExtractionEngine(completion, formats)
        result = engine.extract(UploadedDocument("statement.pdf", data))
        result.transactions, result.metadata()
    """

    def __init__(self, completion, formats: FormatLearningStore,
                 detector: Optional[DocumentTypeDetector] = None,
                 strategies: Optional[List[ExtractionStrategy]] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 csv_batch_size: int = None, csv_batch_delay: float = None):
        self.completion = completion
        self.formats = formats
        self.detector = detector or DocumentTypeDetector()
        self.strategies = strategies if strategies is not None else [
            LearnedProcedureStrategy(formats),
            PatternStrategy(),
            AssistedStrategy(completion, formats),
        ]
        self.sleep = sleep
        self.csv_batch_size = csv_batch_size or Config.CSV_BATCH_SIZE
        self.csv_batch_delay = Config.CSV_BATCH_DELAY if csv_batch_delay is None else csv_batch_delay

        self.pdf_reader = PDFReader()
        self.csv_reader = CSVReader()
        self.text_reader = TextReader()
        self.image_reader = ImageReader()
        self.heuristic = ColumnHeuristicParser()

    def extract(self, document: UploadedDocument) -> ExtractionResult:
        logging.info(f"[Processing] {document.filename} ({len(document.content)} bytes)")
        container = self.detector.detect(document.filename).container_type

        if container == 'csv':
            return self.extract_csv(document)
        if container == 'pdf':
            return self.extract_pdf(document)
        if container == 'image':
            return self.extract_image(document)
        if container in ('ofx', 'qif'):
            return self.extract_ofx_qif(document, container)
        return ExtractionResult(document.filename, [], "skipped", DetectedFormat(container_type=None))

    # ─── CSV ───

    def extract_csv(self, document: UploadedDocument) -> ExtractionResult:
        detected = DetectedFormat(container_type='csv')
        try:
            rows = self.csv_reader.read_rows(document.content)
        except Exception as e:
            logging.error(f"[CSV Parser] Could not read {document.filename}: {e}")
            return ExtractionResult(document.filename, [], "failed", detected)

        if not rows:
            return ExtractionResult(document.filename, [], "csv_assisted", detected)

        columns = list(rows[0].keys())
        transactions: List[RawTransaction] = []
        used_heuristic = False

        for start in range(0, len(rows), self.csv_batch_size):
            if start > 0 and self.csv_batch_delay:
                self.sleep(self.csv_batch_delay)
            batch = rows[start:start + self.csv_batch_size]
            batch_no = start // self.csv_batch_size + 1
            operation = f"CSV Parsing (Batch {batch_no})"

            prompt = CSV_PROMPT.format(columns=", ".join(columns), count=len(batch), rows=json.dumps(batch))
            try:
                response = self.completion.complete_json(prompt, system=CSV_SYSTEM, operation=operation, timeout=45)
                parsed = normalize_transactions(transactions_from_response(response, operation))
                logging.info(f"[CSV Parser] Parsed batch {batch_no}: {len(parsed)} transactions")
            except MalformedResponseError as e:
                logging.error(f"[CSV Parser] Failed to parse response for batch {batch_no}: {e}")
                parsed = self.heuristic.parse(batch)
                used_heuristic = True
                logging.info(f"[CSV Parser] Using fallback parser: {len(parsed)} transactions")
            except CompletionError as e:
                logging.error(f"[CSV Parser] Error parsing batch {batch_no}: {e}")
                parsed = []
            transactions.extend(parsed)

        logging.info(f"[CSV Parser] Total parsed: {len(transactions)} transactions")
        method = "csv_heuristic" if used_heuristic else "csv_assisted"
        return ExtractionResult(document.filename, transactions, method, detected)

    # ─── PDF ───

    def extract_pdf(self, document: UploadedDocument) -> ExtractionResult:
        try:
            text = self.pdf_reader.read_text(document.content)
        except Exception as e:
            logging.error(f"[PDF Parser] Error processing PDF {document.filename}: {e}")
            return ExtractionResult(document.filename, [], "failed", DetectedFormat(container_type='pdf'))
        return self.extract_statement_text(document.filename, text)

    def extract_statement_text(self, filename: str, text: str) -> ExtractionResult:
        detected = self.detector.detect(filename, text)
        if not text.strip():
            logging.warning(f"[PDF Parser] No text layer in {filename}")
            return ExtractionResult(filename, [], "failed", detected)

        fp = fingerprint(text)
        logging.info(f"[PDF Parser] Statement fingerprint: {fp[:50]}...")
        learned = self.formats.lookup(fp)
        ctx = StatementContext(text=text, detected=detected, fingerprint=fp, learned=learned)

        for strategy in self.strategies:
            outcome = strategy.attempt(ctx)
            if outcome.ok:
                return ExtractionResult(filename, outcome.transactions, outcome.method, detected,
                                        fingerprint=fp, format_id=outcome.format_id)
            logging.info(f"[PDF Parser] Strategy '{strategy.name}' did not succeed: {outcome.reason}")

        logging.warning(f"[PDF Parser] All extraction strategies failed for {filename}")
        return ExtractionResult(filename, [], "failed", detected, fingerprint=fp)

    # ─── Images ───

    def extract_image(self, document: UploadedDocument) -> ExtractionResult:
        detected = DetectedFormat(container_type='image')
        logging.info(f"[Vision] Processing image: {document.filename}")
        try:
            response = self.completion.complete_vision_json(
                IMAGE_PROMPT, self.image_reader.encode(document.content),
                system=IMAGE_SYSTEM, operation="Screenshot Parsing", timeout=90,
            )
            rows = transactions_from_response(response, "Screenshot Parsing")
        except CompletionError as e:
            logging.error(f"[Vision] Error processing image: {e}")
            return ExtractionResult(document.filename, [], "failed", detected)

        transactions = normalize_transactions(rows)
        logging.info(f"[Vision] Extracted {len(transactions)} transactions from image")
        return ExtractionResult(document.filename, transactions, "vision", detected)

    # ─── OFX / QIF ───

    def extract_ofx_qif(self, document: UploadedDocument, container: str) -> ExtractionResult:
        detected = DetectedFormat(container_type=container)
        text = self.text_reader.read_text(document.content)
        prompt = OFX_PROMPT.format(kind=container.upper(), text=text)
        try:
            response = self.completion.complete_json(prompt, system=OFX_SYSTEM, operation="OFX/QIF Parsing")
            rows = transactions_from_response(response, "OFX/QIF Parsing")
        except CompletionError as e:
            logging.error(f"[OFX/QIF Parser] Error: {e}")
            return ExtractionResult(document.filename, [], "failed", detected)

        transactions = normalize_transactions(rows)
        logging.info(f"[OFX/QIF Parser] Extracted {len(transactions)} transactions")
        return ExtractionResult(document.filename, transactions, "ofx_qif", detected)
