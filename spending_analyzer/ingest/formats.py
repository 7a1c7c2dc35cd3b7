"""
Format Learning Store - fingerprint -> learned extraction procedure.

One LearnedFormat per fingerprint. The first successful assisted
extraction of a new layout pays for a learning call; every later
statement of that layout is replayed locally. Two uploads learning the
same layout at once resolve as first-writer-wins: the loser re-reads.
"""
import json
import uuid
import logging
from datetime import datetime
from typing import Dict, List, Any, Optional

from .config import Config
from .errors import CompletionError, ProcedureError, DuplicateFormatError, StoreError
from .models import LearnedFormat, RawTransaction
from .procedure import ProcedureRunner, load_procedure
from .schema import FormatLesson


LEARN_SYSTEM = ("You are an expert at analyzing bank statement layouts and describing, "
                "as declarative regex rules, how to extract their transactions.")

LEARN_PROMPT = """Analyze this {bank} {statement_type} bank statement and describe its transaction layout
as a rule set that a program can replay on future statements of the SAME format.

The text uses \\n line breaks. Decide whether each transaction sits on a single line or
whether its amount appears on one of the following lines.

STATEMENT TEXT (first {limit} characters):
{text}

SAMPLE TRANSACTIONS ALREADY EXTRACTED FROM THIS STATEMENT:
{samples}

RULE SET FIELDS:
- line_pattern: Python regex matched against ONE line. Named groups required: date, description.
  Optional named groups: amount (signed or unsigned), debit, credit, merchant.
- date_formats: Python strptime formats for the date group, tried in order (e.g. "%d/%m/%Y", "%d %b").
- amount_lookahead: 0 if the amount is on the same line, otherwise how many following lines (max 5) to search.
- amount_pattern: regex for the amount when it is on a following line.
- skip_patterns: regexes for header/summary/balance lines that must never produce a transaction.
- credit_markers: text that marks a line as money IN (e.g. "CR", "PAYMENT RECEIVED").
- amounts_are_debits: true if unsigned amounts are expenses.
- merchant_pattern: optional regex whose first group is the merchant inside the description.

Use regex and string rules ONLY. Expenses are negative, income positive.

Return JSON exactly:
{{"formatDescription": "one sentence describing the layout", "procedure": {{...rule set...}}, "confidence": 0.0-1.0}}"""


class FormatLearningStore:
    """
    Usage:
        formats = FormatLearningStore(store, completion)
        learned = formats.lookup(fp)
        if learned:
            transactions = formats.replay(learned, text)
    """

    def __init__(self, store, completion, runner: Optional[ProcedureRunner] = None):
        self.store = store
        self.completion = completion
        self.runner = runner or ProcedureRunner()

    def lookup(self, fingerprint: str) -> Optional[LearnedFormat]:
        try:
            row = self.store.find_format_by_fingerprint(fingerprint)
        except StoreError as e:
            logging.error(f"[Format Learning] Lookup failed: {e}")
            return None
        return LearnedFormat.from_record(row) if row else None

    def record_usage(self, format_id: str) -> Optional[LearnedFormat]:
        """Increment useCount and stamp lastUsedAt."""
        try:
            row = self.store.update_format_usage(format_id, datetime.now().isoformat())
        except StoreError as e:
            logging.error(f"[Format Learning] Failed to update usage stats: {e}")
            return None
        return LearnedFormat.from_record(row) if row else None

    def replay(self, learned: LearnedFormat, text: str) -> List[RawTransaction]:
        """
        Raises:
            ProcedureError: when the stored procedure cannot be trusted for this text
        """
        logging.info(f"[Format Learning] Replaying learned format {learned.id}: {learned.description}")
        return self.runner.run(learned.procedure, text)

    def learn(self, bank_name: str, statement_type: str, full_text: str, fingerprint: str,
              sample_transactions: List[RawTransaction]) -> Optional[LearnedFormat]:
        """
        Teach the store a new layout.

        Returns:
            The persisted LearnedFormat (or the one another request stored
            first), None when learning failed for any reason
        """
        logging.info(f"[Format Learning] Learning new format for {bank_name} ({statement_type})")
        samples = [t.to_dict() for t in sample_transactions[:Config.LEARN_SAMPLE_SIZE]]
        prompt = LEARN_PROMPT.format(
            bank=bank_name,
            statement_type=statement_type,
            limit=Config.LEARN_TEXT_LIMIT,
            text=full_text[:Config.LEARN_TEXT_LIMIT],
            samples=json.dumps(samples, indent=2),
        )

        try:
            response = self.completion.complete_json(prompt, system=LEARN_SYSTEM, operation="Format Learning")
            lesson = FormatLesson.model_validate(response)
            load_procedure(lesson.procedure)
            replayed = self.runner.run(lesson.procedure, full_text)
        except (CompletionError, ProcedureError) as e:
            logging.error(f"[Format Learning] Learning failed: {e}")
            return None
        except ValueError as e:
            logging.error(f"[Format Learning] Malformed lesson: {e}")
            return None

        expected = len(sample_transactions)
        if len(replayed) < expected * Config.LEARN_MIN_REPLAY_RATIO:
            logging.warning(f"[Format Learning] Validation failed - procedure extracted {len(replayed)} "
                            f"but assisted extraction found {expected}")
            return None

        now = datetime.now().isoformat()
        learned = LearnedFormat(
            id=str(uuid.uuid4()),
            fingerprint=fingerprint,
            bank_name=bank_name,
            statement_type=statement_type,
            procedure=lesson.procedure,
            description=lesson.formatDescription,
            sample_first_page=full_text[:Config.FINGERPRINT_WINDOW],
            sample_transactions=samples,
            confidence=lesson.confidence,
            learned_at=now,
            last_used_at=now,
            use_count=1,
        )

        try:
            self.store.insert_format(learned.to_record())
        except DuplicateFormatError:
            logging.info("[Format Learning] Format was learned concurrently; using the stored one")
            return self.lookup(fingerprint)
        except StoreError as e:
            logging.error(f"[Format Learning] Failed to save format: {e}")
            return None

        logging.info(f"[Format Learning] Saved procedure for future use (format ID: {learned.id})")
        return learned
