import os

# Keep the Flask app's log file out of the working tree
os.environ.setdefault("LOG_FILE", os.devnull)

import copy
import uuid

import pytest

from spending_analyzer.ingest.errors import CompletionError, DuplicateFormatError, StoreError
from spending_analyzer.ingest.formats import FormatLearningStore
from spending_analyzer.ingest.procedure import ProcedureRunner


# ─────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────

class FakeCompletion:
    """
    Scripted completion service.

    Responses are consumed in order; an Exception instance is raised instead
    of returned. A handler(operation, prompt) takes over once the script is
    empty. Every call is recorded.
    """

    def __init__(self, *responses, handler=None):
        self.responses = list(responses)
        self.handler = handler
        self.calls = []

    def complete_json(self, prompt, system=None, operation="Completion", timeout=None, max_retries=None):
        self.calls.append({"operation": operation, "prompt": prompt, "system": system})
        return self._next(operation, prompt)

    def complete_vision_json(self, prompt, image_b64, system=None, operation="Vision Completion",
                             timeout=None, max_retries=None):
        self.calls.append({"operation": operation, "prompt": prompt, "system": system, "image": image_b64})
        return self._next(operation, prompt)

    def is_configured(self):
        return True

    def operations(self):
        return [c["operation"] for c in self.calls]

    def _next(self, operation, prompt):
        if self.responses:
            response = self.responses.pop(0)
        elif self.handler:
            response = self.handler(operation, prompt)
        else:
            raise CompletionError(operation, "no scripted response")
        if isinstance(response, Exception):
            raise response
        return copy.deepcopy(response)


class FakeStore:
    """In-memory stand-in for SupabaseStore."""

    def __init__(self):
        self.analyses = {}
        self.statements = {}
        self.transactions = {}
        self.categories = {}
        self.formats = {}
        self.usage_stamps = []
        self.fail_on = set()

    def _maybe_fail(self, operation):
        if operation in self.fail_on:
            raise StoreError(f"{operation} failed")

    # Analyses & statements
    def create_analysis(self, analysis_id, user_id, name):
        self._maybe_fail("create_analysis")
        self.analyses[analysis_id] = {"id": analysis_id, "userId": user_id, "name": name, "status": "processing"}
        return dict(self.analyses[analysis_id])

    def update_analysis_status(self, analysis_id, status):
        self._maybe_fail("update_analysis_status")
        self.analyses[analysis_id]["status"] = status

    def create_bank_statement(self, record):
        self._maybe_fail("create_bank_statement")
        self.statements[record["id"]] = dict(record)
        return dict(record)

    def complete_bank_statement(self, statement_id):
        self._maybe_fail("complete_bank_statement")
        self.statements[statement_id]["status"] = "completed"
        self.statements[statement_id]["processedAt"] = "now"

    def list_statement_ids(self, analysis_id):
        return [s["id"] for s in self.statements.values() if s["analysisId"] == analysis_id]

    # Categories
    def find_category(self, name):
        for row in self.categories.values():
            if row["name"].lower() == name.lower():
                return dict(row)
        return None

    def create_category(self, name):
        self._maybe_fail("create_category")
        row = {"id": str(uuid.uuid4()), "name": name, "isSystem": False}
        self.categories[row["id"]] = row
        return dict(row)

    def get_or_create_category(self, name):
        existing = self.find_category(name)
        if existing:
            return existing["id"]
        return self.create_category(name)["id"]

    def category_name(self, category_id):
        row = self.categories.get(category_id)
        return row["name"] if row else None

    # Transactions
    def insert_transactions(self, rows):
        self._maybe_fail("insert_transactions")
        for row in rows:
            self.transactions.setdefault(row["id"], copy.deepcopy(row))
        return len(rows)

    def load_enriched_transactions(self):
        self._maybe_fail("load_enriched_transactions")
        return [
            {
                "merchant": row.get("merchant"),
                "originalData": row.get("originalData"),
                "categoryName": self.category_name(row.get("categoryId")),
            }
            for row in self.transactions.values()
            if row.get("originalData") is not None
        ]

    def list_transactions(self, statement_ids):
        return [copy.deepcopy(row) for row in self.transactions.values()
                if row["bankStatementId"] in statement_ids]

    def update_transaction(self, txn_id, changes):
        self._maybe_fail("update_transaction")
        self.transactions[txn_id].update(copy.deepcopy(changes))

    # Learned formats
    def find_format_by_fingerprint(self, fingerprint):
        for row in self.formats.values():
            if row["formatFingerprint"] == fingerprint:
                return dict(row)
        return None

    def get_format(self, format_id):
        row = self.formats.get(format_id)
        return dict(row) if row else None

    def insert_format(self, record):
        self._maybe_fail("insert_format")
        if self.find_format_by_fingerprint(record["formatFingerprint"]):
            raise DuplicateFormatError(record["formatFingerprint"])
        self.formats[record["id"]] = copy.deepcopy(record)
        return dict(record)

    def update_format_usage(self, format_id, used_at):
        row = self.formats.get(format_id)
        if row is None:
            return None
        row["useCount"] = int(row.get("useCount") or 0) + 1
        row["lastUsedAt"] = used_at
        self.usage_stamps.append(used_at)
        return dict(row)


# ─────────────────────────────────────────────────────────────
# Sample statements
# ─────────────────────────────────────────────────────────────

WESTPAC_ROWS = [
    ("02/07/2024", "WOOLWORTHS 1234 SYDNEY", "45.20"),
    ("05/07/2024", "NETFLIX.COM MELBOURNE", "16.99"),
    ("09/07/2024", "SHELL COLES EXPRESS", "78.10"),
    ("14/07/2024", "JB HI-FI BROADWAY", "249.00"),
    ("21/07/2024", "UBER TRIP HELP.UBER.COM", "23.45"),
    ("28/07/2024", "TELSTRA PREPAID", "30.00"),
]


def westpac_statement(rows=None, account="032000 12345678", opening="1,250.00", closing="807.26",
                      period=("01/07/2024", "31/07/2024")):
    """Single-line Westpac layout; the period footer sits after every amount."""
    rows = WESTPAC_ROWS if rows is None else rows
    lines = [
        "WESTPAC BANKING CORPORATION",
        "Statement of Account",
        f"Account Number {account}",
        f"Opening Balance ${opening}",
        "",
        "Date Description Amount",
    ]
    lines += [f"{d} {desc} {amount}" for d, desc, amount in rows]
    lines += [
        "",
        f"Closing Balance ${closing}",
        f"Statement Period {period[0]} to {period[1]}",
    ]
    return "\n".join(lines)


WESTPAC_PROCEDURE = {
    "line_pattern": r"^(?P<date>\d{2}/\d{2}/\d{4})\s+(?P<description>.+?)\s+(?P<amount>\d{1,3}(?:,\d{3})*\.\d{2})$",
    "date_formats": ["%d/%m/%Y"],
    "amount_lookahead": 0,
    "skip_patterns": ["balance"],
    "credit_markers": [],
    "amounts_are_debits": True,
}


def assisted_rows(rows=None):
    """What the assisted extractor returns for a westpac_statement."""
    rows = WESTPAC_ROWS if rows is None else rows
    out = []
    for d, desc, amount in rows:
        day, month, year = d.split("/")
        out.append({
            "date": f"{year}-{month}-{day}",
            "description": desc,
            "amount": -float(amount),
            "merchant": desc.split()[0],
        })
    return out


# ─────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def runner():
    return ProcedureRunner(isolate=False)


@pytest.fixture
def formats(store, completion, runner):
    return FormatLearningStore(store, completion, runner=runner)
