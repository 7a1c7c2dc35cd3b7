"""
Supabase Store - persistence for analyses, statements, transactions,
categories and learned statement formats.

Read failures are reported as StoreError so callers can decide whether
they are fatal; the pipeline treats only the core writes that way.
"""
import uuid
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

from supabase import create_client, Client
from postgrest.exceptions import APIError

from spending_analyzer.ingest.config import Config
from spending_analyzer.ingest.errors import StoreError, DuplicateFormatError


UNIQUE_VIOLATION = "23505"


def new_id() -> str:
    return str(uuid.uuid4())


class SupabaseStore:
    """
    Usage:
        store = SupabaseStore()               # from SUPABASE_* env
        store = SupabaseStore(client=client)  # injected client
    """

    def __init__(self, url: str = None, key: str = None, client: Optional[Client] = None):
        self.url = url or Config.SUPABASE_URL
        self.key = key or Config.SUPABASE_SERVICE_ROLE_KEY or Config.SUPABASE_KEY
        self.client = client

        if self.client is None and self.url and self.key:
            self.client = create_client(self.url, self.key)
            logging.info("Supabase client initialized.")
        elif self.client is None:
            logging.warning("Supabase not configured (SUPABASE_URL / key missing).")

    def is_configured(self) -> bool:
        return self.client is not None

    def _table(self, name: str):
        if self.client is None:
            raise StoreError("Supabase client is not configured")
        return self.client.table(name)

    def _execute(self, query, action: str):
        try:
            return query.execute()
        except APIError as e:
            raise StoreError(f"{action} failed: {e.message}") from e
        except Exception as e:
            raise StoreError(f"{action} failed: {e}") from e

    # ─────────────────────────────────────────────────────────────
    # Analyses & Statements
    # ─────────────────────────────────────────────────────────────

    def create_analysis(self, analysis_id: str, user_id: str, name: str) -> Dict[str, Any]:
        res = self._execute(self._table("SpendingAnalysis").insert({
            "id": analysis_id,
            "userId": user_id,
            "name": name,
            "status": "processing",
        }), "Create analysis")
        return res.data[0]

    def update_analysis_status(self, analysis_id: str, status: str) -> None:
        self._execute(self._table("SpendingAnalysis").update({"status": status}).eq("id", analysis_id),
                      "Update analysis status")

    def create_bank_statement(self, record: Dict[str, Any]) -> Dict[str, Any]:
        res = self._execute(self._table("BankStatement").insert(record), "Create bank statement")
        return res.data[0]

    def complete_bank_statement(self, statement_id: str) -> None:
        self._execute(self._table("BankStatement").update({
            "status": "completed",
            "processedAt": datetime.now().isoformat(),
        }).eq("id", statement_id), "Complete bank statement")

    def list_statement_ids(self, analysis_id: str) -> List[str]:
        res = self._execute(self._table("BankStatement").select("id").eq("analysisId", analysis_id),
                            "Fetch bank statements")
        return [row["id"] for row in res.data or []]

    # ─────────────────────────────────────────────────────────────
    # Categories
    # ─────────────────────────────────────────────────────────────

    def find_category(self, name: str) -> Optional[Dict[str, Any]]:
        res = self._execute(self._table("Category").select("*").ilike("name", name).limit(1), "Find category")
        return res.data[0] if res.data else None

    def create_category(self, name: str) -> Dict[str, Any]:
        res = self._execute(self._table("Category").insert({
            "id": new_id(),
            "name": name,
            "isSystem": False,
        }), "Create category")
        logging.info(f"[Category] Created new category: {name}")
        return res.data[0]

    def get_or_create_category(self, name: str) -> Optional[str]:
        """Case-insensitive lookup before insert; returns the category id."""
        existing = self.find_category(name)
        if existing:
            return existing["id"]
        return self.create_category(name)["id"]

    # ─────────────────────────────────────────────────────────────
    # Transactions
    # ─────────────────────────────────────────────────────────────

    def insert_transactions(self, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        self._execute(self._table("Transaction").upsert(rows, on_conflict="id", ignore_duplicates=True),
                      "Insert transactions")
        return len(rows)

    def load_enriched_transactions(self) -> List[Dict[str, Any]]:
        res = self._execute(
            self._table("Transaction")
            .select("merchant, originalData, category:Category(name)")
            .not_.is_("originalData", "null"),
            "Load known merchants",
        )
        rows = []
        for row in res.data or []:
            category = row.get("category")
            if isinstance(category, list):
                category = category[0] if category else None
            rows.append({
                "merchant": row.get("merchant"),
                "originalData": row.get("originalData"),
                "categoryName": category.get("name") if category else None,
            })
        return rows

    def list_transactions(self, statement_ids: List[str]) -> List[Dict[str, Any]]:
        res = self._execute(
            self._table("Transaction")
            .select("id, date, amount, merchant, description, originalData")
            .in_("bankStatementId", statement_ids),
            "Fetch transactions",
        )
        return res.data or []

    def update_transaction(self, txn_id: str, changes: Dict[str, Any]) -> None:
        self._execute(self._table("Transaction").update(changes).eq("id", txn_id), "Update transaction")

    # ─────────────────────────────────────────────────────────────
    # Learned Formats
    # ─────────────────────────────────────────────────────────────

    def find_format_by_fingerprint(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        res = self._execute(
            self._table("StatementFormat").select("*").eq("formatFingerprint", fingerprint).limit(1),
            "Find statement format",
        )
        return res.data[0] if res.data else None

    def get_format(self, format_id: str) -> Optional[Dict[str, Any]]:
        res = self._execute(self._table("StatementFormat").select("*").eq("id", format_id).limit(1),
                            "Get statement format")
        return res.data[0] if res.data else None

    def insert_format(self, record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            res = self._table("StatementFormat").insert(record).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DuplicateFormatError(record["formatFingerprint"]) from e
            raise StoreError(f"Save statement format failed: {e.message}") from e
        except Exception as e:
            raise StoreError(f"Save statement format failed: {e}") from e
        return res.data[0]

    def update_format_usage(self, format_id: str, used_at: str) -> Optional[Dict[str, Any]]:
        current = self.get_format(format_id)
        if current is None:
            return None
        res = self._execute(self._table("StatementFormat").update({
            "lastUsedAt": used_at,
            "useCount": int(current.get("useCount") or 0) + 1,
        }).eq("id", format_id), "Update format usage")
        return res.data[0] if res.data else None
