"""
Ingestion Orchestrator - Coordinates Extract, Enrich and Persist for one upload.

Flow: Extract (per file) → Enrich (once, over all files) → Categories → Persist

Only the analysis, statement and transaction writes are fatal. Everything
else degrades to fewer (or un-enriched) transactions and a log line.
"""
import uuid
import logging
from collections import Counter
from typing import Dict, Any, List, Optional

from .config import Config
from .engine import TransactionExtractionEngine
from .enrich import MerchantEnrichmentEngine, build_merchant_cache
from .errors import StoreError
from .formats import FormatLearningStore
from .models import UploadedDocument, RawTransaction, EnrichedTransaction, ExtractionResult
from .schema import IngestionResult, ReenhanceResult


TRANSACTION_NAMESPACE = uuid.UUID("6f0d5c8e-3b1a-4f51-9a55-2c7e8d4b9f10")


def transaction_id(bank_statement_id: str, date: str, amount: float, description: str, occurrence: int) -> str:
    """
    Stable id for a row of one bank statement. Re-inserting rows for the same
    statement id skips those already written; a new upload gets a new statement
    id and therefore new ids.
    """
    key = f"{bank_statement_id}|{date}|{amount:.2f}|{description}|{occurrence}"
    return str(uuid.uuid5(TRANSACTION_NAMESPACE, key))


class IngestionPipeline:
    """
    Usage:
        pipeline = IngestionPipeline(store, completion)
        result = pipeline.ingest(user_id, "March statements", documents)
    """

    def __init__(self, store, completion,
                 extractor: Optional[TransactionExtractionEngine] = None,
                 enricher: Optional[MerchantEnrichmentEngine] = None):
        self.store = store
        self.completion = completion
        self.formats = FormatLearningStore(store, completion)
        self.extractor = extractor or TransactionExtractionEngine(completion, self.formats)
        self.enricher = enricher or MerchantEnrichmentEngine(
            completion, cache_factory=lambda: build_merchant_cache(store),
        )

    def ingest(self, user_id: str, analysis_name: str, documents: List[UploadedDocument],
               analysis_id: Optional[str] = None) -> IngestionResult:
        """
        Process every uploaded document for one analysis session.

        Raises:
            StoreError: the analysis, statement or transaction write failed
        """
        analysis_id = analysis_id or str(uuid.uuid4())
        logging.info(f"[Upload] Received {len(documents)} files for analysis: {analysis_name}")

        # ─── 1. Extract ───
        results: List[ExtractionResult] = [self.extractor.extract(doc) for doc in documents]
        raw: List[RawTransaction] = [txn for result in results for txn in result.transactions]
        logging.info(f"[Upload] Extracted {len(raw)} transactions from {len(documents)} files")

        # ─── 2. Enrich (one pass so the merchant cache spans all files) ───
        enriched = self.enricher.enrich(raw) if raw else []

        # ─── 3. Persist ───
        self.store.create_analysis(analysis_id, user_id, analysis_name)
        try:
            statement = self._create_statement(analysis_id, user_id, documents, results)
            if enriched:
                category_ids = self._resolve_categories(enriched)
                rows = self._transaction_rows(statement["id"], user_id, enriched, category_ids)
                self.store.insert_transactions(rows)
                logging.info(f"[Upload] Saved {len(rows)} transactions with {len(category_ids)} categories")
        except StoreError:
            self._mark_failed(analysis_id)
            raise

        self._mark_completed(analysis_id, statement["id"])

        return {
            "analysisId": analysis_id,
            "transactionCount": len(enriched),
            "perFileMetadata": [result.metadata() for result in results],
            "transactions": [txn.to_dict() for txn in enriched[:Config.PREVIEW_SIZE]],
        }

    def reenhance(self, analysis_id: str) -> ReenhanceResult:
        """
        Re-run the detailed enrichment variant over every stored transaction
        of an analysis. The cache is bypassed; stored rows would match themselves.
        """
        logging.info(f"[Merchant Enhancement] Re-enhancing transactions for analysis {analysis_id}")

        statement_ids = self.store.list_statement_ids(analysis_id)
        if not statement_ids:
            return {"message": "No bank statements found", "enhanced": 0, "total": 0}

        rows = self.store.list_transactions(statement_ids)
        if not rows:
            return {"message": "No transactions found", "enhanced": 0, "total": 0}

        logging.info(f"[Merchant Enhancement] Found {len(rows)} transactions to enhance")
        raw = [RawTransaction(date=row.get("date") or "", description=row.get("description") or "",
                              amount=float(row.get("amount") or 0), merchant=row.get("merchant") or "")
               for row in rows]
        enriched = self.enricher.enrich(raw, detailed=True, use_cache=False,
                                        batch_size=Config.REENHANCE_BATCH_SIZE)

        category_cache: Dict[str, Optional[str]] = {}
        enhanced = 0
        for row, txn in zip(rows, enriched):
            if not txn.is_enriched:
                continue
            original = dict(row.get("originalData") or {})
            # Merchant column stays as the raw statement text
            original["rawMerchant"] = original.get("rawMerchant") or row.get("merchant")
            original.update({
                "businessName": txn.business_name,
                "merchantType": txn.merchant_type,
                "location": txn.location,
                "merchantDescription": txn.merchant_description,
                "latitude": txn.latitude,
                "longitude": txn.longitude,
            })
            changes: Dict[str, Any] = {"originalData": original}
            category_id = self._category_id(txn.category, category_cache)
            if category_id:
                changes["categoryId"] = category_id

            try:
                self.store.update_transaction(row["id"], changes)
                enhanced += 1
            except StoreError as e:
                logging.error(f"[Merchant Enhancement] Failed to update transaction {row['id']}: {e}")

        logging.info(f"[Merchant Enhancement] Re-enhancement complete: {enhanced} of {len(rows)}")
        return {
            "message": f"Successfully enhanced {enhanced} of {len(rows)} transactions",
            "enhanced": enhanced,
            "total": len(rows),
        }

    # ─────────────────────────────────────────────────────────────
    # Persistence helpers
    # ─────────────────────────────────────────────────────────────

    def _create_statement(self, analysis_id: str, user_id: str, documents: List[UploadedDocument],
                          results: List[ExtractionResult]) -> Dict[str, Any]:
        # Only the first file's metadata is recorded for a multi-file upload
        first = results[0].metadata() if results else None
        record = {
            "id": str(uuid.uuid4()),
            "userId": user_id,
            "analysisId": analysis_id,
            "filename": ", ".join(doc.filename for doc in documents),
            "status": "processing",
            "bankName": first["bankName"] if first else None,
            "statementType": first["statementType"] if first else None,
            "extractionMethod": first["extractionMethod"] if first else None,
            "formatFingerprint": first["formatFingerprint"] if first else None,
            "formatId": first["formatId"] if first else None,
            "extractionMetadata": {"transactionCount": first["transactionCount"]} if first else None,
        }
        statement = self.store.create_bank_statement(record)
        logging.info(f"[Upload] Bank: {record['bankName'] or 'Unknown'}, Method: {record['extractionMethod'] or 'N/A'}"
                     f"{' (using learned format)' if record['formatId'] else ''}")
        return statement

    def _category_id(self, name: Optional[str], cache: Dict[str, Optional[str]]) -> Optional[str]:
        if not name:
            return None
        key = name.lower()
        if key not in cache:
            try:
                cache[key] = self.store.get_or_create_category(name)
            except StoreError as e:
                logging.error(f"[Category] Could not resolve category {name}: {e}")
                cache[key] = None
        return cache[key]

    def _resolve_categories(self, transactions: List[EnrichedTransaction]) -> Dict[str, str]:
        cache: Dict[str, Optional[str]] = {}
        for txn in transactions:
            self._category_id(txn.category, cache)
        return {key: value for key, value in cache.items() if value}

    def _transaction_rows(self, statement_id: str, user_id: str, transactions: List[EnrichedTransaction],
                          category_ids: Dict[str, str]) -> List[Dict[str, Any]]:
        seen = Counter()
        rows = []
        for txn in transactions:
            key = (txn.date, round(txn.amount, 2), txn.description)
            occurrence = seen[key]
            seen[key] += 1
            rows.append({
                "id": transaction_id(statement_id, txn.date, txn.amount, txn.description, occurrence),
                "userId": user_id,
                "bankStatementId": statement_id,
                "date": txn.date,
                "description": txn.description or "",
                "merchant": txn.merchant or "",
                "amount": txn.amount,
                "status": "CONSIDER",
                "categoryId": category_ids.get(txn.category.lower()) if txn.category else None,
                "originalData": txn.original_data(),
            })
        return rows

    def _mark_completed(self, analysis_id: str, statement_id: str) -> None:
        try:
            self.store.complete_bank_statement(statement_id)
        except StoreError as e:
            logging.error(f"[Upload] Failed to update bank statement status: {e}")
        try:
            self.store.update_analysis_status(analysis_id, "completed")
        except StoreError as e:
            logging.error(f"[Upload] Failed to update analysis status: {e}")

    def _mark_failed(self, analysis_id: str) -> None:
        try:
            self.store.update_analysis_status(analysis_id, "failed")
        except StoreError as e:
            logging.error(f"[Upload] Failed to mark analysis {analysis_id} as failed: {e}")
