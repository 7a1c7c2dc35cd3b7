"""
Merchant Enrichment Engine - merchant type, description and category per transaction.

Matching order:
1. Exact lowercased merchant match against the cache
2. Fuzzy match: corporate suffixes stripped, then equality or containment
   (both cleaned names longer than 3 characters)
3. Completion service, in batches, for cache misses only

Output order always equals input order; a failed batch passes its
transactions through unenriched.
"""
import re
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Tuple

from .config import Config
from .errors import CompletionError, StoreError
from .models import RawTransaction, EnrichedTransaction, MerchantCacheEntry
from .schema import CATEGORY_VOCABULARY, MerchantMetadata


CORPORATE_SUFFIX = re.compile(r'\s+(pty|ltd|limited|corp|corporation|inc)\.?$', re.I)


def clean_merchant_key(name: str) -> str:
    cleaned = name.lower().strip()
    # Repeat so "pty ltd" loses both tokens
    while True:
        stripped = CORPORATE_SUFFIX.sub('', cleaned).strip()
        if stripped == cleaned:
            return cleaned
        cleaned = stripped


# ─────────────────────────────────────────────────────────────
# Merchant Cache
# ─────────────────────────────────────────────────────────────

class MerchantCache(ABC):
    @abstractmethod
    def lookup(self, merchant: str) -> Optional[MerchantCacheEntry]:
        pass


class InMemoryMerchantCache(MerchantCache):
    def __init__(self, entries: Optional[Dict[str, MerchantCacheEntry]] = None):
        self.entries: Dict[str, MerchantCacheEntry] = {}
        for key, entry in (entries or {}).items():
            self.entries.setdefault(key.lower().strip(), entry)

    def __len__(self):
        return len(self.entries)

    def lookup(self, merchant: str) -> Optional[MerchantCacheEntry]:
        if not merchant:
            return None
        search_key = merchant.lower().strip()

        if search_key in self.entries:
            return self.entries[search_key]

        cleaned_search = clean_merchant_key(search_key)
        if len(cleaned_search) <= 3:
            return None
        for cached_key, entry in self.entries.items():
            cleaned_cached = clean_merchant_key(cached_key)
            if len(cleaned_cached) <= 3:
                continue
            if (cleaned_search == cleaned_cached or cleaned_cached in cleaned_search
                    or cleaned_search in cleaned_cached):
                logging.info(f"[Merchant Cache] Fuzzy match: \"{merchant}\" -> \"{cached_key}\"")
                return entry
        return None


def build_merchant_cache(store) -> InMemoryMerchantCache:
    """
    Rebuild the cache from every stored transaction carrying enrichment data.
    First row per merchant wins.
    """
    try:
        rows = store.load_enriched_transactions()
    except StoreError as e:
        logging.error(f"[Merchant Cache] Error loading merchants: {e}")
        rows = []

    entries: Dict[str, MerchantCacheEntry] = {}
    for row in rows:
        merchant = row.get("merchant")
        data = row.get("originalData")
        if not merchant or not data:
            continue
        # Rows stored after a failed enrichment batch carry no metadata
        if not data.get("merchantType") and not row.get("categoryName"):
            continue
        key = merchant.lower().strip()
        if key in entries:
            continue
        entries[key] = MerchantCacheEntry(
            merchant_type=data.get("merchantType"),
            merchant_description=data.get("merchantDescription"),
            category=row.get("categoryName"),
        )

    logging.info(f"[Merchant Cache] Loaded {len(entries)} known merchants")
    return InMemoryMerchantCache(entries)


# ─────────────────────────────────────────────────────────────
# Prompts
# ─────────────────────────────────────────────────────────────

ENRICH_SYSTEM = "You are a merchant metadata expert. Provide industry type and description for each merchant."

ENRICH_PROMPT = """For each merchant, provide:
1. merchantType (e.g., "Technology/Database", "Telecommunications", "E-commerce", "Streaming Service")
2. merchantDescription (1 sentence about what they do)
3. category (one of: {categories})

Merchants:
{merchants}

Return JSON: {{"0": {{"merchantType": "...", "merchantDescription": "...", "category": "..."}}, "1": {{...}}}}"""

DETAILED_PROMPT = """Analyze each merchant transaction and extract detailed information. For merchant names with
location codes (e.g., "DOG ED CENTRE 49144 WEST WODONGA"), identify the actual business name and location.

For each merchant, provide:
1. businessName - The actual business/brand name (e.g., "Dog Education Centre")
2. merchantType - Industry/business type (e.g., "Pet Services/Dog Training", "E-commerce/Retail")
3. location - City and country if identifiable (e.g., "West Wodonga, Australia")
4. merchantDescription - What they do, in one sentence
5. category - One of: {categories}
6. latitude - Approximate latitude of the location as a number, null if unknown
7. longitude - Approximate longitude of the location as a number, null if unknown

Merchants:
{merchants}

Return JSON: {{"0": {{"businessName": "...", "merchantType": "...", "location": "...", "merchantDescription": "...", "category": "...", "latitude": -36.1167, "longitude": 146.8833}}, "1": {{...}}}}"""


class MerchantEnrichmentEngine:
    """
    Usage:
        engine = MerchantEnrichmentEngine(completion, cache_factory=lambda: build_merchant_cache(store))
        enriched = engine.enrich(transactions)
    """

    def __init__(self, completion, cache_factory=None, batch_size: int = None):
        self.completion = completion
        self.cache_factory = cache_factory or InMemoryMerchantCache
        self.batch_size = batch_size or Config.ENRICH_BATCH_SIZE

    def enrich(self, transactions: List[RawTransaction], detailed: bool = False,
               use_cache: bool = True, batch_size: int = None) -> List[EnrichedTransaction]:
        """
        Args:
            transactions: Extracted transactions, any order
            detailed: Also request businessName, location and coordinates
            use_cache: Consult the merchant cache before calling the service
            batch_size: Override the per-call batch size

        Returns:
            One EnrichedTransaction per input, in input order
        """
        enriched: List[Optional[EnrichedTransaction]] = [None] * len(transactions)
        unknown: List[Tuple[int, RawTransaction]] = []

        cache = self.cache_factory() if use_cache else None
        for idx, txn in enumerate(transactions):
            entry = cache.lookup(txn.merchant) if cache is not None else None
            if entry:
                enriched[idx] = self._from_cache(txn, entry)
            else:
                unknown.append((idx, txn))

        logging.info(f"[Merchant Cache] {len(transactions) - len(unknown)} cached, {len(unknown)} unknown")

        size = batch_size or self.batch_size
        for start in range(0, len(unknown), size):
            batch = unknown[start:start + size]
            for idx, item in zip((i for i, _ in batch), self._enrich_batch([t for _, t in batch], detailed)):
                enriched[idx] = item

        # Every slot is filled by now; guard anyway so nothing is ever dropped
        return [item if item is not None else EnrichedTransaction.passthrough(txn)
                for item, txn in zip(enriched, transactions)]

    def _from_cache(self, txn: RawTransaction, entry: MerchantCacheEntry) -> EnrichedTransaction:
        result = EnrichedTransaction.passthrough(txn)
        result.merchant_type = entry.merchant_type
        result.merchant_description = entry.merchant_description
        result.category = entry.category
        return result

    def _enrich_batch(self, batch: List[RawTransaction], detailed: bool) -> List[EnrichedTransaction]:
        merchant_list = "\n".join(f"{i}: {t.merchant or t.description}" for i, t in enumerate(batch))
        template = DETAILED_PROMPT if detailed else ENRICH_PROMPT
        prompt = template.format(categories=", ".join(CATEGORY_VOCABULARY), merchants=merchant_list)
        operation = "Merchant Metadata Re-Enhancement" if detailed else "Merchant Metadata Enrichment"

        try:
            response = self.completion.complete_json(prompt, system=ENRICH_SYSTEM, operation=operation, timeout=30)
        except CompletionError as e:
            logging.error(f"[AI Enhancement] Merchant metadata enrichment failed for batch of {len(batch)}: {e}")
            return [EnrichedTransaction.passthrough(t) for t in batch]

        results = []
        for i, txn in enumerate(batch):
            item = EnrichedTransaction.passthrough(txn)
            data = response.get(str(i))
            if isinstance(data, dict):
                try:
                    meta = MerchantMetadata.model_validate(data)
                except ValueError as e:
                    logging.warning(f"[AI Enhancement] Ignoring malformed metadata for {txn.merchant}: {e}")
                else:
                    item.merchant_type = meta.merchantType or "Other"
                    item.merchant_description = meta.merchantDescription or ""
                    item.category = meta.category
                    if detailed:
                        item.business_name = meta.businessName
                        item.location = meta.location
                        item.latitude = meta.latitude
                        item.longitude = meta.longitude
            results.append(item)

        logging.info(f"[AI Enhancement] Enriched {sum(1 for r in results if r.is_enriched)} of {len(batch)} merchants in batch")
        return results
