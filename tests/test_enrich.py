from spending_analyzer.ingest.enrich import (
    InMemoryMerchantCache, MerchantEnrichmentEngine, build_merchant_cache, clean_merchant_key,
)
from spending_analyzer.ingest.errors import CompletionError
from spending_analyzer.ingest.models import MerchantCacheEntry, RawTransaction

from conftest import FakeCompletion


NETFLIX = MerchantCacheEntry("Streaming Service", "Video streaming subscription", "Subscriptions")


def txn(merchant, amount=-10.0):
    return RawTransaction(date="2024-07-01", description=f"{merchant} PURCHASE", amount=amount, merchant=merchant)


def cached(entries):
    return lambda: InMemoryMerchantCache(entries)


def test_clean_merchant_key_strips_corporate_suffixes():
    assert clean_merchant_key("Netflix Pty Ltd") == "netflix"
    assert clean_merchant_key("ACME CORP.") == "acme"
    assert clean_merchant_key("Limited Editions") == "limited editions"


def test_exact_and_fuzzy_cache_hits_make_no_calls():
    completion = FakeCompletion()
    engine = MerchantEnrichmentEngine(completion, cache_factory=cached({"netflix pty ltd": NETFLIX}))

    result = engine.enrich([txn("Netflix Pty Ltd"), txn("NETFLIX")])

    assert completion.calls == []
    assert [(r.merchant_type, r.category) for r in result] == [
        ("Streaming Service", "Subscriptions"),
        ("Streaming Service", "Subscriptions"),
    ]


def test_fuzzy_match_by_containment():
    cache = InMemoryMerchantCache({"woolworths": MerchantCacheEntry("Supermarket", "Groceries", "Groceries")})
    assert cache.lookup("WOOLWORTHS METRO") is not None


def test_short_names_never_fuzzy_match():
    cache = InMemoryMerchantCache({"anz atm": MerchantCacheEntry("Bank", "ATM", "Transfer")})
    assert cache.lookup("ANZ") is None


def test_only_cache_misses_are_sent():
    completion = FakeCompletion({"0": {"merchantType": "Supermarket", "merchantDescription": "Groceries",
                                       "category": "groceries"}})
    engine = MerchantEnrichmentEngine(completion, cache_factory=cached({"netflix": NETFLIX}))

    result = engine.enrich([txn("NETFLIX"), txn("COLES 0456")])

    assert len(completion.calls) == 1
    assert "0: COLES 0456" in completion.calls[0]["prompt"]
    assert "NETFLIX" not in completion.calls[0]["prompt"].split("Merchants:")[1]
    assert result[1].category == "Groceries"


def test_output_preserves_length_and_order():
    completion = FakeCompletion({
        "0": {"merchantType": "Fuel", "merchantDescription": "Petrol station", "category": "Transport"},
        "2": {"merchantType": "Airline", "merchantDescription": "Flights", "category": "Travel"},
    })
    engine = MerchantEnrichmentEngine(completion)
    transactions = [txn("SHELL"), txn("MYSTERY 1"), txn("QANTAS")]

    result = engine.enrich(transactions)

    assert [r.merchant for r in result] == ["SHELL", "MYSTERY 1", "QANTAS"]
    assert [r.category for r in result] == ["Transport", None, "Travel"]
    assert not result[1].is_enriched


def test_failed_batch_passes_transactions_through():
    completion = FakeCompletion(CompletionError("Merchant Metadata Enrichment", "HTTP 503", retryable=True))
    engine = MerchantEnrichmentEngine(completion)
    transactions = [txn("SHELL"), txn("QANTAS")]

    result = engine.enrich(transactions)

    assert len(result) == 2
    assert [(r.date, r.description, r.amount, r.merchant) for r in result] == \
        [(t.date, t.description, t.amount, t.merchant) for t in transactions]
    assert not any(r.is_enriched for r in result)


def test_unmatched_batched_by_twenty():
    completion = FakeCompletion(handler=lambda operation, prompt: {})
    engine = MerchantEnrichmentEngine(completion)

    result = engine.enrich([txn(f"SHOP {i}") for i in range(45)])

    assert len(completion.calls) == 3
    assert len(result) == 45


def test_detailed_variant_sets_location_fields():
    completion = FakeCompletion({"0": {
        "businessName": "Dog Education Centre", "merchantType": "Pet Services/Dog Training",
        "location": "West Wodonga, Australia", "merchantDescription": "Dog training",
        "category": "Pet Services", "latitude": "-36.1167", "longitude": 146.8833,
    }})
    engine = MerchantEnrichmentEngine(completion)

    result = engine.enrich([txn("DOG ED CENTRE 49144 WEST WODONGA")], detailed=True, use_cache=False)

    assert completion.operations() == ["Merchant Metadata Re-Enhancement"]
    assert "businessName" in completion.calls[0]["prompt"]
    assert result[0].business_name == "Dog Education Centre"
    assert result[0].latitude == -36.1167
    assert result[0].original_data()["location"] == "West Wodonga, Australia"


def test_cache_built_from_stored_transactions(store):
    category_id = store.get_or_create_category("Subscriptions")
    store.insert_transactions([
        {"id": "t1", "bankStatementId": "s1", "merchant": "Netflix Pty Ltd", "categoryId": category_id,
         "originalData": {"merchantType": "Streaming Service", "merchantDescription": "Video streaming"}},
        {"id": "t2", "bankStatementId": "s1", "merchant": "NETFLIX PTY LTD", "categoryId": None,
         "originalData": {"merchantType": "Other", "merchantDescription": "later duplicate"}},
        {"id": "t3", "bankStatementId": "s1", "merchant": "Raw Only", "categoryId": None, "originalData": None},
    ])

    cache = build_merchant_cache(store)

    assert len(cache) == 1
    entry = cache.lookup("netflix")
    assert (entry.merchant_type, entry.category) == ("Streaming Service", "Subscriptions")


def test_cache_load_failure_means_empty_cache(store):
    store.fail_on.add("load_enriched_transactions")
    assert len(build_merchant_cache(store)) == 0


def test_cache_skips_rows_stored_without_metadata(store):
    store.insert_transactions([
        {"id": "t1", "bankStatementId": "s1", "merchant": "Woolworths", "categoryId": None,
         "originalData": {"merchantType": None, "merchantDescription": None, "rawDescription": "Woolworths"}},
    ])

    cache = build_merchant_cache(store)

    assert len(cache) == 0
    assert cache.lookup("Woolworths") is None
