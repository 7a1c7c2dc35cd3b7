from spending_analyzer.ingest.errors import CompletionError
from spending_analyzer.ingest.fingerprint import fingerprint
from spending_analyzer.ingest.formats import FormatLearningStore
from spending_analyzer.ingest.models import LearnedFormat
from spending_analyzer.ingest.patterns import normalize_transactions

from conftest import FakeCompletion, WESTPAC_PROCEDURE, assisted_rows, westpac_statement


def lesson(procedure=None, confidence=0.9):
    return {
        "formatDescription": "Westpac single-line layout: date, description, amount",
        "procedure": procedure or WESTPAC_PROCEDURE,
        "confidence": confidence,
    }


def seed_format(store, fp, format_id="existing-format", use_count=3):
    learned = LearnedFormat(
        id=format_id, fingerprint=fp, bank_name="Westpac", statement_type="transaction",
        procedure=WESTPAC_PROCEDURE, description="stored earlier",
        learned_at="2024-07-01T00:00:00", last_used_at="2024-07-01T00:00:00", use_count=use_count,
    )
    store.insert_format(learned.to_record())
    return learned


def test_learn_persists_validated_procedure(store, runner):
    text = westpac_statement()
    fp = fingerprint(text)
    completion = FakeCompletion(lesson())
    formats = FormatLearningStore(store, completion, runner=runner)

    learned = formats.learn("Westpac", "transaction", text, fp, normalize_transactions(assisted_rows()))

    assert learned is not None
    assert learned.use_count == 1
    assert learned.confidence == 0.9
    assert len(learned.sample_transactions) == 5
    assert formats.lookup(fp).id == learned.id
    assert completion.operations() == ["Format Learning"]


def test_learn_prompt_carries_first_3000_chars_only(store, runner):
    text = westpac_statement() + "\n" + "Z" * 5000
    completion = FakeCompletion(CompletionError("Format Learning", "down"))
    formats = FormatLearningStore(store, completion, runner=runner)

    assert formats.learn("Westpac", "transaction", text, fingerprint(text), []) is None
    assert "Z" * 3000 not in completion.calls[0]["prompt"]


def test_learn_rejects_procedure_that_misses_transactions(store, runner):
    text = westpac_statement()
    narrow = dict(WESTPAC_PROCEDURE, skip_patterns=["balance", "WOOLWORTHS", "NETFLIX"])
    formats = FormatLearningStore(store, FakeCompletion(lesson(narrow)), runner=runner)

    # 4 of 6 replayed is below the 80% bar
    learned = formats.learn("Westpac", "transaction", text, fingerprint(text),
                            normalize_transactions(assisted_rows()))
    assert learned is None
    assert store.formats == {}


def test_learn_rejects_malformed_lesson(store, runner):
    text = westpac_statement()
    formats = FormatLearningStore(store, FakeCompletion({"formatDescription": "no procedure"}), runner=runner)
    assert formats.learn("Westpac", "transaction", text, fingerprint(text),
                         normalize_transactions(assisted_rows())) is None


def test_learn_rejects_invalid_rule_set(store, runner):
    text = westpac_statement()
    formats = FormatLearningStore(store, FakeCompletion(lesson({"line_pattern": "(?P<date>"})), runner=runner)
    assert formats.learn("Westpac", "transaction", text, fingerprint(text),
                         normalize_transactions(assisted_rows())) is None
    assert store.formats == {}


def test_concurrent_learning_first_writer_wins(store, runner):
    text = westpac_statement()
    fp = fingerprint(text)
    seed_format(store, fp)
    formats = FormatLearningStore(store, FakeCompletion(lesson()), runner=runner)

    learned = formats.learn("Westpac", "transaction", text, fp, normalize_transactions(assisted_rows()))

    assert learned.id == "existing-format"
    assert len(store.formats) == 1


def test_record_usage_increments_exactly_n_times(store, formats):
    fp = fingerprint(westpac_statement())
    seed_format(store, fp, use_count=3)

    results = [formats.record_usage("existing-format") for _ in range(4)]

    assert results[-1].use_count == 7
    assert store.formats["existing-format"]["useCount"] == 7
    assert store.formats["existing-format"]["lastUsedAt"] == store.usage_stamps[-1]
    assert store.usage_stamps == sorted(store.usage_stamps)


def test_record_usage_unknown_format(formats):
    assert formats.record_usage("missing") is None


def test_lookup_miss(formats):
    assert formats.lookup("bm90IGEgZmluZ2VycHJpbnQ=") is None


def test_replay_uses_stored_procedure(store, formats):
    text = westpac_statement()
    learned = seed_format(store, fingerprint(text))
    transactions = formats.replay(learned, text)
    assert [t.amount for t in transactions][:2] == [-45.20, -16.99]
