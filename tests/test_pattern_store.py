from datetime import date

from auto_matching.config_loader import LearningConfig
from auto_matching.models import Category, Document, Partner, Transaction
from auto_matching.pattern_store import PatternStore


def _tx(tx_id, free_text="", **kwargs):
    return Transaction(id=tx_id, user_id="u1", date=date(2024, 3, 15), amount=-5000, free_text=free_text, **kwargs)


def _partner():
    return Partner(id="p1", name="Acme", user_id="u1")


def test_manual_removals_keep_only_most_recent():
    store = PatternStore()
    partner = _partner()
    for i in range(51):
        store.record_manual_removal(partner, _tx(f"t{i}", "ACME"))

    assert len(partner.manual_removals) == 50
    assert partner.manual_removals[0].transaction_id == "t1"
    assert partner.manual_removals[-1].transaction_id == "t50"
    assert not store.is_manually_removed(partner, "t0")


def test_manual_removal_cap_is_configurable_and_deduplicated():
    store = PatternStore(LearningConfig(max_manual_removals=2))
    partner = _partner()
    store.record_manual_removal(partner, _tx("t1", "a"))
    store.record_manual_removal(partner, _tx("t1", "a"))
    assert len(partner.manual_removals) == 1

    store.record_manual_removal(partner, _tx("t2", "b"))
    store.record_manual_removal(partner, _tx("t3", "c"))
    assert [r.transaction_id for r in partner.manual_removals] == ["t2", "t3"]


def test_add_learned_pattern_merges_duplicates():
    store = PatternStore()
    partner = _partner()
    store.add_learned_pattern(partner, "*acme*", 80, ["t1"])
    merged = store.add_learned_pattern(partner, "*ACME*", 90, ["t2", "t1"])

    assert len(partner.learned_patterns) == 1
    assert merged.confidence == 90
    assert merged.source_transaction_ids == ["t1", "t2"]


def test_add_learned_pattern_clamps_confidence():
    store = PatternStore()
    partner = _partner()
    assert store.add_learned_pattern(partner, "*a*", 150).confidence == 100


def test_find_matching_pattern_skips_removed_and_weak_patterns():
    store = PatternStore()
    partner = _partner()
    store.add_learned_pattern(partner, "*acme*", 40)
    tx = _tx("t1", "ACME invoice")
    assert store.find_matching_pattern(partner, tx) is None

    strong = store.add_learned_pattern(partner, "*acme*invoice*", 95)
    assert store.find_matching_pattern(partner, tx) is strong

    store.record_manual_removal(partner, tx)
    assert store.find_matching_pattern(partner, tx) is None


def test_find_matching_pattern_honours_exclude():
    store = PatternStore()
    partner = _partner()
    lp = store.add_learned_pattern(partner, "*acme*", 90)
    lp.exclude.append("*refund*")
    assert store.find_matching_pattern(partner, _tx("t1", "ACME REFUND")) is None
    assert store.find_matching_pattern(partner, _tx("t2", "ACME")) is lp


def test_learn_from_correction():
    store = PatternStore()
    category = Category(id="c1", user_id="u1", name="Streaming")
    learned = store.learn_from_correction(category, _tx("t1", "NETFLIX.COM Subscription 4711"))

    assert learned.pattern == "*netflix*subscription*"
    assert learned.confidence == 90
    assert learned.source_transaction_ids == ["t1"]


def test_learn_from_correction_rejects_pattern_matching_a_removal():
    store = PatternStore()
    partner = _partner()
    store.record_manual_removal(partner, _tx("t1", "Acme Cloud"))

    assert store.learn_from_correction(partner, _tx("t2", "ACME CLOUD 123")) is None
    assert partner.learned_patterns == []


def test_learn_from_transaction_without_usable_tokens():
    store = PatternStore()
    partner = _partner()
    assert store.learn_from_transaction(partner, _tx("t1", "SEPA 12345"), 90) is None


def test_learn_file_source_pattern_counts_usage():
    store = PatternStore()
    partner = _partner()
    first = store.learn_file_source_pattern(partner, Document(id="d1", user_id="u1", file_name="acme_invoice_0042.pdf"), "t1")
    again = store.learn_file_source_pattern(partner, Document(id="d2", user_id="u1", file_name="acme_invoice_0043.pdf"), "t2")

    assert first is again
    assert len(partner.file_source_patterns) == 1
    assert again.pattern == "acme_invoice_*.pdf"
    assert again.source_type == "local"
    assert again.usage_count == 2
    assert again.confidence == 80
    assert again.source_transaction_ids == ["t1", "t2"]
