from datetime import date

from auto_matching.assignment import assign_for_partner, document_pool, greedy_assign, score_pairs, transaction_pool
from auto_matching.config_loader import DocumentConfig
from auto_matching.models import Document, ScoredPair, Transaction


def _pairs(*rows):
    return [ScoredPair(d, t, s, []) for d, t, s in rows]


def test_greedy_assign_uses_each_side_once():
    result = greedy_assign(_pairs(
        ("d1", "t1", 90),
        ("d1", "t2", 88),
        ("d2", "t1", 87),
        ("d2", "t2", 60),
        ("d3", "t3", 40),
    ))

    assert [(m.document_id, m.transaction_id) for m in result.auto_matches] == [("d1", "t1")]
    assert [(s.document_id, s.transaction_id) for s in result.suggestions] == [("d2", "t2")]
    assert result.suggestion_count == 1


def test_greedy_assign_ties_follow_input_order():
    result = greedy_assign(_pairs(("d2", "t1", 90), ("d1", "t1", 90)))
    assert result.auto_matches[0].document_id == "d2"
    assert result.suggestions == []


def test_greedy_assign_thresholds_are_configurable():
    result = greedy_assign(_pairs(("d1", "t1", 80)), auto_threshold=75, suggestion_threshold=70)
    assert len(result.auto_matches) == 1


def test_score_pairs_skips_rejected_documents():
    tx = Transaction(id="t1", user_id="u1", date=date(2024, 3, 15), amount=-5000, rejected_document_ids=["d1"])
    docs = [
        Document(id="d1", user_id="u1", extracted_amount=5000, extracted_date=date(2024, 3, 15)),
        Document(id="d2", user_id="u1", extracted_amount=5000, extracted_date=date(2024, 3, 15)),
    ]
    pairs = score_pairs(docs, [tx], workers=2)
    assert [p.document_id for p in pairs] == ["d2"]
    assert pairs[0].score == 65


def _fixture():
    txs = [
        Transaction(id="t1", user_id="u1", date=date(2024, 3, 15), amount=-5000, partner_id="p1"),
        Transaction(id="t2", user_id="u1", date=date(2024, 3, 1), amount=-1200, partner_id="p1"),
        Transaction(id="t3", user_id="u1", date=date(2024, 3, 10), amount=-700, partner_id="p2"),
        Transaction(id="t4", user_id="u1", date=date(2024, 3, 9), amount=-900, partner_id="p1", category_id="c1"),
        Transaction(id="t5", user_id="u1", date=date(2024, 3, 8), amount=-800, partner_id="p1", document_ids=["dx"]),
    ]
    docs = [
        Document(id="d1", user_id="u1", partner_id="p1", extracted_amount=5000, extracted_date=date(2024, 3, 15)),
        Document(id="d2", user_id="u1", extracted_amount=1200, extracted_date=date(2024, 3, 1)),
        Document(id="d3", user_id="u1", extracted_amount=1200, extracted_date=date(2023, 1, 1)),
        Document(id="d4", user_id="u1", extracted_amount=5000, extracted_date=date(2024, 3, 15), is_not_invoice=True),
        Document(id="d5", user_id="u1", partner_id="p2", extracted_amount=5000, extracted_date=date(2024, 3, 15)),
    ]
    return docs, txs


def test_pools_are_scoped_to_partner_and_date_window():
    docs, txs = _fixture()
    cfg = DocumentConfig()
    tx_pool = transaction_pool("p1", txs, cfg)
    assert [t.id for t in tx_pool] == ["t1", "t2"]
    assert [d.id for d in document_pool("p1", docs, tx_pool, cfg)] == ["d1", "d2"]
    assert document_pool("p1", docs, [], cfg) == []


def test_pool_limits():
    docs, txs = _fixture()
    cfg = DocumentConfig(max_files_per_partner=1, max_transactions_per_partner=1)
    tx_pool = transaction_pool("p1", txs, cfg)
    assert [t.id for t in tx_pool] == ["t1"]
    assert len(document_pool("p1", docs, tx_pool, cfg)) == 1


def test_assign_for_partner():
    docs, txs = _fixture()
    result, doc_pool, tx_pool = assign_for_partner("p1", docs, txs)

    assert [(m.document_id, m.transaction_id, m.score) for m in result.auto_matches] == [("d1", "t1", 85)]
    assert [(s.document_id, s.transaction_id, s.score) for s in result.suggestions] == [("d2", "t2", 65)]
    remaining_docs, remaining_txs = result.unmatched(doc_pool, tx_pool)
    assert [d.id for d in remaining_docs] == ["d2"]
    assert [t.id for t in remaining_txs] == ["t2"]


def test_assign_for_partner_without_transactions():
    docs, txs = _fixture()
    result, doc_pool, tx_pool = assign_for_partner("p9", docs, txs)
    assert result.auto_matches == [] and result.suggestions == []
    assert doc_pool == [] and tx_pool == []
