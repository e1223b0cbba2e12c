from datetime import date

import pytest

from auto_matching.errors import DuplicateConnectionError, NotFoundError, PartialBatchError, ValidationError
from auto_matching.models import Connection, Document, LearnedPattern, Partner, SearchEntry, Transaction
from auto_matching.state_store import StateStore


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.setenv("MATCHING_STATE_DB", str(tmp_path / "state.db"))
    return StateStore()


def _seed(store, n=1):
    for i in range(1, n + 1):
        store.save(
            Transaction(id=f"t{i}", user_id="u1", date=date(2024, 3, i), amount=-1000 * i, partner_id="p1"),
            Document(id=f"d{i}", user_id="u1", file_name=f"receipt_{i}.pdf"),
        )


def _conn(doc_id, tx_id, connection_type="manual", confidence=None):
    return Connection(id="", user_id="u1", document_id=doc_id, transaction_id=tx_id,
                      connection_type=connection_type, match_confidence=confidence)


def test_db_path_follows_environment(store, tmp_path):
    assert store.db_path == str(tmp_path / "state.db")


def test_records_survive_a_round_trip(store):
    partner = Partner(id="p1", name="Acme", user_id="u1",
                      learned_patterns=[LearnedPattern(pattern="*acme*", confidence=90)])
    store.save(partner, Transaction(id="t1", user_id="u1", date=date(2024, 3, 15), amount=-5000))

    loaded = store.get_partner("u1", "p1")
    assert isinstance(loaded.learned_patterns[0], LearnedPattern)
    assert loaded.learned_patterns[0].pattern == "*acme*"
    assert store.get_transaction("u1", "t1").date == date(2024, 3, 15)


def test_connect_keeps_both_sides_in_sync(store):
    _seed(store)
    conn = store.connect("u1", "d1", "t1", "auto_matched", 90, ["Exact amount"])

    tx = store.get_transaction("u1", "t1")
    doc = store.get_document("u1", "d1")
    assert conn.id.startswith("conn_")
    assert tx.document_ids == ["d1"]
    assert doc.transaction_ids == ["t1"]
    assert doc.partner_id == "p1"
    assert store.list_connections("u1", "t1")[0].match_reasons == ["Exact amount"]


def test_duplicate_connection_is_rejected(store):
    _seed(store)
    store.connect("u1", "d1", "t1")
    with pytest.raises(DuplicateConnectionError):
        store.connect("u1", "d1", "t1", "ai_matched", 90)
    assert store.get_transaction("u1", "t1").document_ids == ["d1"]


def test_connection_type_and_threshold_are_validated(store):
    _seed(store)
    with pytest.raises(ValidationError):
        store.connect("u1", "d1", "t1", "guessed")
    with pytest.raises(ValidationError):
        store.connect("u1", "d1", "t1", "auto_matched", 84)
    assert store.list_connections("u1") == []


def test_disconnect_marks_rejection(store):
    _seed(store)
    store.connect("u1", "d1", "t1")
    store.disconnect("u1", "d1", "t1", rejected=True)

    tx = store.get_transaction("u1", "t1")
    assert tx.document_ids == []
    assert tx.rejected_document_ids == ["d1"]
    assert store.get_document("u1", "d1").transaction_ids == []
    with pytest.raises(NotFoundError):
        store.disconnect("u1", "d1", "t1")


def test_records_are_tenant_scoped(store):
    _seed(store)
    store.save(Partner(id="g1", name="Deutsche Bahn", user_id=None))
    with pytest.raises(NotFoundError):
        store.get_transaction("u2", "t1")
    with pytest.raises(NotFoundError):
        store.connect("u2", "d1", "t1")
    assert store.get_partner("u2", "g1").name == "Deutsche Bahn"
    assert [p.id for p in store.list_partners("u2")] == ["g1"]
    assert store.list_transactions("u2") == []


def test_commit_connections_in_chunks(store):
    _seed(store, 3)
    processed = store.commit_connections([_conn("d1", "t1"), _conn("d2", "t2"), _conn("d3", "t3")], chunk_size=2)
    assert processed == 3
    assert len(store.list_connections("u1")) == 3


def test_failed_chunk_keeps_earlier_chunks(store):
    _seed(store, 3)
    batch = [_conn("d1", "t1"), _conn("d2", "t2"), _conn("d3", "t3"), _conn("d1", "t1")]

    with pytest.raises(PartialBatchError) as exc:
        store.commit_connections(batch, chunk_size=2)

    assert exc.value.processed == 2
    assert exc.value.failed_chunk == 1
    assert isinstance(exc.value.cause, DuplicateConnectionError)
    # 失敗したチャンクは丸ごとロールバック
    assert store.get_document("u1", "d3").transaction_ids == []
    assert sorted(c.document_id for c in store.list_connections("u1")) == ["d1", "d2"]


def test_completed_search_entry_is_immutable(store):
    entry = SearchEntry(id="s1", transaction_id="t1", user_id="u1")
    store.save_search_entry(entry)
    entry.status = "completed"
    entry.completed_at = "2024-03-15T00:00:00+00:00"
    store.save_search_entry(entry)

    with pytest.raises(ValidationError):
        store.save_search_entry(entry)
    assert store.list_search_entries("u1", "t1")[0].status == "completed"


def test_audit_log(store):
    store.write_audit("INFO", "u1", "link", ["t1", "d1"], None, "linked")
    store.write_audit("ERROR", "system", "auto_match", ["p1"], None, "partial", "boom")

    entries = store.list_audit("link")
    assert len(entries) == 1
    assert entries[0]["target_ids"] == ["t1", "d1"]
    assert store.list_audit()[1]["error"] == "boom"
