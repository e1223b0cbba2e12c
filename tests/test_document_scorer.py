from datetime import date, timedelta

from auto_matching.document_scorer import amount_score, date_score, is_likely_receipt, score_document
from auto_matching.models import Document, FileSourcePattern, Transaction

TX_DATE = date(2024, 3, 15)


def _tx(**kwargs):
    return Transaction(id="t1", user_id="u1", date=TX_DATE, amount=-5000, **kwargs)


def _doc(**kwargs):
    kwargs.setdefault("extracted_amount", 5000)
    kwargs.setdefault("extracted_date", TX_DATE)
    return Document(id="d1", user_id="u1", **kwargs)


def test_amount_and_date_only_is_a_suggestion():
    score, reasons = score_document(_doc(), _tx())
    assert score == 65
    assert reasons == ["Exact amount", "Same day"]


def test_same_partner_and_source_pattern_reach_auto_match():
    patterns = [FileSourcePattern(source_type="local", pattern="acme_invoice_*.pdf", confidence=80)]
    doc = _doc(partner_id="p1", file_name="acme_invoice_0042.pdf")

    score, reasons = score_document(doc, _tx(partner_id="p1"), patterns)

    assert score == 95
    assert reasons == ["Exact amount", "Same day", "Same partner", "Matches source pattern"]


def test_email_source_patterns_do_not_score_local_files():
    patterns = [FileSourcePattern(source_type="gmail", pattern="acme_invoice_*.pdf", confidence=80)]
    score, _ = score_document(_doc(file_name="acme_invoice_0042.pdf"), _tx(), patterns)
    assert score == 65


def test_receipt_mime_type_bonus_and_cap():
    patterns = [FileSourcePattern(source_type="local", pattern="*.pdf", confidence=80)]
    doc = _doc(partner_id="p1", file_name="x.pdf", mime_type="application/pdf")
    score, reasons = score_document(doc, _tx(partner_id="p1"), patterns)
    assert score == 100
    assert reasons[-1] == "Likely receipt"
    assert is_likely_receipt("image/jpeg")
    assert not is_likely_receipt("text/plain")


def test_amount_bands_are_monotonic():
    points = [amount_score(5000 + delta, -5000)[0] for delta in (0, 25, 150, 400, 1000)]
    assert points == [40, 38, 30, 20, 0]
    assert points == sorted(points, reverse=True)


def test_date_bands_are_monotonic():
    points = [date_score(TX_DATE + timedelta(days=d), TX_DATE)[0] for d in (0, 2, 5, 10, 20, 40)]
    assert points == [25, 22, 15, 8, 3, 0]
    assert date_score(TX_DATE - timedelta(days=3), TX_DATE) == (22, "Within 3 days")


def test_missing_extraction_scores_nothing():
    assert amount_score(None, -5000) == (0, None)
    assert amount_score(100, 0) == (0, None)
    assert date_score(None, TX_DATE) == (0, None)
    score, reasons = score_document(Document(id="d1", user_id="u1"), _tx())
    assert (score, reasons) == (0, [])
