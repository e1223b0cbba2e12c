from datetime import date

from auto_matching.category_matcher import CategoryMatcher, is_eligible
from auto_matching.models import Category, FileSourcePattern, LearnedPattern, Partner, Transaction


def _tx(tx_id="t1", **kwargs):
    return Transaction(id=tx_id, user_id="u1", date=date(2024, 3, 31), amount=-990, **kwargs)


def _fees(**kwargs):
    return Category(id="c_fees", user_id="u1", name="Bank fees", template_id="bank-fees", **kwargs)


def test_partner_match_without_file_patterns_is_boosted():
    category = _fees(matched_partner_ids=["p_bank"])
    partner = Partner(id="p_bank", name="Sparkasse", user_id="u1")
    tx = _tx(partner_id="p_bank")

    suggestions = CategoryMatcher().match_and_apply(tx, [category], [partner])

    assert suggestions[0].source == "partner"
    assert suggestions[0].confidence == 97
    assert tx.category_id == "c_fees"
    assert tx.category_confidence == 97
    assert category.transaction_count == 1


def test_partner_match_at_threshold_is_applied():
    category = _fees(matched_partner_ids=["p_bank"])
    partner = Partner(id="p_bank", name="Sparkasse", user_id="u1",
                      file_source_patterns=[FileSourcePattern("local", "kontoauszug_*.pdf", 80)])
    tx = _tx(partner_id="p_bank")

    CategoryMatcher().match_and_apply(tx, [category], [partner])

    assert tx.category_confidence == 89
    assert tx.category_id == "c_fees"


def test_pattern_only_match_is_a_suggestion():
    category = _fees(learned_patterns=[LearnedPattern(pattern="*kontofuehrung*", confidence=70)])
    tx = _tx(free_text="Kontoführung Gebühr 03/2024")

    suggestions = CategoryMatcher().match_and_apply(tx, [category])

    assert [(s.category_id, s.source, s.confidence) for s in suggestions] == [("c_fees", "pattern", 70)]
    assert tx.category_id is None
    assert tx.category_suggestions[0]["confidence"] == 70


def test_partner_and_pattern_combine_with_usage_boost():
    category = _fees(
        matched_partner_ids=["p_bank"],
        learned_patterns=[LearnedPattern(pattern="*kontofuehrung*", confidence=70)],
        transaction_count=9,
    )
    partner = Partner(id="p_bank", name="Sparkasse", user_id="u1",
                      file_source_patterns=[FileSourcePattern("local", "kontoauszug_*.pdf", 80)])
    tx = _tx(partner_id="p_bank", free_text="Kontoführung")

    suggestion = CategoryMatcher().match(tx, [category], [partner])[0]

    # 70 + 15 + log10(10) * 5
    assert suggestion.source == "partner+pattern"
    assert suggestion.confidence == 90


def test_excluded_categories():
    tx = _tx(partner_id="p_bank")
    lost = Category(id="c_lost", user_id="u1", name="Receipt lost", template_id="receipt-lost",
                    matched_partner_ids=["p_bank"])
    inactive = _fees(matched_partner_ids=["p_bank"], is_active=False)
    foreign = Category(id="c_x", user_id="u2", name="Fees", matched_partner_ids=["p_bank"])
    removed = Category(id="c_rm", user_id="u1", name="Interest", matched_partner_ids=["p_bank"])
    matcher = CategoryMatcher()
    matcher.patterns.record_manual_removal(removed, tx)

    assert matcher.match(tx, [lost, inactive, foreign, removed]) == []


def test_eligibility():
    assert is_eligible(_tx())
    assert not is_eligible(_tx(document_ids=["d1"]))
    assert not is_eligible(_tx(category_id="c1"))
    assert CategoryMatcher().match_and_apply(_tx(document_ids=["d1"]), [_fees(matched_partner_ids=["p"])]) == []


def test_manual_category_records_removal_and_learns():
    old = Category(id="c_old", user_id="u1", name="Interest", transaction_count=3)
    new = _fees()
    tx = _tx(free_text="Kontoführungsentgelt Sparkasse", partner_id="p_bank",
             category_id="c_old", category_confidence=95)

    CategoryMatcher().apply_manual_category(tx, new, [old, new])

    assert tx.category_id == "c_fees"
    assert tx.category_confidence is None
    assert [r.transaction_id for r in old.manual_removals] == ["t1"]
    assert old.transaction_count == 2
    assert new.matched_partner_ids == ["p_bank"]
    assert new.learned_patterns[0].pattern == "*kontofuehrungsentgelt*sparkasse*"
    assert new.transaction_count == 1


def test_remove_category():
    category = _fees(transaction_count=1)
    tx = _tx(category_id="c_fees", category_confidence=97)
    matcher = CategoryMatcher()

    matcher.remove_category(tx, category)

    assert tx.category_id is None
    assert category.transaction_count == 0
    assert matcher.patterns.is_manually_removed(category, "t1")
