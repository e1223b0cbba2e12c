from datetime import date
from unittest.mock import MagicMock

import pytest

from auto_matching.errors import ExternalServiceError, ValidationError
from auto_matching.models import LearnedPattern, Partner, Transaction
from auto_matching.partner_matcher import PartnerMatcher, looks_like_company_name


def _tx(tx_id="t1", user_id="u1", **kwargs):
    kwargs.setdefault("date", date(2024, 3, 15))
    kwargs.setdefault("amount", -5000)
    return Transaction(id=tx_id, user_id=user_id, **kwargs)


def test_iban_match_is_applied_with_full_confidence():
    partner = Partner(id="p1", name="Acme", user_id="u1", ibans=["AT611904300234573201"])
    tx = _tx(counterparty_iban="AT61 1904 3002 3457 3201")
    matcher = PartnerMatcher()

    result = matcher.resolve_and_apply(tx, [partner])

    assert result.best_match.source == "iban"
    assert tx.partner_id == "p1"
    assert tx.partner_confidence == 100
    assert tx.partner_match_source == "iban"
    assert tx.partner_type == "user"
    assert tx.partner_suggestions[0]["partner_id"] == "p1"


def test_invalid_transaction_is_rejected_before_scoring():
    with pytest.raises(ValidationError):
        PartnerMatcher().resolve(_tx(date=None), [])
    with pytest.raises(ValidationError):
        PartnerMatcher().resolve(_tx(amount=12.5), [])


def test_user_partner_wins_over_global_partner():
    iban = "DE89370400440532013000"
    global_partner = Partner(id="g1", name="Acme", user_id=None, ibans=[iban])
    user_partner = Partner(id="p1", name="Acme", user_id="u1", ibans=[iban])

    result = PartnerMatcher().resolve(_tx(counterparty_iban=iban), [global_partner, user_partner])

    assert result.best_match.partner_id == "p1"
    assert [c.partner_id for c in result.suggestions] == ["p1", "g1"]


def test_partners_of_other_tenants_are_ignored():
    iban = "DE89370400440532013000"
    other = Partner(id="p2", name="Acme", user_id="u2", ibans=[iban])
    result = PartnerMatcher().resolve(_tx(counterparty_iban=iban), [other], allow_ai=False)
    assert result.best_match is None
    assert result.suggestions == []


def test_vat_and_website_matchers():
    vat_partner = Partner(id="p1", name="Hetzner", user_id="u1", vat_id="DE 812 871 812")
    web_partner = Partner(id="p2", name="Figma", user_id="u1", website="https://www.figma.com/")

    vat = PartnerMatcher().resolve(_tx(free_text="Rechnung DE812871812 Server"), [vat_partner, web_partner])
    web = PartnerMatcher().resolve(_tx(free_text="FIGMA.COM MONTHLY"), [vat_partner, web_partner])

    assert (vat.best_match.partner_id, vat.best_match.source, vat.best_match.confidence) == ("p1", "vat", 95)
    assert (web.best_match.partner_id, web.best_match.source, web.best_match.confidence) == ("p2", "website", 90)


def test_alias_glob_match():
    partner = Partner(id="p1", name="Amazon", user_id="u1", aliases=["*amzn*mktp*"])
    result = PartnerMatcher().resolve(_tx(free_text="AMZN Mktp DE 302-1234"), [partner])
    assert result.best_match.source == "alias"
    assert result.best_match.confidence == 90


def test_low_confidence_candidates_become_top_suggestions():
    partners = [
        Partner(id="p_acme", name="Acme", user_id="u1"),
        Partner(id="p_cloud", name="Acme Cloud", user_id="u1"),
        Partner(id="p_services", name="Services", user_id="u1"),
        Partner(id="p_cs", name="Cloud Services", user_id="u1"),
        Partner(id="p_zeta", name="Zeta Consulting", user_id="u1"),
    ]
    tx = _tx(counterparty_name_hint="Acme Cloud Services")
    matcher = PartnerMatcher()

    result = matcher.resolve(tx, partners)
    applied = matcher.apply(tx, result, partners)

    assert result.best_match is None
    assert not applied
    assert tx.partner_id is None
    assert [c.partner_id for c in result.suggestions] == ["p_cs", "p_cloud", "p_services"]
    assert all(c.source == "fuzzy" and c.confidence < 89 for c in result.suggestions)
    assert len(tx.partner_suggestions) == 3


def test_fuzzy_auto_apply_learns_a_pattern():
    partner = Partner(id="p1", name="Acme Cloud Services GmbH", user_id="u1")
    matcher = PartnerMatcher()
    tx = _tx(counterparty_name_hint="ACME CLOUD SERVICES GMBH")

    matcher.resolve_and_apply(tx, [partner])

    assert tx.partner_match_source == "fuzzy"
    assert tx.partner_confidence == 90
    assert [lp.pattern for lp in partner.learned_patterns] == ["*acme*cloud*services*"]

    # 次の取引は学習パターンで当たる
    follow_up = _tx("t2", free_text="SEPA ACME CLOUD SERVICES 99")
    result = matcher.resolve(follow_up, [partner])
    assert result.best_match.source == "pattern"
    assert result.learned_pattern is partner.learned_patterns[0]


def test_global_partner_is_not_taught_by_one_tenant():
    shared = Partner(id="g1", name="Acme Cloud Services GmbH", user_id=None)
    matcher = PartnerMatcher()
    tx = _tx(counterparty_name_hint="ACME CLOUD SERVICES GMBH")

    matcher.resolve_and_apply(tx, [shared])

    assert tx.partner_id == "g1"
    assert tx.partner_match_source == "fuzzy"
    assert shared.learned_patterns == []


def test_global_pattern_usage_is_not_stamped_with_tenant_ids():
    lp = LearnedPattern(pattern="*acme*cloud*services*", confidence=95)
    shared = Partner(id="g1", name="Acme", user_id=None, learned_patterns=[lp])
    tx = _tx(free_text="SEPA ACME CLOUD SERVICES 99")

    PartnerMatcher().resolve_and_apply(tx, [shared])

    assert tx.partner_match_source == "pattern"
    assert lp.source_transaction_ids == []


def test_manual_partner_records_removal_and_rematches():
    old = Partner(id="p_old", name="Netto", user_id="u1")
    new = Partner(id="p_new", name="Netflix", user_id="u1")
    tx = _tx(free_text="NETFLIX.COM Subscription", partner_id="p_old",
             partner_match_source="fuzzy", partner_confidence=70)
    waiting = _tx("t2", free_text="Netflix subscription March")
    assigned = _tx("t3", free_text="Netflix subscription April", partner_id="p_other")
    foreign = _tx("t4", user_id="u2", free_text="Netflix subscription")

    rematched = PartnerMatcher().apply_manual_partner(tx, new, [old, new], [waiting, assigned, foreign])

    assert tx.partner_id == "p_new"
    assert tx.partner_match_source == "manual"
    assert tx.partner_confidence == 100
    assert [r.transaction_id for r in old.manual_removals] == ["t1"]
    assert new.learned_patterns[0].pattern == "*netflix*subscription*"
    assert rematched == [waiting]
    assert waiting.partner_id == "p_new"
    assert waiting.partner_match_source == "pattern"
    assert assigned.partner_id == "p_other"
    assert foreign.partner_id is None


def test_removed_transaction_is_not_matched_by_pattern_again():
    partner = Partner(id="p1", name="Acme", user_id="u1")
    matcher = PartnerMatcher()
    matcher.patterns.add_learned_pattern(partner, "*acme*", 95)
    tx = _tx(free_text="ACME")
    matcher.patterns.record_manual_removal(partner, tx, partner_name=partner.name)

    result = matcher.resolve(tx, [partner], allow_ai=False)
    assert all(c.source != "pattern" for c in result.suggestions)


def test_ai_lookup_creates_partner_when_nothing_matches():
    client = MagicMock()
    client.complete.return_value = (
        '```json\n{"found": true, "name": "Hetzner Online", "aliases": ["Hetzner"], '
        '"website": "hetzner.com", "vatId": "DE812871812"}\n```'
    )
    partners = []
    tx = _tx(counterparty_name_hint="HETZNER ONLINE GMBH")

    result = PartnerMatcher(ai_client=client).resolve_and_apply(tx, partners)

    assert result.best_match.source == "ai_lookup"
    assert result.best_match.confidence == 89
    assert len(partners) == 1
    created = partners[0]
    assert created.name == "Hetzner Online"
    assert created.user_id == "u1"
    assert created.vat_id == "DE812871812"
    assert tx.partner_id == created.id
    client.complete.assert_called_once()


def test_ai_lookup_failure_leaves_transaction_unmatched():
    client = MagicMock()
    client.complete.side_effect = ExternalServiceError("timeout")
    tx = _tx(counterparty_name_hint="HETZNER ONLINE GMBH")

    result = PartnerMatcher(ai_client=client).resolve_and_apply(tx, [])

    assert result.best_match is None
    assert tx.partner_id is None


def test_ai_lookup_skipped_for_generic_text():
    client = MagicMock()
    PartnerMatcher(ai_client=client).resolve(_tx(free_text="SEPA Lastschrift 12345"), [])
    client.complete.assert_not_called()
    assert not looks_like_company_name("Kartenzahlung 0815")
    assert looks_like_company_name("Hetzner Online")
