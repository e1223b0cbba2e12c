"""
取引先リゾルバ

独立したマッチャーを固定の優先順で実行し、取引先候補を信頼度付きで返す。
自動適用閾値以上の候補を出したマッチャーでカスケードを止めるが、それまでに
得られた低信頼度の候補は提案として残す。
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .ai_matcher import ClaudeClient, lookup_company
from .config_loader import MatchingConfig
from .errors import ValidationError
from .models import Candidate, LearnedPattern, Partner, Transaction
from .pattern_store import PatternStore, transaction_fields
from .pattern_utils import (
    derive_pattern_from_text,
    match_pattern_flexible,
    name_similarity,
    normalize_iban,
    normalize_url,
    normalize_vat_id,
)

logger = logging.getLogger(__name__)

# マッチャーの優先順（同点時のタイブレークにも使う）
MATCHER_ORDER = ("iban", "pattern", "vat", "website", "alias", "fuzzy", "ai_lookup")
PRIORITY = {name: i + 1 for i, name in enumerate(MATCHER_ORDER)}

# 名前類似度の最低値（取引先欄 / 明細テキスト欄）
PARTNER_FIELD_MIN_SIMILARITY = 60
NAME_FIELD_MIN_SIMILARITY = 70


@dataclass
class Hit:
    candidate: Candidate
    learned_pattern: Optional[LearnedPattern] = None


@dataclass
class ResolveResult:
    best_match: Optional[Candidate] = None
    suggestions: List[Candidate] = field(default_factory=list)
    learned_pattern: Optional[LearnedPattern] = None
    # AI照会で見つかった未保存の取引先
    new_partner: Optional[Partner] = None


def validate_transaction(tx: Transaction):
    if not tx.id or not tx.user_id:
        raise ValidationError("transaction requires id and user_id")
    if tx.date is None:
        raise ValidationError(f"transaction {tx.id} has no date")
    if not isinstance(tx.amount, int):
        raise ValidationError(f"transaction {tx.id} amount must be integer minor units")


def looks_like_company_name(text: Optional[str]) -> bool:
    """AI照会に回す価値があるテキストか（定型語と数字だけなら False）"""
    if not text:
        return False
    return derive_pattern_from_text(text, max_tokens=1) is not None


class PartnerMatcher:
    def __init__(
        self,
        config: Optional[MatchingConfig] = None,
        pattern_store: Optional[PatternStore] = None,
        ai_client: Optional[ClaudeClient] = None,
    ):
        self.config = config or MatchingConfig()
        self.cfg = self.config.partner
        self.patterns = pattern_store or PatternStore(self.config.learning, self.cfg)
        self.ai_client = ai_client

    # ---- 個別マッチャー（副作用なし） ----

    def _match_iban(self, tx: Transaction, partner: Partner) -> Optional[Hit]:
        iban = normalize_iban(tx.counterparty_iban)
        if iban and any(normalize_iban(p) == iban for p in partner.ibans):
            return self._hit(partner, "iban", self.cfg.iban_confidence)
        return None

    def _match_pattern(self, tx: Transaction, partner: Partner) -> Optional[Hit]:
        lp = self.patterns.find_matching_pattern(partner, tx)
        if lp is None:
            return None
        hit = self._hit(partner, "pattern", lp.confidence)
        hit.learned_pattern = lp
        return hit

    def _match_vat(self, tx: Transaction, partner: Partner) -> Optional[Hit]:
        vat = normalize_vat_id(partner.vat_id)
        if len(vat) < 8:
            return None
        text = normalize_vat_id(" ".join(p for p in transaction_fields(tx) if p))
        if vat in text:
            return self._hit(partner, "vat", self.cfg.vat_confidence)
        return None

    def _match_website(self, tx: Transaction, partner: Partner) -> Optional[Hit]:
        domain = normalize_url(partner.website).split("/")[0]
        if len(domain) < 4 or "." not in domain:
            return None
        if domain in tx.combined_text:
            return self._hit(partner, "website", self.cfg.website_confidence)
        return None

    def _match_alias(self, tx: Transaction, partner: Partner) -> Optional[Hit]:
        for alias in partner.aliases:
            if "*" in alias and match_pattern_flexible(alias, transaction_fields(tx)):
                return self._hit(partner, "alias", self.cfg.alias_confidence)
        return None

    def _field_similarity(self, tx: Transaction, name: str) -> int:
        best = 0
        if tx.counterparty_name_hint:
            sim = name_similarity(tx.counterparty_name_hint, name)
            if sim >= max(PARTNER_FIELD_MIN_SIMILARITY, self.cfg.name_min_similarity):
                best = max(best, sim)
        if tx.free_text:
            sim = name_similarity(tx.free_text, name)
            if sim >= max(NAME_FIELD_MIN_SIMILARITY, self.cfg.name_min_similarity):
                best = max(best, sim)
        return best

    def _match_fuzzy(self, tx: Transaction, partner: Partner) -> Optional[Hit]:
        name_sim = self._field_similarity(tx, partner.name)
        alias_sim = 0
        for alias in partner.aliases:
            plain = alias.replace("*", " ").strip()
            if plain:
                alias_sim = max(alias_sim, self._field_similarity(tx, plain))
        sim = max(name_sim, alias_sim)
        if sim == 0:
            return None
        lo, hi = self.cfg.name_confidence_min, self.cfg.name_confidence_max
        floor = self.cfg.name_min_similarity
        if name_sim and alias_sim:
            # 正式名と別名の両方が一致: 92..95
            confidence = min(95, int(round(92 + (sim - floor) * 0.075)))
        else:
            span = max(1, 100 - floor)
            confidence = min(hi, int(round(lo + (sim - floor) * (hi - lo) / span)))
        return self._hit(partner, "fuzzy", confidence)

    @staticmethod
    def _hit(partner: Partner, source: str, confidence: int) -> Hit:
        return Hit(Candidate(
            partner_id=partner.id,
            partner_type=partner.partner_type,
            confidence=int(confidence),
            source=source,
            partner_name=partner.name,
            priority=PRIORITY[source],
        ))

    def _matchers(self) -> List[Tuple[str, Callable[[Transaction, Partner], Optional[Hit]]]]:
        return [
            ("iban", self._match_iban),
            ("pattern", self._match_pattern),
            ("vat", self._match_vat),
            ("website", self._match_website),
            ("alias", self._match_alias),
            ("fuzzy", self._match_fuzzy),
        ]

    # ---- 解決 ----

    def _rank_key(self, c: Candidate):
        above = c.confidence >= self.cfg.auto_apply_threshold
        # 閾値以上ではユーザー取引先がグローバルより優先
        user_first = 0 if (above and c.partner_type == "user") else 1
        return (not above, user_first, -c.confidence, c.priority, c.partner_type != "user")

    def resolve(self, tx: Transaction, partners: Sequence[Partner], allow_ai: bool = True) -> ResolveResult:
        validate_transaction(tx)
        visible = [p for p in partners if p.user_id in (None, tx.user_id)]
        best_per_partner: Dict[str, Hit] = {}

        for name, matcher in self._matchers():
            stage_auto = False
            for partner in visible:
                hit = matcher(tx, partner)
                if hit is None:
                    continue
                prev = best_per_partner.get(partner.id)
                if prev is None or (hit.candidate.confidence, -hit.candidate.priority) > (
                    prev.candidate.confidence, -prev.candidate.priority
                ):
                    best_per_partner[partner.id] = hit
                if hit.candidate.confidence >= self.cfg.auto_apply_threshold:
                    stage_auto = True
            if stage_auto:
                logger.debug("%s: %s で自動適用候補あり、以降のマッチャーを省略", tx.id, name)
                break

        hits = sorted(best_per_partner.values(), key=lambda h: self._rank_key(h.candidate))
        result = ResolveResult(suggestions=[h.candidate for h in hits[: self.cfg.max_suggestions]])
        if hits and hits[0].candidate.confidence >= self.cfg.auto_apply_threshold:
            result.best_match = hits[0].candidate
            result.learned_pattern = hits[0].learned_pattern
            return result

        if not hits and allow_ai:
            self._ai_lookup(tx, result)
        return result

    def _ai_lookup(self, tx: Transaction, result: ResolveResult):
        if self.ai_client is None or not self.config.ai.enabled:
            return
        text = tx.counterparty_name_hint or tx.free_text
        if not looks_like_company_name(text):
            return
        info = lookup_company(self.ai_client, text)
        if info is None:
            return
        partner = Partner(
            id=f"partner_{uuid.uuid4().hex[:12]}",
            name=info.name,
            user_id=tx.user_id,
            aliases=list(info.aliases),
            vat_id=info.vat_id,
            website=info.website,
        )
        candidate = self._hit(partner, "ai_lookup", self.cfg.ai_lookup_confidence).candidate
        result.new_partner = partner
        result.best_match = candidate
        result.suggestions = [candidate]
        logger.info("AI照会で取引先を作成候補: %s -> %s", tx.id, info.name)

    # ---- 適用 ----

    def apply(self, tx: Transaction, result: ResolveResult, partners: Sequence[Partner]) -> bool:
        """閾値以上の候補を取引に反映。反映したら True"""
        tx.partner_suggestions = [c.to_dict() for c in result.suggestions]
        best = result.best_match
        if best is None or best.confidence < self.cfg.auto_apply_threshold:
            return False
        tx.partner_id = best.partner_id
        tx.partner_type = best.partner_type
        tx.partner_confidence = best.confidence
        tx.partner_match_source = best.source

        owner = result.new_partner or next((p for p in partners if p.id == best.partner_id), None)
        # グローバル取引先は全テナント共有なので学習しない
        if owner is not None and owner.partner_type == "user":
            if result.learned_pattern is not None:
                self.patterns.record_pattern_usage(result.learned_pattern, tx.id)
            elif best.source in ("alias", "fuzzy"):
                # 別名/名前一致はパターンとして取り込み、次回は pattern で当たるようにする
                self.patterns.learn_from_transaction(owner, tx, best.confidence)
        logger.info("取引先自動適用: %s -> %s (%s, %d)", tx.id, best.partner_id, best.source, best.confidence)
        return True

    def resolve_and_apply(self, tx: Transaction, partners: List[Partner], allow_ai: bool = True) -> ResolveResult:
        result = self.resolve(tx, partners, allow_ai=allow_ai)
        if self.apply(tx, result, partners) and result.new_partner is not None:
            partners.append(result.new_partner)
        return result

    # ---- 手動修正 ----

    def apply_manual_partner(
        self,
        tx: Transaction,
        new_partner: Partner,
        partners: Sequence[Partner],
        other_transactions: Iterable[Transaction] = (),
    ) -> List[Transaction]:
        """ユーザーによる取引先の手動割当（常に自動判定より優先）

        直前の自動判定を取り消し履歴に記録し、新しい取引先のパターンを学習して
        未割当の取引を再照合する。再照合で割り当てた取引を返す。
        """
        previous_id = tx.partner_id
        previous_source = tx.partner_match_source
        if previous_id and previous_id != new_partner.id and previous_source not in (None, "manual"):
            previous = next((p for p in partners if p.id == previous_id), None)
            if previous is not None:
                self.patterns.record_manual_removal(previous, tx, partner_name=previous.name)

        tx.partner_id = new_partner.id
        tx.partner_type = new_partner.partner_type
        tx.partner_confidence = 100
        tx.partner_match_source = "manual"

        learned = self.patterns.learn_from_correction(new_partner, tx)
        if learned is None:
            return []
        return self.rematch_with_pattern(new_partner, learned, other_transactions, tx.user_id)

    def rematch_with_pattern(
        self,
        partner: Partner,
        learned: LearnedPattern,
        transactions: Iterable[Transaction],
        user_id: str,
    ) -> List[Transaction]:
        if learned.confidence < self.cfg.auto_apply_threshold:
            return []
        matched = []
        for other in transactions:
            if other.user_id != user_id or other.partner_id:
                continue
            if self.patterns.is_manually_removed(partner, other.id):
                continue
            if not match_pattern_flexible(learned.pattern, transaction_fields(other), learned.exclude):
                continue
            other.partner_id = partner.id
            other.partner_type = partner.partner_type
            other.partner_confidence = learned.confidence
            other.partner_match_source = "pattern"
            self.patterns.record_pattern_usage(learned, other.id)
            matched.append(other)
        if matched:
            logger.info("学習パターンで再照合: %s に %d 件", partner.id, len(matched))
        return matched
