"""
領収書不要カテゴリ（銀行手数料・利息など）の照合
取引先リゾルバと同じパターンストアを使う。AIによるフォールバックはない。
"""

import logging
import math
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

from .config_loader import MatchingConfig
from .models import Category, Partner, Transaction
from .pattern_store import PatternStore

logger = logging.getLogger(__name__)

RECEIPT_LOST_TEMPLATE = "receipt-lost"


@dataclass
class CategorySuggestion:
    category_id: str
    template_id: str
    confidence: int
    source: str  # partner|pattern|partner+pattern

    def to_dict(self) -> Dict:
        return asdict(self)


def is_eligible(tx: Transaction) -> bool:
    """カテゴリ未設定かつ書類未接続の取引だけが対象"""
    return not tx.category_id and not tx.document_ids


class CategoryMatcher:
    def __init__(self, config: Optional[MatchingConfig] = None, pattern_store: Optional[PatternStore] = None):
        self.config = config or MatchingConfig()
        self.cfg = self.config.category
        self.patterns = pattern_store or PatternStore(self.config.learning, self.config.partner)

    def _usage_boost(self, count: int) -> float:
        if not count or count <= 0:
            return 0
        return min(math.log10(count + 1) * 5, self.cfg.usage_boost_max)

    def _match_single(self, tx: Transaction, category: Category, partners: Dict[str, Partner]) -> Optional[CategorySuggestion]:
        partner_match = bool(tx.partner_id) and tx.partner_id in category.matched_partner_ids
        lp = self.patterns.find_matching_pattern(category, tx)

        if partner_match and lp is not None:
            confidence, source = lp.confidence + self.cfg.combined_match_bonus, "partner+pattern"
        elif partner_match:
            confidence, source = self.cfg.partner_match_confidence, "partner"
        elif lp is not None:
            confidence, source = lp.confidence, "pattern"
        else:
            return None

        confidence += self._usage_boost(category.transaction_count)
        partner = partners.get(tx.partner_id) if tx.partner_id else None
        # ファイル取得元パターンを持たない取引先は領収書が出ない相手である可能性が高い
        if partner_match and partner is not None and not partner.file_source_patterns:
            confidence += self.cfg.no_file_patterns_boost
        confidence = int(min(100, confidence))

        if confidence < self.cfg.suggestion_threshold:
            return None
        return CategorySuggestion(category.id, category.template_id, confidence, source)

    def match(self, tx: Transaction, categories: Sequence[Category], partners: Sequence[Partner] = ()) -> List[CategorySuggestion]:
        partner_map = {p.id: p for p in partners}
        suggestions = []
        for category in categories:
            if category.template_id == RECEIPT_LOST_TEMPLATE or not category.is_active:
                continue
            if category.user_id != tx.user_id:
                continue
            if self.patterns.is_manually_removed(category, tx.id):
                continue
            s = self._match_single(tx, category, partner_map)
            if s is not None:
                suggestions.append(s)
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions[: self.cfg.max_suggestions]

    def apply(self, tx: Transaction, suggestions: Sequence[CategorySuggestion], categories: Sequence[Category]) -> bool:
        tx.category_suggestions = [s.to_dict() for s in suggestions]
        if not suggestions or suggestions[0].confidence < self.cfg.auto_apply_threshold:
            return False
        best = suggestions[0]
        tx.category_id = best.category_id
        tx.category_confidence = best.confidence
        category = next((c for c in categories if c.id == best.category_id), None)
        if category is not None:
            category.transaction_count += 1
            lp = self.patterns.find_matching_pattern(category, tx)
            if lp is not None:
                self.patterns.record_pattern_usage(lp, tx.id)
        logger.info("カテゴリ自動適用: %s -> %s (%s, %d)", tx.id, best.category_id, best.source, best.confidence)
        return True

    def match_and_apply(self, tx: Transaction, categories: Sequence[Category], partners: Sequence[Partner] = ()) -> List[CategorySuggestion]:
        if not is_eligible(tx):
            return []
        suggestions = self.match(tx, categories, partners)
        self.apply(tx, suggestions, categories)
        return suggestions

    def apply_manual_category(self, tx: Transaction, category: Category, categories: Sequence[Category]):
        """手動でカテゴリを設定。自動設定されていた別カテゴリには取り消しを記録して学習する"""
        previous = next((c for c in categories if c.id == tx.category_id), None)
        if previous is not None and previous.id != category.id and tx.category_confidence is not None:
            self.patterns.record_manual_removal(previous, tx)
            previous.transaction_count = max(0, previous.transaction_count - 1)
        tx.category_id = category.id
        tx.category_confidence = None
        category.transaction_count += 1
        if tx.partner_id and tx.partner_id not in category.matched_partner_ids:
            category.matched_partner_ids.append(tx.partner_id)
        self.patterns.learn_from_correction(category, tx)

    def remove_category(self, tx: Transaction, category: Category):
        """カテゴリを外す（ネガティブシグナルとして記録）"""
        if tx.category_id != category.id:
            return
        self.patterns.record_manual_removal(category, tx)
        category.transaction_count = max(0, category.transaction_count - 1)
        tx.category_id = None
        tx.category_confidence = None
