"""
学習パターンストア
ユーザーの修正から glob パターンを学習し、取り消し（ネガティブシグナル）を蓄積する
"""

import logging
from typing import Iterable, Optional, Union

from .config_loader import LearningConfig, PartnerConfig
from .models import (
    Category,
    Document,
    FileSourcePattern,
    LearnedPattern,
    ManualRemoval,
    Partner,
    Transaction,
)
from .pattern_utils import derive_filename_pattern, derive_pattern_from_text, glob_match, match_pattern_flexible

logger = logging.getLogger(__name__)

PatternOwner = Union[Partner, Category]


def _clamp(confidence: int) -> int:
    return max(0, min(100, int(confidence)))


def transaction_fields(tx: Transaction):
    return (tx.free_text, tx.counterparty_name_hint, tx.reference)


class PatternStore:
    """取引先/カテゴリごとの学習パターンと取り消し履歴を扱うクラス"""

    def __init__(self, learning: Optional[LearningConfig] = None, partner: Optional[PartnerConfig] = None):
        self.learning = learning or LearningConfig()
        self.partner_cfg = partner or PartnerConfig()

    # ---- 学習パターン ----

    def add_learned_pattern(
        self,
        owner: PatternOwner,
        pattern: str,
        confidence: int,
        transaction_ids: Iterable[str] = (),
    ) -> LearnedPattern:
        """パターンを追加。同一パターンが既にあれば統合（ID追記・信頼度は大きい方）"""
        confidence = _clamp(confidence)
        key = pattern.lower()
        for existing in owner.learned_patterns:
            if existing.pattern.lower() == key:
                for tx_id in transaction_ids:
                    if tx_id not in existing.source_transaction_ids:
                        existing.source_transaction_ids.append(tx_id)
                existing.confidence = max(existing.confidence, confidence)
                return existing
        learned = LearnedPattern(pattern=key, confidence=confidence, source_transaction_ids=list(dict.fromkeys(transaction_ids)))
        owner.learned_patterns.append(learned)
        logger.info("パターン追加: %s -> %r (信頼度: %d)", owner.id, key, confidence)
        return learned

    def record_pattern_usage(self, learned: LearnedPattern, transaction_id: str):
        if transaction_id not in learned.source_transaction_ids:
            learned.source_transaction_ids.append(transaction_id)

    def find_matching_pattern(self, owner: PatternOwner, tx: Transaction) -> Optional[LearnedPattern]:
        """取引に一致する最も信頼度の高いパターン。取り消し済みの取引には一致させない"""
        if self.is_manually_removed(owner, tx.id):
            return None
        best: Optional[LearnedPattern] = None
        for lp in owner.learned_patterns:
            if lp.confidence < self.partner_cfg.min_pattern_confidence:
                continue
            if not match_pattern_flexible(lp.pattern, transaction_fields(tx), lp.exclude):
                continue
            if best is None or lp.confidence > best.confidence:
                best = lp
        return best

    # ---- ネガティブシグナル ----

    def record_manual_removal(self, owner: PatternOwner, tx: Transaction, partner_name: Optional[str] = None) -> ManualRemoval:
        """取り消しを記録。上限を超えたら古いものから捨てる"""
        owner.manual_removals = [r for r in owner.manual_removals if r.transaction_id != tx.id]
        removal = ManualRemoval(
            transaction_id=tx.id,
            name=tx.combined_text,
            partner=partner_name,
        )
        owner.manual_removals.append(removal)
        overflow = len(owner.manual_removals) - self.learning.max_manual_removals
        if overflow > 0:
            del owner.manual_removals[:overflow]
        return removal

    def is_manually_removed(self, owner: PatternOwner, transaction_id: str) -> bool:
        return any(r.transaction_id == transaction_id for r in owner.manual_removals)

    def matches_removal(self, owner: PatternOwner, pattern: str) -> bool:
        for r in owner.manual_removals:
            if glob_match(pattern, r.name) or (r.partner and glob_match(pattern, r.partner)):
                return True
        return False

    # ---- 修正からの学習 ----

    def learn_from_correction(self, owner: PatternOwner, tx: Transaction) -> Optional[LearnedPattern]:
        """手動割当された取引のテキストからパターンを学習する

        取り消し履歴のテキストに一致してしまうパターンは採用しない。
        """
        return self.learn_from_transaction(owner, tx, self.learning.correction_pattern_confidence)

    def learn_from_transaction(self, owner: PatternOwner, tx: Transaction, confidence: int) -> Optional[LearnedPattern]:
        pattern = derive_pattern_from_text(" ".join(p for p in transaction_fields(tx) if p))
        if not pattern:
            logger.debug("パターン導出不可: %s", tx.id)
            return None
        confidence = _clamp(confidence)
        if confidence < self.partner_cfg.min_pattern_confidence:
            return None
        if self.matches_removal(owner, pattern):
            logger.info("パターン却下（取り消し履歴に一致）: %r", pattern)
            return None
        return self.add_learned_pattern(owner, pattern, confidence, [tx.id])

    def learn_file_source_pattern(
        self,
        partner: Partner,
        document: Document,
        transaction_id: str,
        source_type: str = "local",
    ) -> Optional[FileSourcePattern]:
        """手動接続された書類のファイル名から取得元パターンを学習"""
        pattern = derive_filename_pattern(document.file_name)
        if not pattern:
            return None
        for fsp in partner.file_source_patterns:
            if fsp.source_type == source_type and fsp.pattern == pattern:
                fsp.usage_count += 1
                if transaction_id not in fsp.source_transaction_ids:
                    fsp.source_transaction_ids.append(transaction_id)
                return fsp
        fsp = FileSourcePattern(
            source_type=source_type,
            pattern=pattern,
            confidence=_clamp(self.learning.file_pattern_confidence),
            usage_count=1,
            source_transaction_ids=[transaction_id],
        )
        partner.file_source_patterns.append(fsp)
        logger.info("ファイル取得元パターン学習: %s -> %r", partner.id, pattern)
        return fsp
