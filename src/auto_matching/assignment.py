"""
書類と取引の割当エンジン

候補プールの全ペアを並列にスコアリングし、スコア降順の貪欲法で割り当てる。
大域最適ではないが決定的（同点は入力順）。
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional, Sequence, Tuple

from .config_loader import DocumentConfig
from .document_scorer import score_document
from .models import Document, FileSourcePattern, ScoredPair, Transaction

logger = logging.getLogger(__name__)


@dataclass
class AssignmentResult:
    auto_matches: List[ScoredPair] = field(default_factory=list)
    suggestions: List[ScoredPair] = field(default_factory=list)

    @property
    def suggestion_count(self) -> int:
        return len(self.suggestions)

    def unmatched(self, documents: Sequence[Document], transactions: Sequence[Transaction]) -> Tuple[List[Document], List[Transaction]]:
        used_docs = {m.document_id for m in self.auto_matches}
        used_txs = {m.transaction_id for m in self.auto_matches}
        return (
            [d for d in documents if d.id not in used_docs],
            [t for t in transactions if t.id not in used_txs],
        )


def transaction_pool(partner_id: str, transactions: Sequence[Transaction], cfg: DocumentConfig) -> List[Transaction]:
    """書類もカテゴリも付いていない、その取引先の取引（新しい順）"""
    pool = [
        t for t in transactions
        if t.partner_id == partner_id and not t.document_ids and not t.category_id
    ]
    pool.sort(key=lambda t: t.date, reverse=True)
    return pool[: cfg.max_transactions_per_partner]


def document_pool(
    partner_id: str,
    documents: Sequence[Document],
    txs: Sequence[Transaction],
    cfg: DocumentConfig,
) -> List[Document]:
    """その取引先の書類 + 取引日付の前後ウィンドウ内にある取引先未割当の書類"""
    if not txs:
        return []
    start = min(t.date for t in txs) - timedelta(days=cfg.date_range_days_before)
    end = max(t.date for t in txs) + timedelta(days=cfg.date_range_days_after)

    pool: List[Document] = []
    for doc in documents:
        if not doc.is_scoring_candidate:
            continue
        if doc.partner_id == partner_id:
            pool.append(doc)
        elif doc.partner_id is None and doc.extracted_date and start <= doc.extracted_date <= end:
            pool.append(doc)
        if len(pool) >= cfg.max_files_per_partner:
            break
    return pool


def score_pairs(
    documents: Sequence[Document],
    transactions: Sequence[Transaction],
    partner_patterns: Sequence[FileSourcePattern] = (),
    suggestion_threshold: int = 50,
    workers: int = 4,
) -> List[ScoredPair]:
    """全ペアをスコアリング。閾値未満と、ユーザーが却下したペアは除外"""
    pairs = [
        (doc, tx) for doc in documents for tx in transactions
        if doc.id not in tx.rejected_document_ids
    ]

    def _score(pair):
        doc, tx = pair
        score, reasons = score_document(doc, tx, partner_patterns)
        return ScoredPair(doc.id, tx.id, score, reasons)

    if workers > 1 and len(pairs) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            scored = list(executor.map(_score, pairs))
    else:
        scored = [_score(p) for p in pairs]

    for s in scored:
        logger.debug("score %s x %s = %d %s", s.document_id, s.transaction_id, s.score, s.reasons)
    return [s for s in scored if s.score >= suggestion_threshold]


def greedy_assign(pairs: Sequence[ScoredPair], auto_threshold: int = 85, suggestion_threshold: int = 50) -> AssignmentResult:
    result = AssignmentResult()
    used_docs, used_txs = set(), set()
    ordered = sorted(
        (p for p in pairs if p.score >= suggestion_threshold),
        key=lambda p: p.score,
        reverse=True,
    )
    for pair in ordered:
        if pair.document_id in used_docs or pair.transaction_id in used_txs:
            continue
        if pair.score >= auto_threshold:
            result.auto_matches.append(pair)
            used_docs.add(pair.document_id)
            used_txs.add(pair.transaction_id)
        else:
            result.suggestions.append(pair)
    return result


def assign_for_partner(
    partner_id: str,
    documents: Sequence[Document],
    transactions: Sequence[Transaction],
    cfg: Optional[DocumentConfig] = None,
    partner_patterns: Sequence[FileSourcePattern] = (),
) -> Tuple[AssignmentResult, List[Document], List[Transaction]]:
    """取引先スコープで候補プールを作り、スコアリングと割当まで行う"""
    cfg = cfg or DocumentConfig()
    txs = transaction_pool(partner_id, transactions, cfg)
    docs = document_pool(partner_id, documents, txs, cfg)
    if not txs or not docs:
        return AssignmentResult(), docs, txs
    pairs = score_pairs(docs, txs, partner_patterns, cfg.suggestion_threshold, cfg.scoring_workers)
    result = greedy_assign(pairs, cfg.auto_match_threshold, cfg.suggestion_threshold)
    logger.info(
        "%s: 書類%d件 x 取引%d件 -> 自動%d件 / 提案%d件",
        partner_id, len(docs), len(txs), len(result.auto_matches), result.suggestion_count,
    )
    return result, docs, txs
