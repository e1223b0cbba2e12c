import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .ai_matcher import ClaudeClient, match_with_ai
from .assignment import assign_for_partner
from .config_loader import MatchingConfig
from .errors import PartialBatchError, ValidationError
from .models import Connection, ScoredPair
from .notifier import NotificationQueue, build_partner_match_notification
from .pattern_store import PatternStore
from .state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class PartnerMatchResult:
    partner_id: str
    auto_matched: List[ScoredPair] = field(default_factory=list)
    ai_matched: List[Connection] = field(default_factory=list)
    suggestions: List[ScoredPair] = field(default_factory=list)

    @property
    def auto_match_count(self) -> int:
        return len(self.auto_matched) + len(self.ai_matched)


def _commit(store: StateStore, connections: List[Connection], chunk_size: int, partner_id: str, action: str) -> int:
    if not connections:
        return 0
    try:
        return store.commit_connections(connections, chunk_size)
    except PartialBatchError as e:
        store.write_audit("ERROR", "system", action, [partner_id], None, "partial", f"processed={e.processed}: {e.cause}")
        raise


def match_files_for_partner(
    store: StateStore,
    user_id: str,
    partner_id: str,
    config: Optional[MatchingConfig] = None,
    ai_client: Optional[ClaudeClient] = None,
    notifications: Optional[NotificationQueue] = None,
) -> PartnerMatchResult:
    """取引先1件ぶんの未接続取引に書類を割り当てる

    決定的スコアで自動接続し、なお2件以上ずつ残ればAIに照合させる。
    1件以上接続できたら通知を積む。
    """
    config = config or MatchingConfig()
    if store.auto_match_threshold != config.document.auto_match_threshold:
        raise ValidationError(
            f"store threshold {store.auto_match_threshold} differs from "
            f"document.auto_match_threshold {config.document.auto_match_threshold}"
        )
    partner = store.get_partner(user_id, partner_id)
    transactions = store.list_transactions(user_id)
    documents = store.list_documents(user_id)

    assignment, docs, txs = assign_for_partner(
        partner_id, documents, transactions, config.document, partner.file_source_patterns
    )
    result = PartnerMatchResult(partner_id, auto_matched=assignment.auto_matches, suggestions=assignment.suggestions)

    auto_connections = [
        Connection(
            id="",
            user_id=user_id,
            document_id=m.document_id,
            transaction_id=m.transaction_id,
            connection_type="auto_matched",
            match_confidence=m.score,
            match_reasons=m.reasons,
        )
        for m in assignment.auto_matches
    ]
    _commit(store, auto_connections, config.persistence.chunk_size, partner_id, "auto_match")

    remaining_docs, remaining_txs = assignment.unmatched(docs, txs)
    min_unmatched = config.ai.min_unmatched_for_ai
    if (
        ai_client is not None
        and config.ai.enabled
        and len(remaining_docs) >= min_unmatched
        and len(remaining_txs) >= min_unmatched
    ):
        ai_result = match_with_ai(ai_client, remaining_docs, remaining_txs, {"partner": partner.name})
        ai_connections = [
            Connection(
                id="",
                user_id=user_id,
                document_id=m.document_id,
                transaction_id=m.transaction_id,
                connection_type="ai_matched",
                match_confidence=config.ai.match_confidence,
                match_reasons=[m.reasoning] if m.reasoning else ["AI match"],
            )
            for m in ai_result.matches
        ]
        _commit(store, ai_connections, config.persistence.chunk_size, partner_id, "ai_match")
        result.ai_matched = ai_connections

    store.write_audit(
        "INFO", "system", "match_files_for_partner", [partner_id], None,
        f"auto={len(result.auto_matched)} ai={len(result.ai_matched)} suggestions={len(result.suggestions)}",
    )
    if result.auto_match_count and notifications is not None:
        notifications.emit(build_partner_match_notification(
            user_id, partner_id, partner.name, result.auto_match_count, len(result.suggestions)
        ))
    return result


def link_manually(
    store: StateStore,
    user_id: str,
    document_id: str,
    transaction_id: str,
    pattern_store: Optional[PatternStore] = None,
) -> Connection:
    """ユーザーによる手動接続。取引先があればファイル名の取得元パターンも学習する"""
    conn = store.connect(user_id, document_id, transaction_id, "manual")
    tx = store.get_transaction(user_id, transaction_id)
    if tx.partner_id:
        partner = store.get_partner(user_id, tx.partner_id)
        # グローバル取引先にはユーザー固有の学習を書き込まない
        if partner.user_id == user_id:
            doc = store.get_document(user_id, document_id)
            if (pattern_store or PatternStore()).learn_file_source_pattern(partner, doc, transaction_id):
                store.save(partner)
    store.write_audit("INFO", user_id, "link", [transaction_id, document_id], None, "linked")
    return conn


def unlink_manually(store: StateStore, user_id: str, document_id: str, transaction_id: str):
    """手動での接続解除。以後この書類はこの取引に提案しない"""
    store.disconnect(user_id, document_id, transaction_id, rejected=True)
    store.write_audit("INFO", user_id, "unlink", [transaction_id, document_id], None, "rejected")
