"""
エージェント検索セッション

自動マッチングで書類が見つからなかった取引に対し、検索範囲を段階的に広げる
（ローカル書類 → メール添付 → メール本文の請求書リンク）。反復回数は上限付き。

状態遷移:
    active -> completed               指名候補の接続に1件以上成功
    active -> max_iterations_reached  上限到達後も接続なし
    active -> user_cancelled          ユーザーによる中断
終了状態からの遷移はなく、操作は TerminatedSessionError になる。
"""

import logging
import uuid
from typing import List, Optional, Sequence, Tuple

from .config_loader import MatchingConfig
from .errors import DuplicateConnectionError, ExternalServiceError, NotFoundError, TerminatedSessionError, ValidationError
from .models import AgentSearchSession, SearchCandidate, SearchRecord, Transaction, utc_now_iso
from .search_providers import (
    EmailSearchProvider,
    build_search_queries,
    search_email_attachments,
    search_email_invoices,
    search_local_files,
)

logger = logging.getLogger(__name__)

AGENT_STRATEGIES = ("local_files", "email_attachments", "email_invoice_links")


class AgentSearch:
    def __init__(self, store, email_provider: Optional[EmailSearchProvider] = None, config: Optional[MatchingConfig] = None):
        self.store = store
        self.email_provider = email_provider
        self.config = config or MatchingConfig()

    def start(self, user_id: str, transaction_id: str) -> AgentSearchSession:
        """取引ごとに1つだけ有効なセッションを作る（既にあればそれを返す）"""
        self.store.get_transaction(user_id, transaction_id)
        existing = self.store.find_active_session(user_id, transaction_id)
        if existing is not None:
            return existing
        session = AgentSearchSession(
            session_id=f"agent_{uuid.uuid4().hex[:12]}",
            transaction_id=transaction_id,
            user_id=user_id,
            max_iterations=self.config.agent.max_iterations,
        )
        self.store.save_session(session)
        logger.info("エージェント検索開始: %s (%s)", session.session_id, transaction_id)
        return session

    def _ensure_active(self, session: AgentSearchSession):
        """保存済みの状態を読み直して確認する。別経路で終了済みなら手元の状態も合わせる"""
        stored = self.store.get_session(session.user_id, session.session_id)
        if not stored.is_active:
            session.status = stored.status
            session.updated_at = stored.updated_at
        if not session.is_active:
            raise TerminatedSessionError(session.session_id, session.status)

    def _transition(self, session: AgentSearchSession, status: str):
        session.status = status
        session.updated_at = utc_now_iso()
        self.store.save_session(session)
        logger.info("セッション %s -> %s", session.session_id, status)

    def run_iteration(
        self,
        session: AgentSearchSession,
        searches: Sequence[Tuple[str, Optional[str]]],
    ) -> List[SearchCandidate]:
        """1反復ぶんの検索を実行し、見つかった候補を返す

        searches は (戦略名, クエリ) の列。クエリが None なら取引から組み立てる。
        上限到達後の呼び出しは max_iterations_reached へ遷移して拒否する。
        """
        self._ensure_active(session)
        unknown = [s for s, _ in searches if s not in AGENT_STRATEGIES]
        if unknown:
            raise ValidationError(f"unknown agent strategies: {unknown}")
        if session.iteration >= session.max_iterations:
            self._transition(session, "max_iterations_reached")
            raise TerminatedSessionError(session.session_id, session.status)

        session.iteration += 1
        tx = self.store.get_transaction(session.user_id, session.transaction_id)
        found: List[SearchCandidate] = []
        for strategy, query in searches:
            candidates, used_query = self._search(strategy, query, tx)
            # 結果に関わらず記録する
            session.searches_performed.append(SearchRecord(type=strategy, candidates_found=len(candidates), query=used_query))
            found.extend(candidates)
        session.updated_at = utc_now_iso()
        self.store.save_session(session)
        return found

    def _search(self, strategy: str, query: Optional[str], tx: Transaction) -> Tuple[List[SearchCandidate], Optional[str]]:
        partner = None
        if tx.partner_id:
            try:
                partner = self.store.get_partner(tx.user_id, tx.partner_id)
            except NotFoundError:
                partner = None
        try:
            if strategy == "local_files":
                if not query:
                    name = partner.name if partner else (tx.counterparty_name_hint or "")
                    query = f"*{name.strip().lower()}*" if name.strip() else "*"
                docs = self.store.list_documents(tx.user_id)
                return search_local_files(tx, docs, query), query
            if self.email_provider is None:
                return [], query
            queries = [query] if query else build_search_queries(tx, partner)[:1]
            if strategy == "email_attachments":
                return search_email_attachments(tx, self.email_provider, partner, queries), queries[0] if queries else None
            return search_email_invoices(tx, self.email_provider, partner, queries), queries[0] if queries else None
        except ExternalServiceError as e:
            logger.warning("エージェント検索 %s が失敗（0件として継続）: %s", strategy, e)
            return [], query

    def nominate(self, session: AgentSearchSession, candidate: SearchCandidate, reason: str) -> SearchCandidate:
        """候補を指名する（レビュアーまたはAIが一致と判断したもの）"""
        self._ensure_active(session)
        if any(c.id == candidate.id for c in session.nominated_candidates):
            return candidate
        candidate.nominated = True
        candidate.nominated_at = utc_now_iso()
        candidate.nomination_reason = reason
        candidate.download_status = "pending"
        session.nominated_candidates.append(candidate)
        session.updated_at = utc_now_iso()
        self.store.save_session(session)
        return candidate

    def execute_nominations(self, session: AgentSearchSession) -> List[str]:
        """指名候補を取得・接続する。1件でも接続できれば completed"""
        self._ensure_active(session)
        connected: List[str] = []
        for cand in session.nominated_candidates:
            if cand.download_status != "pending":
                continue
            try:
                doc_id = self._materialize(session, cand)
                self.store.connect(
                    session.user_id, doc_id, session.transaction_id, "ai_matched",
                    self.config.ai.match_confidence, [cand.nomination_reason or "Nominated by agent search"],
                )
            except (ExternalServiceError, NotFoundError, DuplicateConnectionError) as e:
                logger.warning("指名候補の接続に失敗: %s (%s)", cand.id, e)
                cand.download_status = "failed"
                continue
            cand.download_status = "completed"
            cand.downloaded_document_id = doc_id
            session.files_connected.append(doc_id)
            connected.append(doc_id)

        if session.files_connected:
            self._transition(session, "completed")
        elif session.iteration >= session.max_iterations:
            self._transition(session, "max_iterations_reached")
        else:
            session.updated_at = utc_now_iso()
            self.store.save_session(session)
        return connected

    def _materialize(self, session: AgentSearchSession, cand: SearchCandidate) -> str:
        if cand.source_type == "local_file" and cand.document_id:
            return cand.document_id
        if cand.source_type == "gmail_attachment" and self.email_provider is not None:
            doc = self.email_provider.fetch_candidate_document(session.user_id, cand)
            self.store.save(doc)
            return doc.id
        raise NotFoundError("downloadable candidate", cand.id)

    def cancel(self, session: AgentSearchSession) -> AgentSearchSession:
        self._ensure_active(session)
        self._transition(session, "user_cancelled")
        return session
