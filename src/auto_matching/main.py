import argparse
import json
import logging
import os
import sys
from typing import Dict, List, Optional, Sequence

from dotenv import load_dotenv

from .ai_matcher import ClaudeClient
from .agent_search import AgentSearch
from .automation_defs import build_pipelines
from .category_matcher import CategoryMatcher, is_eligible
from .config_loader import MatchingConfig, load_matching_config
from .errors import MatchingError
from .linker import match_files_for_partner
from .notifier import NotificationQueue, build_category_match_notification
from .partner_matcher import PartnerMatcher
from .pattern_store import PatternStore
from .state_store import StateStore

load_dotenv()

logger = logging.getLogger(__name__)


def process_transactions(
    store: StateStore,
    user_id: str,
    transaction_ids: Optional[Sequence[str]] = None,
    config: Optional[MatchingConfig] = None,
    ai_client: Optional[ClaudeClient] = None,
    notifications: Optional[NotificationQueue] = None,
) -> List[Dict]:
    """取込済み取引を 取引先解決 → 書類割当 → カテゴリ判定 の順に流す"""
    config = config or MatchingConfig()
    patterns = PatternStore(config.learning, config.partner)
    partner_matcher = PartnerMatcher(config, patterns, ai_client)
    category_matcher = CategoryMatcher(config, patterns)

    wanted = set(transaction_ids or [])
    transactions = [t for t in store.list_transactions(user_id) if not wanted or t.id in wanted]
    partners = store.list_partners(user_id)

    # 1. 取引先
    touched_partner_ids = set()
    for tx in transactions:
        if tx.partner_id:
            continue
        known = {p.id for p in partners}
        result = partner_matcher.resolve_and_apply(tx, partners)
        if tx.partner_id:
            touched_partner_ids.add(tx.partner_id)
            if tx.partner_id not in known:
                logger.info("新規取引先を作成: %s", tx.partner_id)
        store.save(tx)
        if result.best_match is None and result.suggestions:
            logger.info("取引先候補のみ: %s (%d件)", tx.id, len(result.suggestions))
    store.save(*[p for p in partners if p.id in touched_partner_ids and p.partner_type == "user"])

    # 2. 書類
    for partner_id in sorted({t.partner_id for t in transactions if t.partner_id}):
        match_files_for_partner(store, user_id, partner_id, config, ai_client, notifications)

    # 3. 領収書不要カテゴリ
    categories = store.list_categories(user_id)
    applied: Dict[str, int] = {}
    refreshed = [store.get_transaction(user_id, t.id) for t in transactions]
    for tx in refreshed:
        if not is_eligible(tx):
            continue
        category_matcher.match_and_apply(tx, categories, partners)
        if tx.category_id:
            applied[tx.category_id] = applied.get(tx.category_id, 0) + 1
        store.save(tx)
    store.save(*categories)
    if notifications is not None:
        for category in categories:
            if applied.get(category.id):
                notifications.emit(build_category_match_notification(user_id, category.id, category.name, applied[category.id]))

    return [
        {
            "transaction_id": tx.id,
            "partner_id": tx.partner_id,
            "partner_confidence": tx.partner_confidence,
            "partner_match_source": tx.partner_match_source,
            "document_ids": list(tx.document_ids),
            "category_id": tx.category_id,
            "is_complete": tx.is_complete,
        }
        for tx in (store.get_transaction(user_id, t.id) for t in refreshed)
    ]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="auto-matching", description="取引先・書類の自動マッチング")
    parser.add_argument("--config", help="matching.yml のパス")
    parser.add_argument("--db", help="状態DBのパス（既定: $MATCHING_STATE_DB）")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="取引を処理する")
    run.add_argument("--user", required=True)
    run.add_argument("--transaction", action="append", dest="transactions", help="対象取引ID（複数指定可）")

    sub.add_parser("pipelines", help="自動化パイプラインの定義を表示")

    cancel = sub.add_parser("cancel-session", help="エージェント検索セッションを中断")
    cancel.add_argument("--user", required=True)
    cancel.add_argument("--session", required=True)
    return parser


def cli(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    try:
        config = load_matching_config(args.config)
        if args.command == "pipelines":
            print(json.dumps([p.to_dict() for p in build_pipelines(config)], ensure_ascii=False, indent=2))
            return 0

        store = StateStore(args.db, auto_match_threshold=config.document.auto_match_threshold)
        if args.command == "cancel-session":
            agent = AgentSearch(store, config=config)
            session = agent.cancel(store.get_session(args.user, args.session))
            print(f"セッション {session.session_id}: {session.status}")
            return 0

        ai_client = None
        if config.ai.enabled and os.getenv("ANTHROPIC_API_KEY"):
            ai_client = ClaudeClient(timeout=config.ai.timeout_seconds, max_tokens=config.ai.max_tokens,
                                     model=os.getenv("ANTHROPIC_MODEL") or config.ai.model)
        notifications = NotificationQueue()
        notifications.start()
        try:
            results = process_transactions(store, args.user, args.transactions, config, ai_client, notifications)
        finally:
            notifications.stop()
            notifications.drain()
    except MatchingError as e:
        logger.error("処理に失敗しました: %s", e)
        return 1

    complete = sum(1 for r in results if r["is_complete"])
    print("=== 処理完了 ===")
    print(f"  対象: {len(results)}件")
    print(f"  取引先あり: {sum(1 for r in results if r['partner_id'])}件")
    print(f"  書類あり: {sum(1 for r in results if r['document_ids'])}件")
    print(f"  カテゴリ: {sum(1 for r in results if r['category_id'])}件")
    print(f"  完了: {complete}件")
    return 0


if __name__ == "__main__":
    sys.exit(cli())
