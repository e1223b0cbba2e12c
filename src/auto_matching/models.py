from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from typing import Dict, List, Optional


CONNECTION_TYPES = ("manual", "auto_matched", "ai_matched")
SESSION_STATUSES = ("active", "completed", "max_iterations_reached", "user_cancelled")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load(cls, data: Dict, nested: Optional[Dict] = None, dates: tuple = ()):
    """dict から dataclass を復元する（未知のキーは無視）"""
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in (data or {}).items() if k in names}
    for key, sub in (nested or {}).items():
        if kwargs.get(key) is not None:
            kwargs[key] = [sub.from_dict(item) for item in kwargs[key]]
    for key in dates:
        if isinstance(kwargs.get(key), str):
            kwargs[key] = date.fromisoformat(kwargs[key][:10])
    return cls(**kwargs)


class _Record:
    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict):
        return _load(cls, data)


@dataclass
class LearnedPattern(_Record):
    pattern: str
    confidence: int
    source_transaction_ids: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    exclude: List[str] = field(default_factory=list)


@dataclass
class FileSourcePattern(_Record):
    source_type: str  # local|gmail
    pattern: str
    confidence: int
    usage_count: int = 0
    source_transaction_ids: List[str] = field(default_factory=list)


@dataclass
class ManualRemoval(_Record):
    """自動判定をユーザーが取り消した取引（ネガティブシグナル）"""
    transaction_id: str
    name: str = ""
    partner: Optional[str] = None
    removed_at: str = field(default_factory=utc_now_iso)


@dataclass
class Transaction(_Record):
    id: str
    user_id: str
    date: date
    amount: int  # 最小通貨単位、符号付き
    currency: str = "EUR"
    free_text: str = ""
    counterparty_name_hint: Optional[str] = None
    counterparty_iban: Optional[str] = None
    reference: Optional[str] = None
    # 以下は解決結果（可変）
    partner_id: Optional[str] = None
    partner_type: Optional[str] = None
    partner_confidence: Optional[int] = None
    partner_match_source: Optional[str] = None
    partner_suggestions: List[Dict] = field(default_factory=list)
    document_ids: List[str] = field(default_factory=list)
    rejected_document_ids: List[str] = field(default_factory=list)
    category_id: Optional[str] = None
    category_confidence: Optional[int] = None
    category_suggestions: List[Dict] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return bool(self.partner_id) and (bool(self.document_ids) or bool(self.category_id))

    @property
    def combined_text(self) -> str:
        parts = [self.free_text, self.counterparty_name_hint, self.reference]
        return " ".join(p for p in parts if p).lower()

    @classmethod
    def from_dict(cls, data: Dict) -> "Transaction":
        return _load(cls, data, dates=("date",))


@dataclass
class Document(_Record):
    """アップロード・取得済みの領収書/請求書"""
    id: str
    user_id: str
    file_name: str = ""
    mime_type: str = ""
    extracted_amount: Optional[int] = None
    extracted_date: Optional[date] = None
    extracted_partner_name: Optional[str] = None
    extracted_text: Optional[str] = None
    partner_id: Optional[str] = None
    transaction_ids: List[str] = field(default_factory=list)
    is_not_invoice: bool = False

    @property
    def is_scoring_candidate(self) -> bool:
        return not self.is_not_invoice and not self.transaction_ids

    @classmethod
    def from_dict(cls, data: Dict) -> "Document":
        return _load(cls, data, dates=("extracted_date",))


@dataclass
class Partner(_Record):
    id: str
    name: str
    user_id: Optional[str] = None  # None はグローバル（共有）取引先
    aliases: List[str] = field(default_factory=list)
    ibans: List[str] = field(default_factory=list)
    vat_id: Optional[str] = None
    website: Optional[str] = None
    email_domains: List[str] = field(default_factory=list)
    learned_patterns: List[LearnedPattern] = field(default_factory=list)
    file_source_patterns: List[FileSourcePattern] = field(default_factory=list)
    manual_removals: List[ManualRemoval] = field(default_factory=list)

    @property
    def partner_type(self) -> str:
        return "global" if self.user_id is None else "user"

    @classmethod
    def from_dict(cls, data: Dict) -> "Partner":
        return _load(cls, data, nested={
            "learned_patterns": LearnedPattern,
            "file_source_patterns": FileSourcePattern,
            "manual_removals": ManualRemoval,
        })


@dataclass
class Category(_Record):
    """領収書不要カテゴリ（銀行手数料・利息など）"""
    id: str
    user_id: str
    name: str
    template_id: str = ""
    learned_patterns: List[LearnedPattern] = field(default_factory=list)
    manual_removals: List[ManualRemoval] = field(default_factory=list)
    matched_partner_ids: List[str] = field(default_factory=list)
    transaction_count: int = 0
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict) -> "Category":
        return _load(cls, data, nested={
            "learned_patterns": LearnedPattern,
            "manual_removals": ManualRemoval,
        })


@dataclass
class Connection(_Record):
    id: str
    user_id: str
    document_id: str
    transaction_id: str
    connection_type: str  # manual|auto_matched|ai_matched
    match_confidence: Optional[int] = None
    match_reasons: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class Candidate(_Record):
    """取引先リゾルバの候補"""
    partner_id: str
    partner_type: str
    confidence: int
    source: str
    partner_name: str = ""
    priority: int = 0  # マッチャーの優先順位（同点時のタイブレーク）


@dataclass
class ScoredPair:
    document_id: str
    transaction_id: str
    score: int
    reasons: List[str]


@dataclass
class SearchCandidate(_Record):
    """検索戦略が返す統一形の候補"""
    id: str
    source_type: str  # local_file|gmail_attachment|gmail_email
    score: int = 0
    score_reasons: List[str] = field(default_factory=list)
    document_id: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    message_id: Optional[str] = None
    attachment_id: Optional[str] = None
    integration_id: Optional[str] = None
    email_subject: Optional[str] = None
    email_from: Optional[str] = None
    invoice_url: Optional[str] = None
    nominated: bool = False
    nominated_at: Optional[str] = None
    nomination_reason: Optional[str] = None
    download_status: Optional[str] = None  # pending|completed|failed
    downloaded_document_id: Optional[str] = None


@dataclass
class SearchRecord(_Record):
    type: str
    candidates_found: int
    query: Optional[str] = None
    at: str = field(default_factory=utc_now_iso)


@dataclass
class AgentSearchSession(_Record):
    session_id: str
    transaction_id: str
    user_id: str
    iteration: int = 0
    max_iterations: int = 3
    searches_performed: List[SearchRecord] = field(default_factory=list)
    nominated_candidates: List[SearchCandidate] = field(default_factory=list)
    files_connected: List[str] = field(default_factory=list)
    status: str = "active"
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @classmethod
    def from_dict(cls, data: Dict) -> "AgentSearchSession":
        return _load(cls, data, nested={
            "searches_performed": SearchRecord,
            "nominated_candidates": SearchCandidate,
        })


@dataclass
class DiscoveredInvoiceLink(_Record):
    url: str
    email_message_id: str
    anchor_text: Optional[str] = None
    email_subject: Optional[str] = None
    email_from: Optional[str] = None
    transaction_id: Optional[str] = None
    discovered_at: str = field(default_factory=utc_now_iso)


@dataclass
class SearchAttempt(_Record):
    """1戦略ぶんの実行記録"""
    strategy: str
    started_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    search_params: Dict = field(default_factory=dict)
    candidates_found: int = 0
    candidates_evaluated: int = 0
    matches_found: int = 0
    document_ids_connected: List[str] = field(default_factory=list)
    invoice_links_found: List[str] = field(default_factory=list)
    external_calls: int = 0
    error: Optional[str] = None


@dataclass
class SearchEntry(_Record):
    """精密検索1回ぶんの監査ログ。completed_at 以降は不変"""
    id: str
    transaction_id: str
    user_id: str
    triggered_by: str = "manual"  # manual|scheduled|gmail_sync
    status: str = "processing"
    strategies_attempted: List[str] = field(default_factory=list)
    attempts: List[SearchAttempt] = field(default_factory=list)
    total_files_connected: int = 0
    automation_source: Optional[str] = None
    total_external_calls: int = 0
    created_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "SearchEntry":
        return _load(cls, data, nested={"attempts": SearchAttempt})
