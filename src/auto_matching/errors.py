"""
マッチングエンジンの例外定義
呼び出し側はこの階層だけを見ればよい
"""

from typing import Optional


class MatchingError(Exception):
    """マッチングエンジン共通の基底例外"""


class ValidationError(MatchingError):
    """入力不正（必須項目の欠落など）。スコアリング開始前に弾く"""


class DuplicateConnectionError(ValidationError):
    """既に接続済みの (document, transaction) ペアを再接続しようとした"""

    def __init__(self, document_id: str, transaction_id: str):
        super().__init__(f"document {document_id} is already connected to transaction {transaction_id}")
        self.document_id = document_id
        self.transaction_id = transaction_id


class NotFoundError(MatchingError):
    """参照先が存在しない、または呼び出し元テナントの所有ではない"""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class ExternalServiceError(MatchingError):
    """外部サービス（AI・検索プロバイダ）の失敗やタイムアウト

    クライアント内部でのみ送出し、エンジン側で必ず捕捉して空結果に落とす。
    """


class TerminatedSessionError(MatchingError):
    """終了済みのエージェント検索セッションに対する操作"""

    def __init__(self, session_id: str, status: str):
        super().__init__(f"session {session_id} is terminated ({status})")
        self.session_id = session_id
        self.status = status


SessionTerminated = TerminatedSessionError


class PartialBatchError(MatchingError):
    """チャンク単位の永続化で途中のチャンクが失敗した

    それまでにコミット済みのチャンクはそのまま残る。
    processed を見て残りだけ再試行すればよい。
    """

    def __init__(self, processed: int, failed_chunk: int, cause: Optional[BaseException] = None):
        super().__init__(f"batch failed at chunk {failed_chunk} after {processed} items: {cause}")
        self.processed = processed
        self.failed_chunk = failed_chunk
        self.cause = cause
