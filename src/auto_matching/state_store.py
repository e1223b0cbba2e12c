import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Iterator, List, Optional, Sequence, Type

from .errors import DuplicateConnectionError, NotFoundError, PartialBatchError, ValidationError
from .models import (
    CONNECTION_TYPES,
    AgentSearchSession,
    Category,
    Connection,
    Document,
    Partner,
    SearchEntry,
    Transaction,
)

logger = logging.getLogger(__name__)


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("MATCHING_STATE_DB", "matching_state.db")


def _json_default(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"not JSON serializable: {type(value)!r}")


def _dumps(record) -> str:
    return json.dumps(record.to_dict(), ensure_ascii=False, default=_json_default)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS transactions (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      payload TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS documents (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      payload TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS partners (
      id TEXT PRIMARY KEY,
      user_id TEXT,
      payload TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS categories (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      payload TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS connections (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      document_id TEXT NOT NULL,
      transaction_id TEXT NOT NULL,
      payload TEXT NOT NULL,
      UNIQUE(document_id, transaction_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_sessions (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      transaction_id TEXT NOT NULL,
      status TEXT NOT NULL,
      payload TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS search_entries (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      transaction_id TEXT NOT NULL,
      payload TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
      ts TEXT,
      level TEXT,
      actor TEXT,
      action TEXT,
      target_ids TEXT,
      score INTEGER,
      result TEXT,
      error TEXT
    );
    """,
)

# テーブル名とモデルの対応
_TABLES = {
    Transaction: "transactions",
    Document: "documents",
    Partner: "partners",
    Category: "categories",
}


class StateStore:
    """sqlite による状態保存

    取引・書類・接続の更新は unit_of_work 内でまとめてコミットし、
    Transaction.document_ids と Document.transaction_ids の対称性を崩さない。
    """

    def __init__(self, db_path: Optional[str] = None, auto_match_threshold: int = 85):
        self.db_path = db_path or _get_db_path()
        self.auto_match_threshold = auto_match_threshold
        self.init_db()

    @contextmanager
    def unit_of_work(self) -> Iterator[sqlite3.Connection]:
        """1つの sqlite トランザクション。例外時はすべてロールバック"""
        con = sqlite3.connect(self.db_path)
        try:
            yield con
            con.commit()
        except BaseException:
            con.rollback()
            raise
        finally:
            con.close()

    def init_db(self):
        with self.unit_of_work() as con:
            for ddl in _SCHEMA:
                con.execute(ddl)

    # ---- 汎用の読み書き ----

    def _put(self, con: sqlite3.Connection, record):
        table = _TABLES[type(record)]
        con.execute(
            f"INSERT OR REPLACE INTO {table}(id, user_id, payload) VALUES (?,?,?)",
            (record.id, record.user_id, _dumps(record)),
        )

    def _get(self, con: sqlite3.Connection, cls: Type, user_id: str, record_id: str):
        table = _TABLES[cls]
        row = con.execute(f"SELECT user_id, payload FROM {table} WHERE id=?", (record_id,)).fetchone()
        if not row:
            raise NotFoundError(cls.__name__, record_id)
        owner, payload = row
        # グローバル取引先（user_id なし）は全テナントから参照可
        if owner is not None and owner != user_id:
            raise NotFoundError(cls.__name__, record_id)
        return cls.from_dict(json.loads(payload))

    def _list(self, cls: Type, user_id: str, include_global: bool = False) -> List:
        table = _TABLES[cls]
        sql = f"SELECT payload FROM {table} WHERE user_id=?"
        if include_global:
            sql += " OR user_id IS NULL"
        with self.unit_of_work() as con:
            rows = con.execute(sql + " ORDER BY rowid", (user_id,)).fetchall()
        return [cls.from_dict(json.loads(r[0])) for r in rows]

    def save(self, *records):
        with self.unit_of_work() as con:
            for record in records:
                self._put(con, record)

    def get_transaction(self, user_id: str, transaction_id: str) -> Transaction:
        with self.unit_of_work() as con:
            return self._get(con, Transaction, user_id, transaction_id)

    def get_document(self, user_id: str, document_id: str) -> Document:
        with self.unit_of_work() as con:
            return self._get(con, Document, user_id, document_id)

    def get_partner(self, user_id: str, partner_id: str) -> Partner:
        with self.unit_of_work() as con:
            return self._get(con, Partner, user_id, partner_id)

    def get_category(self, user_id: str, category_id: str) -> Category:
        with self.unit_of_work() as con:
            return self._get(con, Category, user_id, category_id)

    def list_transactions(self, user_id: str) -> List[Transaction]:
        return self._list(Transaction, user_id)

    def list_documents(self, user_id: str) -> List[Document]:
        return self._list(Document, user_id)

    def list_partners(self, user_id: str) -> List[Partner]:
        return self._list(Partner, user_id, include_global=True)

    def list_categories(self, user_id: str) -> List[Category]:
        return self._list(Category, user_id)

    # ---- 接続 ----

    def _connect(self, con: sqlite3.Connection, conn: Connection) -> Connection:
        if conn.connection_type not in CONNECTION_TYPES:
            raise ValidationError(f"unknown connection type: {conn.connection_type}")
        if conn.connection_type == "auto_matched" and (conn.match_confidence or 0) < self.auto_match_threshold:
            raise ValidationError(
                f"auto_matched connection below threshold: {conn.match_confidence} < {self.auto_match_threshold}"
            )
        tx = self._get(con, Transaction, conn.user_id, conn.transaction_id)
        doc = self._get(con, Document, conn.user_id, conn.document_id)
        exists = con.execute(
            "SELECT 1 FROM connections WHERE document_id=? AND transaction_id=?",
            (conn.document_id, conn.transaction_id),
        ).fetchone()
        if exists or doc.id in tx.document_ids or tx.id in doc.transaction_ids:
            raise DuplicateConnectionError(doc.id, tx.id)

        conn.id = conn.id or f"conn_{uuid.uuid4().hex[:16]}"
        tx.document_ids.append(doc.id)
        doc.transaction_ids.append(tx.id)
        if doc.partner_id is None and tx.partner_id:
            doc.partner_id = tx.partner_id
        con.execute(
            "INSERT INTO connections(id, user_id, document_id, transaction_id, payload) VALUES (?,?,?,?,?)",
            (conn.id, conn.user_id, doc.id, tx.id, _dumps(conn)),
        )
        self._put(con, tx)
        self._put(con, doc)
        return conn

    def connect(
        self,
        user_id: str,
        document_id: str,
        transaction_id: str,
        connection_type: str = "manual",
        match_confidence: Optional[int] = None,
        match_reasons: Sequence[str] = (),
    ) -> Connection:
        conn = Connection(
            id="",
            user_id=user_id,
            document_id=document_id,
            transaction_id=transaction_id,
            connection_type=connection_type,
            match_confidence=match_confidence,
            match_reasons=list(match_reasons),
        )
        with self.unit_of_work() as con:
            return self._connect(con, conn)

    def disconnect(self, user_id: str, document_id: str, transaction_id: str, rejected: bool = False):
        """接続を外す。rejected=True なら以後その書類をこの取引に提案しない"""
        with self.unit_of_work() as con:
            tx = self._get(con, Transaction, user_id, transaction_id)
            doc = self._get(con, Document, user_id, document_id)
            cur = con.execute(
                "DELETE FROM connections WHERE document_id=? AND transaction_id=? AND user_id=?",
                (document_id, transaction_id, user_id),
            )
            if cur.rowcount == 0 and doc.id not in tx.document_ids:
                raise NotFoundError("Connection", f"{document_id}:{transaction_id}")
            tx.document_ids = [d for d in tx.document_ids if d != doc.id]
            doc.transaction_ids = [t for t in doc.transaction_ids if t != tx.id]
            if rejected and doc.id not in tx.rejected_document_ids:
                tx.rejected_document_ids.append(doc.id)
            self._put(con, tx)
            self._put(con, doc)

    def commit_connections(self, connections: Sequence[Connection], chunk_size: int = 150) -> int:
        """チャンクごとに原子的に接続を保存し、保存件数を返す

        失敗したチャンクは丸ごとロールバックされ PartialBatchError になる。
        それ以前のチャンクはコミット済み。
        """
        processed = 0
        for index in range(0, len(connections), chunk_size):
            chunk = connections[index:index + chunk_size]
            try:
                with self.unit_of_work() as con:
                    for conn in chunk:
                        self._connect(con, conn)
            except Exception as e:
                logger.warning("接続の一括保存に失敗（%d 件保存済み）: %s", processed, e)
                raise PartialBatchError(processed, index // chunk_size, e) from e
            processed += len(chunk)
        return processed

    def list_connections(self, user_id: str, transaction_id: Optional[str] = None) -> List[Connection]:
        sql = "SELECT payload FROM connections WHERE user_id=?"
        params: list = [user_id]
        if transaction_id:
            sql += " AND transaction_id=?"
            params.append(transaction_id)
        with self.unit_of_work() as con:
            rows = con.execute(sql + " ORDER BY rowid", params).fetchall()
        return [Connection.from_dict(json.loads(r[0])) for r in rows]

    # ---- エージェント検索セッション ----

    def save_session(self, session: AgentSearchSession):
        with self.unit_of_work() as con:
            con.execute(
                "INSERT OR REPLACE INTO agent_sessions(id, user_id, transaction_id, status, payload) VALUES (?,?,?,?,?)",
                (session.session_id, session.user_id, session.transaction_id, session.status, _dumps(session)),
            )

    def get_session(self, user_id: str, session_id: str) -> AgentSearchSession:
        with self.unit_of_work() as con:
            row = con.execute(
                "SELECT payload FROM agent_sessions WHERE id=? AND user_id=?", (session_id, user_id)
            ).fetchone()
        if not row:
            raise NotFoundError("AgentSearchSession", session_id)
        return AgentSearchSession.from_dict(json.loads(row[0]))

    def find_active_session(self, user_id: str, transaction_id: str) -> Optional[AgentSearchSession]:
        with self.unit_of_work() as con:
            row = con.execute(
                "SELECT payload FROM agent_sessions WHERE user_id=? AND transaction_id=? AND status='active'",
                (user_id, transaction_id),
            ).fetchone()
        return AgentSearchSession.from_dict(json.loads(row[0])) if row else None

    # ---- 精密検索の監査記録 ----

    def save_search_entry(self, entry: SearchEntry):
        """検索記録の保存。completed_at 済みの記録は上書きできない"""
        with self.unit_of_work() as con:
            row = con.execute("SELECT payload FROM search_entries WHERE id=?", (entry.id,)).fetchone()
            if row and json.loads(row[0]).get("completed_at"):
                raise ValidationError(f"search entry {entry.id} is already completed")
            con.execute(
                "INSERT OR REPLACE INTO search_entries(id, user_id, transaction_id, payload) VALUES (?,?,?,?)",
                (entry.id, entry.user_id, entry.transaction_id, _dumps(entry)),
            )

    def list_search_entries(self, user_id: str, transaction_id: str) -> List[SearchEntry]:
        with self.unit_of_work() as con:
            rows = con.execute(
                "SELECT payload FROM search_entries WHERE user_id=? AND transaction_id=? ORDER BY rowid",
                (user_id, transaction_id),
            ).fetchall()
        return [SearchEntry.from_dict(json.loads(r[0])) for r in rows]

    # ---- 監査ログ ----

    def write_audit(self, level: str, actor: str, action: str, target_ids: list, score: Optional[int], result: str, error: Optional[str] = None):
        with self.unit_of_work() as con:
            con.execute(
                "INSERT INTO audit_log(ts, level, actor, action, target_ids, score, result, error) VALUES (?,?,?,?,?,?,?,?)",
                (datetime.now(timezone.utc).isoformat(), level, actor, action, json.dumps(target_ids), score, result, error),
            )

    def list_audit(self, action: Optional[str] = None) -> List[dict]:
        sql = "SELECT ts, level, actor, action, target_ids, score, result, error FROM audit_log"
        params: list = []
        if action:
            sql += " WHERE action=?"
            params.append(action)
        with self.unit_of_work() as con:
            rows = con.execute(sql + " ORDER BY rowid", params).fetchall()
        keys = ("ts", "level", "actor", "action", "target_ids", "score", "result", "error")
        return [dict(zip(keys, r), target_ids=json.loads(r[4] or "[]")) for r in rows]
