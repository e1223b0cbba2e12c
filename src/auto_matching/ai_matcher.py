"""
AIフォールバックマッチャー

決定的スコアリングで埋まらなかった書類/取引ペアを外部の推論サービス（Claude API）へ
渡す。応答は必ずスキーマ検証し、入力に存在しないIDは黙って捨てる。
呼び出し失敗は「マッチ0件」として扱い、呼び出し元へ例外を伝播させない。
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError as SchemaError

from .errors import ExternalServiceError
from .models import Document, Transaction

logger = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"


class ClaudeClient:
    """Claude API クライアント"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 30,
        max_tokens: int = 2000,
    ):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.model = model or os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.headers = {
            "x-api-key": self.api_key or "",
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

    def complete(self, system: str, user_message: str) -> str:
        if not self.api_key:
            raise ExternalServiceError("ANTHROPIC_API_KEY is not set")
        data = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": 0,
            "system": system,
            "messages": [{"role": "user", "content": user_message}],
        }
        try:
            response = requests.post(ANTHROPIC_URL, headers=self.headers, json=data, timeout=self.timeout)
            response.raise_for_status()
            return response.json()["content"][0]["text"]
        except requests.RequestException as e:
            raise ExternalServiceError(f"Claude API request failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ExternalServiceError(f"Unexpected Claude API response: {e}") from e


def strip_code_fences(text: str) -> str:
    """```json ... ``` で囲まれていれば中身だけ取り出す"""
    if not text:
        return ""
    m = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL | re.IGNORECASE)
    if m:
        return m.group(1).strip()
    return text.strip()


def extract_json(text: str) -> Any:
    body = strip_code_fences(text)
    try:
        return json.loads(body)
    except ValueError:
        pass
    # 前後に説明文が付いている場合は最初の { か [ から最後の } か ] までを試す
    starts = [i for i in (body.find("{"), body.find("[")) if i >= 0]
    if not starts:
        raise ValueError("no JSON payload found")
    start = min(starts)
    end = max(body.rfind("}"), body.rfind("]"))
    if end <= start:
        raise ValueError("no JSON payload found")
    return json.loads(body[start:end + 1])


class AIMatchItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    document_id: str = Field(alias="documentId", min_length=1)
    transaction_id: str = Field(alias="transactionId", min_length=1)
    reasoning: str = ""


class CompanyInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    found: bool = True
    name: str = Field(default="", max_length=200)
    aliases: List[str] = Field(default_factory=list)
    website: Optional[str] = None
    vat_id: Optional[str] = Field(default=None, alias="vatId")


@dataclass
class AIMatch:
    document_id: str
    transaction_id: str
    reasoning: str = ""


@dataclass
class AIMatchResult:
    """AI照合結果（ok=False のとき error に理由、matches は空）"""
    ok: bool
    matches: List[AIMatch] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def success(cls, matches: List[AIMatch]) -> "AIMatchResult":
        return cls(ok=True, matches=matches)

    @classmethod
    def failure(cls, reason: str) -> "AIMatchResult":
        return cls(ok=False, matches=[], error=reason)


MATCH_SYSTEM_PROMPT = """You match receipts/invoices (documents) to bank transactions.
Only report matches you are highly confident about. Each document and each
transaction may appear in at most one match. Respond with strict JSON only:
{"matches": [{"documentId": "...", "transactionId": "...", "reasoning": "..."}]}
If nothing matches with high confidence respond {"matches": []}."""

LOOKUP_SYSTEM_PROMPT = """You identify real-world companies from bank statement text.
Respond with strict JSON only:
{"found": true, "name": "...", "aliases": ["..."], "website": "...", "vatId": null}
If the text does not identify a real company respond {"found": false}."""


def _summarize_document(doc: Document) -> Dict:
    return {
        "id": doc.id,
        "amount": doc.extracted_amount,
        "date": doc.extracted_date.isoformat() if doc.extracted_date else None,
        "partner": doc.extracted_partner_name,
        "fileName": doc.file_name,
    }


def _summarize_transaction(tx: Transaction) -> Dict:
    return {
        "id": tx.id,
        "amount": tx.amount,
        "currency": tx.currency,
        "date": tx.date.isoformat(),
        "text": tx.free_text,
        "counterparty": tx.counterparty_name_hint,
        "reference": tx.reference,
    }


def parse_match_response(text: str, document_ids: Sequence[str], transaction_ids: Sequence[str]) -> AIMatchResult:
    """応答テキストを検証し、入力に含まれるIDのペアだけを返す"""
    try:
        payload = extract_json(text)
    except ValueError as e:
        return AIMatchResult.failure(f"malformed response: {e}")

    if isinstance(payload, dict):
        raw_items = payload.get("matches", [])
    elif isinstance(payload, list):
        raw_items = payload
    else:
        return AIMatchResult.failure("unexpected payload type")
    if not isinstance(raw_items, list):
        return AIMatchResult.failure("matches is not a list")

    doc_set, tx_set = set(document_ids), set(transaction_ids)
    used_docs, used_txs = set(), set()
    matches: List[AIMatch] = []
    for raw in raw_items:
        try:
            item = AIMatchItem.model_validate(raw)
        except SchemaError:
            logger.debug("AI応答の不正なエントリを破棄: %r", raw)
            continue
        if item.document_id not in doc_set or item.transaction_id not in tx_set:
            logger.debug("未知のIDを破棄: %s / %s", item.document_id, item.transaction_id)
            continue
        if item.document_id in used_docs or item.transaction_id in used_txs:
            continue
        used_docs.add(item.document_id)
        used_txs.add(item.transaction_id)
        matches.append(AIMatch(item.document_id, item.transaction_id, item.reasoning))
    return AIMatchResult.success(matches)


def match_with_ai(
    client: ClaudeClient,
    documents: Sequence[Document],
    transactions: Sequence[Transaction],
    context: Optional[Dict] = None,
) -> AIMatchResult:
    """未マッチの書類/取引を推論サービスに照合させる（ベストエフォート）"""
    if not documents or not transactions:
        return AIMatchResult.success([])
    user_message = json.dumps(
        {
            "context": context or {},
            "documents": [_summarize_document(d) for d in documents],
            "transactions": [_summarize_transaction(t) for t in transactions],
        },
        ensure_ascii=False,
    )
    try:
        text = client.complete(MATCH_SYSTEM_PROMPT, user_message)
    except ExternalServiceError as e:
        logger.warning("AI照合に失敗（0件として継続）: %s", e)
        return AIMatchResult.failure(str(e))

    result = parse_match_response(text, [d.id for d in documents], [t.id for t in transactions])
    if not result.ok:
        logger.warning("AI応答を解釈できません（0件として継続）: %s", result.error)
    else:
        logger.info("AI照合: %d 件", len(result.matches))
    return result


def lookup_company(client: ClaudeClient, text: str) -> Optional[CompanyInfo]:
    """取引テキストから実在企業を推定する。見つからない・失敗時は None"""
    if not text or not text.strip():
        return None
    try:
        reply = client.complete(LOOKUP_SYSTEM_PROMPT, text.strip())
        info = CompanyInfo.model_validate(extract_json(reply))
    except ExternalServiceError as e:
        logger.warning("企業照会に失敗: %s", e)
        return None
    except (ValueError, SchemaError) as e:
        logger.warning("企業照会の応答が不正: %s", e)
        return None
    if not info.found or len(info.name) < 2:
        return None
    return info
