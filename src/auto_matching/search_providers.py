"""
検索戦略と精密検索

ローカル書類・メール添付・メール本文（請求書リンク）を同じ SearchCandidate 形で返す。
外部プロバイダの失敗は空結果に落とし、SearchAttempt.error に記録する。
"""

import base64
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Sequence

import requests
from bs4 import BeautifulSoup

from .config_loader import MatchingConfig
from .document_scorer import amount_score, date_score, score_document
from .errors import DuplicateConnectionError, ExternalServiceError, NotFoundError, ValidationError
from .models import (
    DiscoveredInvoiceLink,
    Document,
    Partner,
    SearchAttempt,
    SearchCandidate,
    SearchEntry,
    Transaction,
    utc_now_iso,
)
from .pattern_utils import glob_match, normalize_company_name, tokenize

logger = logging.getLogger(__name__)

DEFAULT_STRATEGIES = ("partner_files", "amount_files", "email_invoice", "email_attachment")

# 本文そのものが請求書/領収書であることを示す語
MAIL_INVOICE_KEYWORDS = (
    "order confirmation",
    "payment received",
    "payment confirmation",
    "your purchase",
    "order summary",
    "receipt for your",
    "thank you for your order",
    "your order has been",
    "purchase confirmation",
    "bestellbestätigung",
    "zahlungsbestätigung",
    "zahlungseingang",
    "ihre bestellung",
    "kaufbestätigung",
    "vielen dank für ihre bestellung",
    "ihre zahlung",
    "buchungsbestätigung",
)

# 請求書ダウンロードへのリンクを示す語
INVOICE_LINK_KEYWORDS = (
    "download your invoice",
    "view your invoice",
    "download invoice",
    "view invoice",
    "click here to download",
    "access your invoice",
    "get your receipt",
    "download pdf",
    "download receipt",
    "rechnung herunterladen",
    "rechnung anzeigen",
    "rechnung abrufen",
    "hier klicken",
    "pdf herunterladen",
    "beleg herunterladen",
    "rechnung ansehen",
    "zum download",
)

RECEIPT_KEYWORDS = ("invoice", "rechnung", "receipt", "beleg", "quittung", "faktura", "bill")
URL_INVOICE_HINTS = ("invoice", "rechnung", "receipt", "beleg", "billing", "download")


# ---- プロバイダが返すメール形 ----

@dataclass
class EmailAttachment:
    attachment_id: str
    filename: str
    mime_type: str = ""
    size: int = 0


@dataclass
class EmailMessage:
    message_id: str
    integration_id: str = ""
    subject: str = ""
    sender: str = ""
    snippet: str = ""
    html_body: str = ""
    text_body: str = ""
    received: Optional[date] = None
    attachments: List[EmailAttachment] = field(default_factory=list)


@dataclass
class EmailClassification:
    has_pdf_attachment: bool
    possible_mail_invoice: bool
    possible_invoice_link: bool
    confidence: int
    matched_keywords: List[str] = field(default_factory=list)


def _is_pdf(att: EmailAttachment) -> bool:
    mime = (att.mime_type or "").lower()
    return mime == "application/pdf" or (
        mime == "application/octet-stream" and att.filename.lower().endswith(".pdf")
    )


def classify_email(subject: str, snippet: str, attachments: Sequence[EmailAttachment]) -> EmailClassification:
    combined = f"{subject or ''} {snippet or ''}".lower()
    matched: List[str] = []
    has_pdf = any(_is_pdf(a) for a in attachments)

    mail_invoice = next((k for k in MAIL_INVOICE_KEYWORDS if k in combined), None)
    if mail_invoice:
        matched.append(mail_invoice)
    link = next((k for k in INVOICE_LINK_KEYWORDS if k in combined), None)
    if link:
        matched.append(link)

    confidence = 0
    if has_pdf:
        confidence += 40
    if mail_invoice:
        confidence += 30
    if link:
        confidence += 25
    confidence = min(confidence, 100)
    if has_pdf and confidence < 50:
        confidence = 50

    return EmailClassification(
        has_pdf_attachment=has_pdf,
        # PDFがあれば本文請求書としては扱わない
        possible_mail_invoice=bool(mail_invoice) and not has_pdf,
        possible_invoice_link=bool(link),
        confidence=confidence,
        matched_keywords=matched,
    )


def extract_invoice_links(message: EmailMessage, transaction_id: Optional[str] = None) -> List[DiscoveredInvoiceLink]:
    """HTML本文から請求書らしいリンクを抜き出す"""
    if not message.html_body:
        return []
    soup = BeautifulSoup(message.html_body, "html.parser")
    links: List[DiscoveredInvoiceLink] = []
    seen = set()
    for a in soup.find_all("a", href=True):
        url = a["href"].strip()
        if not url.lower().startswith(("http://", "https://")) or url in seen:
            continue
        text = a.get_text(" ", strip=True)
        text_l = text.lower()
        url_l = url.lower()
        if not (
            any(k in text_l for k in INVOICE_LINK_KEYWORDS)
            or any(k in text_l for k in RECEIPT_KEYWORDS)
            or any(k in url_l for k in URL_INVOICE_HINTS)
        ):
            continue
        seen.add(url)
        links.append(DiscoveredInvoiceLink(
            url=url,
            email_message_id=message.message_id,
            anchor_text=text or None,
            email_subject=message.subject,
            email_from=message.sender,
            transaction_id=transaction_id,
        ))
    return links


def amount_variants(amount_minor: Optional[int]) -> List[str]:
    """金額の表記ゆれ（4480.00 / 4480,00 / 4,480.00 / 4.480,00 / 4480）"""
    if amount_minor is None:
        return []
    value = abs(amount_minor) / 100
    fixed = f"{value:.2f}"
    en = f"{value:,.2f}"
    de = en.replace(",", "_").replace(".", ",").replace("_", ".")
    variants = [fixed, fixed.replace(".", ","), en, de, str(int(round(value)))]
    return list(dict.fromkeys(variants))


def _email_domain(sender: str) -> Optional[str]:
    m = re.search(r"@([a-z0-9.-]+\.[a-z]{2,})", (sender or "").lower())
    return m.group(1) if m else None


def score_attachment(
    attachment: EmailAttachment,
    message: EmailMessage,
    tx: Transaction,
    partner: Optional[Partner] = None,
) -> SearchCandidate:
    """メール添付の適合度を採点して候補にする"""
    reasons: List[str] = []
    score = 0
    filename = attachment.filename.lower()
    subject = (message.subject or "").lower()
    combined = " ".join(filter(None, [message.subject, message.snippet, message.sender, message.text_body])).lower()

    if (attachment.mime_type or "").lower() in ("application/pdf", "image/jpeg", "image/png", "image/webp", "image/gif"):
        score += 15
        reasons.append("Likely receipt file type")
    if any(k in filename for k in RECEIPT_KEYWORDS):
        score += 25
        reasons.append("Filename has invoice keyword")
    if any(k in subject for k in RECEIPT_KEYWORDS):
        score += 15
        reasons.append("Subject has invoice keyword")
    if any(v in combined or v in filename for v in amount_variants(tx.amount)):
        score += 20
        reasons.append("Amount in email")
    partner_tokens = [t for t in tokenize(partner.name if partner else tx.counterparty_name_hint) if len(t) >= 3]
    if partner_tokens and any(t in combined for t in partner_tokens):
        score += 10
        reasons.append("Partner name in email")
    domain = _email_domain(message.sender)
    if partner and domain and any(domain == d.lower() or domain.endswith("." + d.lower()) for d in partner.email_domains):
        score += 20
        reasons.append("Known sender domain")
    if partner and any(
        p.source_type == "gmail" and glob_match(p.pattern, attachment.filename) for p in partner.file_source_patterns
    ):
        score += 10
        reasons.append("Matches learned email pattern")
    if message.received:
        _, date_reason = date_score(message.received, tx.date)
        if date_reason is None:
            score = int(score * 0.5)
            reasons.append("Email date far from transaction")

    return SearchCandidate(
        id=f"{message.message_id}:{attachment.attachment_id}",
        source_type="gmail_attachment",
        score=min(100, score),
        score_reasons=reasons,
        file_name=attachment.filename,
        mime_type=attachment.mime_type,
        message_id=message.message_id,
        attachment_id=attachment.attachment_id,
        integration_id=message.integration_id,
        email_subject=message.subject,
        email_from=message.sender,
    )


def build_search_queries(tx: Transaction, partner: Optional[Partner] = None) -> List[str]:
    queries = []
    name = normalize_company_name(partner.name) if partner else ""
    hint = normalize_company_name(tx.counterparty_name_hint)
    variants = amount_variants(tx.amount)
    for base in (name, hint):
        if base:
            queries.append(f"{base} {variants[0]}" if variants else base)
            queries.append(base)
    if variants:
        queries.append(f"rechnung OR invoice {variants[1]}")
    for domain in (partner.email_domains if partner else []):
        queries.append(f"from:{domain}")
    return list(dict.fromkeys(q for q in queries if q))


# ---- プロバイダ ----

class EmailSearchProvider:
    """メール検索プロバイダの共通インターフェース"""

    def search_messages(self, query: str, after: Optional[date] = None, before: Optional[date] = None, limit: int = 20) -> List[EmailMessage]:
        raise NotImplementedError

    def fetch_candidate_document(self, user_id: str, candidate: SearchCandidate) -> Document:
        """添付候補をダウンロードして書類化する"""
        raise NotImplementedError


class GmailClient(EmailSearchProvider):
    """Gmail REST API を requests で叩く薄いクライアント

    extractor は添付バイト列から {extracted_amount, extracted_date, ...} を返す外部抽出サービス。
    """

    BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

    def __init__(self, access_token: str, integration_id: str = "", timeout: float = 20,
                 extractor: Optional[Callable[[bytes, str, str], Dict]] = None):
        self.integration_id = integration_id
        self.timeout = timeout
        self.extractor = extractor
        self.headers = {"Authorization": f"Bearer {access_token}"}

    def _get(self, path: str, params: Optional[Dict] = None) -> Dict:
        try:
            resp = requests.get(f"{self.BASE_URL}{path}", headers=self.headers, params=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            raise ExternalServiceError(f"Gmail API error: {e}") from e
        except ValueError as e:
            raise ExternalServiceError(f"Gmail API returned invalid JSON: {e}") from e

    def search_messages(self, query: str, after: Optional[date] = None, before: Optional[date] = None, limit: int = 20) -> List[EmailMessage]:
        q = query
        if after:
            q += f" after:{after.strftime('%Y/%m/%d')}"
        if before:
            q += f" before:{before.strftime('%Y/%m/%d')}"
        listing = self._get("/messages", {"q": q, "maxResults": limit})
        return [self._load_message(m["id"]) for m in listing.get("messages", [])]

    def _load_message(self, message_id: str) -> EmailMessage:
        data = self._get(f"/messages/{message_id}", {"format": "full"})
        payload = data.get("payload", {})
        headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}
        msg = EmailMessage(
            message_id=message_id,
            integration_id=self.integration_id,
            subject=headers.get("subject", ""),
            sender=headers.get("from", ""),
            snippet=data.get("snippet", ""),
        )
        stack = [payload]
        while stack:
            part = stack.pop()
            body = part.get("body", {})
            if body.get("attachmentId") and part.get("filename"):
                msg.attachments.append(EmailAttachment(
                    attachment_id=body["attachmentId"],
                    filename=part["filename"],
                    mime_type=part.get("mimeType", ""),
                    size=body.get("size", 0),
                ))
            elif body.get("data") and part.get("mimeType") in ("text/html", "text/plain"):
                text = base64.urlsafe_b64decode(body["data"] + "==").decode("utf-8", errors="replace")
                if part["mimeType"] == "text/html":
                    msg.html_body = text
                else:
                    msg.text_body = text
            stack.extend(part.get("parts", []))
        return msg

    def fetch_candidate_document(self, user_id: str, candidate: SearchCandidate) -> Document:
        if not candidate.message_id or not candidate.attachment_id:
            raise NotFoundError("EmailAttachment", candidate.id)
        data = self._get(f"/messages/{candidate.message_id}/attachments/{candidate.attachment_id}")
        raw = base64.urlsafe_b64decode(data.get("data", "") + "==")
        file_name = candidate.file_name or "attachment"
        mime_type = candidate.mime_type or ""
        extracted = self.extractor(raw, file_name, mime_type) if self.extractor else {}
        return Document.from_dict({
            **(extracted or {}),
            "id": f"doc_{uuid.uuid4().hex[:12]}",
            "user_id": user_id,
            "file_name": file_name,
            "mime_type": mime_type,
        })


# ---- 検索戦略 ----

def search_partner_files(tx: Transaction, documents: Sequence[Document], partner: Optional[Partner], threshold: int) -> List[SearchCandidate]:
    if not tx.partner_id:
        return []
    patterns = partner.file_source_patterns if partner else []
    out = []
    for doc in documents:
        if doc.partner_id != tx.partner_id or not doc.is_scoring_candidate or doc.id in tx.rejected_document_ids:
            continue
        score, reasons = score_document(doc, tx, patterns)
        if score >= threshold:
            out.append(_local_candidate(doc, score, reasons))
    return sorted(out, key=lambda c: c.score, reverse=True)


def search_amount_files(tx: Transaction, documents: Sequence[Document], threshold: int, window_days: int = 30) -> List[SearchCandidate]:
    out = []
    for doc in documents:
        if not doc.is_scoring_candidate or doc.id in tx.rejected_document_ids:
            continue
        if doc.extracted_date is None or abs((doc.extracted_date - tx.date).days) > window_days:
            continue
        if amount_score(doc.extracted_amount, tx.amount)[0] == 0:
            continue
        score, reasons = score_document(doc, tx)
        if score >= threshold:
            out.append(_local_candidate(doc, score, reasons))
    return sorted(out, key=lambda c: c.score, reverse=True)


def search_local_files(tx: Transaction, documents: Sequence[Document], query: str) -> List[SearchCandidate]:
    """ファイル名の glob 検索（エージェント検索用）"""
    out = []
    for doc in documents:
        if not doc.is_scoring_candidate or doc.id in tx.rejected_document_ids:
            continue
        if glob_match(query, doc.file_name) or glob_match(query, doc.extracted_partner_name):
            score, reasons = score_document(doc, tx)
            out.append(_local_candidate(doc, score, reasons))
    return sorted(out, key=lambda c: c.score, reverse=True)


def _local_candidate(doc: Document, score: int, reasons: List[str]) -> SearchCandidate:
    return SearchCandidate(
        id=doc.id,
        source_type="local_file",
        score=score,
        score_reasons=reasons,
        document_id=doc.id,
        file_name=doc.file_name,
    )


def _window(tx: Transaction, days: int = 30):
    return tx.date - timedelta(days=days), tx.date + timedelta(days=days)


def search_email_attachments(
    tx: Transaction,
    provider: EmailSearchProvider,
    partner: Optional[Partner] = None,
    queries: Optional[Sequence[str]] = None,
) -> List[SearchCandidate]:
    after, before = _window(tx)
    found: Dict[str, SearchCandidate] = {}
    for query in queries or build_search_queries(tx, partner):
        for message in provider.search_messages(query, after=after, before=before):
            classification = classify_email(message.subject, message.snippet, message.attachments)
            if classification.possible_mail_invoice and not message.attachments:
                continue
            for att in message.attachments:
                cand = score_attachment(att, message, tx, partner)
                if cand.id not in found or found[cand.id].score < cand.score:
                    found[cand.id] = cand
    return sorted(found.values(), key=lambda c: c.score, reverse=True)


def search_email_invoices(
    tx: Transaction,
    provider: EmailSearchProvider,
    partner: Optional[Partner] = None,
    queries: Optional[Sequence[str]] = None,
) -> List[SearchCandidate]:
    """添付のない請求書メールから請求書リンクを探す"""
    after, before = _window(tx)
    found: Dict[str, SearchCandidate] = {}
    for query in queries or build_search_queries(tx, partner):
        for message in provider.search_messages(query, after=after, before=before):
            c = classify_email(message.subject, message.snippet, message.attachments)
            if c.has_pdf_attachment or not (c.possible_mail_invoice or c.possible_invoice_link):
                continue
            for link in extract_invoice_links(message, tx.id):
                found.setdefault(link.url, SearchCandidate(
                    id=f"{message.message_id}:{link.url}",
                    source_type="gmail_email",
                    score=c.confidence,
                    score_reasons=list(c.matched_keywords),
                    message_id=message.message_id,
                    integration_id=message.integration_id,
                    email_subject=message.subject,
                    email_from=message.sender,
                    invoice_url=link.url,
                ))
    return list(found.values())


# ---- 精密検索 ----

class PrecisionSearch:
    """取引1件に対して戦略を順に試し、書類が接続できた時点で止める"""

    def __init__(self, store, email_provider: Optional[EmailSearchProvider] = None, config: Optional[MatchingConfig] = None):
        self.store = store
        self.email_provider = email_provider
        self.config = config or MatchingConfig()

    def run(
        self,
        user_id: str,
        transaction_id: str,
        strategies: Sequence[str] = DEFAULT_STRATEGIES,
        triggered_by: str = "manual",
        automation_source: Optional[str] = None,
    ) -> SearchEntry:
        unknown = [s for s in strategies if s not in DEFAULT_STRATEGIES]
        if unknown:
            raise ValidationError(f"unknown search strategies: {unknown}")
        tx = self.store.get_transaction(user_id, transaction_id)
        partner = self.store.get_partner(user_id, tx.partner_id) if tx.partner_id else None
        entry = SearchEntry(
            id=f"search_{uuid.uuid4().hex[:12]}",
            transaction_id=tx.id,
            user_id=user_id,
            triggered_by=triggered_by,
            automation_source=automation_source,
        )
        self.store.save_search_entry(entry)

        for strategy in strategies:
            attempt = self._run_strategy(strategy, tx, partner, user_id)
            entry.strategies_attempted.append(strategy)
            entry.attempts.append(attempt)
            entry.total_external_calls += attempt.external_calls
            entry.total_files_connected += len(attempt.document_ids_connected)
            if attempt.document_ids_connected:
                tx = self.store.get_transaction(user_id, transaction_id)
                break

        entry.status = "completed"
        entry.completed_at = utc_now_iso()
        self.store.save_search_entry(entry)
        logger.info("精密検索完了: %s (%d 件接続)", transaction_id, entry.total_files_connected)
        return entry

    def _run_strategy(self, strategy: str, tx: Transaction, partner: Optional[Partner], user_id: str) -> SearchAttempt:
        attempt = SearchAttempt(strategy=strategy)
        threshold = self.config.document.auto_match_threshold
        try:
            if strategy == "partner_files":
                docs = self.store.list_documents(user_id)
                candidates = search_partner_files(tx, docs, partner, self.config.document.suggestion_threshold)
                attempt.search_params = {"partner_id": tx.partner_id}
                self._connect_local(tx, candidates, threshold, attempt, user_id)
            elif strategy == "amount_files":
                docs = self.store.list_documents(user_id)
                candidates = search_amount_files(tx, docs, self.config.document.suggestion_threshold)
                attempt.search_params = {"amount": tx.amount}
                self._connect_local(tx, candidates, threshold, attempt, user_id)
            elif strategy == "email_attachment":
                if self.email_provider is None:
                    candidates = []
                else:
                    queries = build_search_queries(tx, partner)
                    attempt.search_params = {"queries": queries}
                    attempt.external_calls += len(queries)
                    candidates = search_email_attachments(tx, self.email_provider, partner, queries)
                    self._connect_attachments(tx, candidates, threshold, attempt, user_id)
            elif strategy == "email_invoice":
                if self.email_provider is None:
                    candidates = []
                else:
                    queries = build_search_queries(tx, partner)
                    attempt.search_params = {"queries": queries}
                    attempt.external_calls += len(queries)
                    candidates = search_email_invoices(tx, self.email_provider, partner, queries)
                    attempt.invoice_links_found = [c.invoice_url for c in candidates if c.invoice_url]
            attempt.candidates_found = len(candidates)
        except ExternalServiceError as e:
            logger.warning("検索戦略 %s が失敗（空結果として継続）: %s", strategy, e)
            attempt.error = str(e)
        attempt.completed_at = utc_now_iso()
        return attempt

    def _connect_local(self, tx: Transaction, candidates: Sequence[SearchCandidate], threshold: int, attempt: SearchAttempt, user_id: str):
        attempt.candidates_evaluated = len(candidates)
        best = next((c for c in candidates if c.score >= threshold), None)
        if best is None:
            return
        attempt.matches_found = 1
        try:
            self.store.connect(user_id, best.document_id, tx.id, "auto_matched", best.score, best.score_reasons)
        except DuplicateConnectionError:
            return
        attempt.document_ids_connected.append(best.document_id)

    def _connect_attachments(self, tx: Transaction, candidates: Sequence[SearchCandidate], threshold: int, attempt: SearchAttempt, user_id: str):
        attempt.candidates_evaluated = len(candidates)
        best = next((c for c in candidates if c.score >= threshold), None)
        if best is None:
            return
        attempt.matches_found = 1
        doc = self.email_provider.fetch_candidate_document(user_id, best)
        attempt.external_calls += 1
        self.store.save(doc)
        self.store.connect(user_id, doc.id, tx.id, "auto_matched", best.score, best.score_reasons)
        attempt.document_ids_connected.append(doc.id)
