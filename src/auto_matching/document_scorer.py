from datetime import date
from typing import List, Optional, Sequence, Tuple

from .models import Document, FileSourcePattern, Transaction
from .pattern_utils import glob_match


# (相対差の上限, 点数, 理由)
AMOUNT_BANDS = (
    (0.0, 40, "Exact amount"),
    (0.01, 38, "Amount ±1%"),
    (0.05, 30, "Amount ±5%"),
    (0.10, 20, "Amount ±10%"),
)

# (日数差の上限, 点数, 理由)
DATE_BANDS = (
    (0, 25, "Same day"),
    (3, 22, "Within 3 days"),
    (7, 15, "Within 7 days"),
    (14, 8, "Within 14 days"),
    (30, 3, "Within 30 days"),
)

PARTNER_POINTS = 20
SOURCE_PATTERN_POINTS = 10
LIKELY_RECEIPT_POINTS = 5


def amount_score(doc_amount: Optional[int], tx_amount: int) -> Tuple[int, Optional[str]]:
    if doc_amount is None:
        return 0, None
    a, b = abs(doc_amount), abs(tx_amount)
    if a == b:
        return AMOUNT_BANDS[0][1], AMOUNT_BANDS[0][2]
    if b == 0:
        return 0, None
    rel = abs(a - b) / b
    for limit, points, reason in AMOUNT_BANDS[1:]:
        if rel <= limit:
            return points, reason
    return 0, None


def date_score(doc_date: Optional[date], tx_date: date) -> Tuple[int, Optional[str]]:
    if doc_date is None or tx_date is None:
        return 0, None
    days = abs((doc_date - tx_date).days)
    for limit, points, reason in DATE_BANDS:
        if days <= limit:
            return points, reason
    return 0, None


def is_likely_receipt(mime_type: Optional[str]) -> bool:
    mime = (mime_type or "").lower()
    return mime == "application/pdf" or mime.startswith("image/")


def score_document(
    doc: Document,
    tx: Transaction,
    partner_patterns: Sequence[FileSourcePattern] = (),
) -> Tuple[int, List[str]]:
    """書類と取引の適合度（0..100）と内訳の理由を返す

    各バンドは独立に上限を持ち、合計は正規化しない。
    """
    reasons: List[str] = []
    total = 0

    for points, reason in (amount_score(doc.extracted_amount, tx.amount), date_score(doc.extracted_date, tx.date)):
        if points:
            total += points
            reasons.append(reason)

    if doc.partner_id and doc.partner_id == tx.partner_id:
        total += PARTNER_POINTS
        reasons.append("Same partner")

    if doc.file_name and any(
        p.source_type == "local" and glob_match(p.pattern, doc.file_name) for p in partner_patterns
    ):
        total += SOURCE_PATTERN_POINTS
        reasons.append("Matches source pattern")

    if is_likely_receipt(doc.mime_type):
        total += LIKELY_RECEIPT_POINTS
        reasons.append("Likely receipt")

    return max(0, min(100, total)), reasons
