"""
パターン照合と正規化のユーティリティ

学習済みパターンは glob 形式（`*` は任意の文字列）。同じパターンが多数の取引に
繰り返し照合されるため、正規表現へのコンパイル結果はキャッシュする。
"""

import re
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence
from urllib.parse import urlsplit

from rapidfuzz.distance import Levenshtein


_UMLAUTS = {"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"}

# 会社名の法人格表記（比較時は除去）
_LEGAL_SUFFIXES = (
    "gmbh & co. kg", "gmbh & co kg", "gmbh", "mbh", "ag", "kg", "ohg", "ug",
    "e.k.", "e.v.", "se", "ltd", "limited", "inc", "llc", "corp", "co",
    "plc", "sarl", "s.a.r.l.", "sa", "bv", "b.v.", "srl", "s.r.l.", "oy", "ab",
)

# 銀行明細によく出るが取引先の識別には役立たない語
_STOPWORDS = {
    "sepa", "lastschrift", "gutschrift", "ueberweisung", "dauerauftrag",
    "kartenzahlung", "karte", "einzug", "basislastschrift", "folgelastschrift",
    "payment", "purchase", "card", "debit", "credit", "transfer", "direct",
    "end", "ref", "mandat", "mandate", "glaeubiger", "kundennr", "rechnung",
    "invoice", "vom", "und", "the", "for", "bei", "fuer", "online", "visa",
    "mastercard", "www", "com", "http", "https",
}


def normalize_umlauts(text: str) -> str:
    if not text:
        return ""
    s = text.lower()
    for src, dst in _UMLAUTS.items():
        s = s.replace(src, dst)
    return s


@lru_cache(maxsize=2048)
def compile_glob(pattern: str) -> "re.Pattern[str]":
    """glob を先頭・末尾アンカー付きの正規表現へ変換（大文字小文字を区別しない）"""
    parts = normalize_umlauts(pattern).split("*")
    body = ".*".join(re.escape(p) for p in parts)
    return re.compile(f"^{body}$", re.IGNORECASE | re.DOTALL)


def glob_match(pattern: str, text: Optional[str]) -> bool:
    if not pattern or not text:
        return False
    return compile_glob(pattern).match(normalize_umlauts(text)) is not None


def _field_combinations(fields: Sequence[Optional[str]]) -> List[str]:
    present = [f.strip() for f in fields if f and f.strip()]
    texts: List[str] = list(present)
    if len(present) >= 2:
        texts.append(" ".join(present))
        texts.append(" ".join(reversed(present)))
        for i, a in enumerate(present):
            for j, b in enumerate(present):
                if i != j:
                    texts.append(f"{a} {b}")
    # 重複除去（順序維持）
    seen = set()
    out = []
    for t in texts:
        if t not in seen:
            seen.add(t)
            out.append(t)
    return out


def match_pattern_flexible(
    pattern: str,
    fields: Sequence[Optional[str]],
    exclude: Iterable[str] = (),
) -> bool:
    """個々のフィールドとその組み合わせのいずれかに glob が一致するか判定

    exclude の glob がどれかのテキストに一致した場合は不一致とする。
    """
    texts = _field_combinations(fields)
    if not texts or not pattern:
        return False
    if not any(glob_match(pattern, t) for t in texts):
        return False
    for ex in exclude or ():
        if any(glob_match(ex, t) for t in texts):
            return False
    return True


def normalize_iban(iban: Optional[str]) -> str:
    if not iban:
        return ""
    return re.sub(r"\s+", "", iban).upper()


def normalize_vat_id(vat_id: Optional[str]) -> str:
    if not vat_id:
        return ""
    return re.sub(r"[\s.\-]+", "", vat_id).upper()


def normalize_url(url: Optional[str]) -> str:
    """スキーム・www.・末尾スラッシュ・クエリ・フラグメントを除いたドメイン部分"""
    if not url:
        return ""
    s = url.strip().lower()
    if "://" not in s:
        s = "http://" + s
    parts = urlsplit(s)
    host = parts.netloc
    if host.startswith("www."):
        host = host[4:]
    path = parts.path.rstrip("/")
    return f"{host}{path}"


def normalize_company_name(name: Optional[str]) -> str:
    if not name:
        return ""
    s = normalize_umlauts(name)
    s = re.sub(r"[\"'`´,;:()\[\]]", " ", s)
    s = re.sub(r"\s+", " ", s).strip()
    changed = True
    while changed:
        changed = False
        for suffix in _LEGAL_SUFFIXES:
            if s.endswith(" " + suffix):
                s = s[: -len(suffix) - 1].rstrip(" .,&-")
                changed = True
    s = re.sub(r"[^a-z0-9& ]", " ", s)
    return re.sub(r"\s+", " ", s).strip()


def name_similarity(a: Optional[str], b: Optional[str]) -> int:
    """会社名の類似度（0..100）

    完全一致は100、片方がもう片方に含まれる場合は 75 + 被覆率×25、
    それ以外は正規化レーベンシュタイン距離。
    """
    na = normalize_company_name(a)
    nb = normalize_company_name(b)
    if not na or not nb:
        return 0
    if na == nb:
        return 100
    shorter, longer = (na, nb) if len(na) <= len(nb) else (nb, na)
    if len(shorter) >= 3 and re.search(rf"(^|\s){re.escape(shorter)}($|\s)", longer):
        coverage = len(shorter) / len(longer)
        return int(round(75 + coverage * 25))
    return int(round(Levenshtein.normalized_similarity(na, nb) * 100))


def tokenize(text: Optional[str]) -> List[str]:
    s = normalize_umlauts(text or "")
    s = re.sub(r"\d+", " ", s)
    return [t for t in re.split(r"[^a-z&]+", s) if t]


def derive_pattern_from_text(text: Optional[str], max_tokens: int = 3) -> Optional[str]:
    """取引テキストから学習用 glob を作る（例: "*amazon*marketplace*"）

    日付・数字・定型語を除いた上位トークンを `*` で連結する。
    使えるトークンがなければ None。
    """
    tokens = []
    for tok in tokenize(text):
        if len(tok) < 3 or tok in _STOPWORDS or tok in tokens:
            continue
        tokens.append(tok)
        if len(tokens) >= max_tokens:
            break
    if not tokens:
        return None
    return "*" + "*".join(tokens) + "*"


def derive_filename_pattern(file_name: Optional[str]) -> Optional[str]:
    """ファイル名の数字部分をワイルドカード化した glob（例: "invoice_*.pdf"）"""
    if not file_name:
        return None
    s = normalize_umlauts(file_name.strip())
    s = re.sub(r"\d+", "*", s)
    # "*-*-*" のような連続を1つにまとめる
    s = re.sub(r"\*(?:[\s._\-]*\*)+", "*", s)
    if not s.strip("*. _-"):
        return None
    return s
