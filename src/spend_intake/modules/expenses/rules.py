from __future__ import annotations

import re
from datetime import date, datetime

from spend_intake.core.currencies import currency_for_symbol, normalize_currency
from spend_intake.modules.extraction.ai import parse_decimal_amount
from spend_intake.modules.extraction.schemas import ExtractionCandidate, Provenance

RULES_BACKEND_ID = "rules"

_SYMBOLS = r"US\$|CA\$|C\$|A\$|AU\$|NZ\$|S\$|HK\$|R\$|\$|€|£|¥|₹|₩|₱|฿"
_NUMBER = r"-?[0-9][0-9,.']*[0-9]|-?[0-9]"

_LABELLED_AMOUNT_RE = re.compile(
    r"(?i)\b(?:grand\s+total|total\s+paid|amount\s+paid|total|amount|charged|paid)\b"
    r"\s*[:=]?\s*(?:(?P<sym>" + _SYMBOLS + r")|(?P<pre>[A-Z]{3})\b)?\s*(?P<num>" + _NUMBER + r")"
    r"\s*(?P<code>[A-Z]{3})?\b"
)
_SYMBOL_AMOUNT_RE = re.compile(
    r"(?P<sym>" + _SYMBOLS + r")\s*(?P<num>" + _NUMBER + r")"
)
_CODE_AMOUNT_RE = re.compile(
    r"\b(?P<code>[A-Z]{3})\s*(?P<num>" + _NUMBER + r")|(?P<num2>" + _NUMBER + r")\s*(?P<code2>[A-Z]{3})\b"
)

_ISO_DATE_RE = re.compile(r"\b([0-9]{4})-([0-9]{1,2})-([0-9]{1,2})\b")
_NUMERIC_DATE_RE = re.compile(r"\b([0-9]{1,2})/([0-9]{1,2})/([0-9]{4}|[0-9]{2})\b")
_TEXT_DATE_RE = re.compile(
    r"(?i)\b([0-9]{1,2}\s+[A-Za-z]{3,9},?\s+[0-9]{4}|[A-Za-z]{3,9}\s+[0-9]{1,2},?\s+[0-9]{4})\b"
)

_VENDOR_LABEL_RE = re.compile(r"(?im)^\s*(?:merchant|vendor|store|from)\s*:\s*(.+)$")
_HEADER_RE = re.compile(r"(?i)^\s*(?:subject|to|cc|date|sent|received)\s*:")
_VENDOR_STOP_RE = re.compile(r"(" + _SYMBOLS + r"|[0-9<])")


def extract_with_rules(text: str, *, provenance: Provenance) -> ExtractionCandidate | None:
    """
    Recover a zero-confidence candidate from redacted text without the backend.

    Used for the best-effort draft kept on dead-letter entries. Returns None when
    no amount can be found.
    """
    amount, currency = _find_amount(text or "")
    if amount is None:
        return None

    return ExtractionCandidate(
        date=_find_date(text),
        amount=amount,
        currency=currency,
        vendor=_find_vendor(text),
        category=None,
        confidence=0.0,
        provenance=provenance.model_copy(update={"backend_id": RULES_BACKEND_ID}),
    )


def _find_amount(text: str):
    for pattern in (_LABELLED_AMOUNT_RE, _SYMBOL_AMOUNT_RE):
        m = pattern.search(text)
        if not m:
            continue
        amount = parse_decimal_amount(m.group("num"))
        if amount is None:
            continue
        currency = None
        groups = m.groupdict()
        for key in ("code", "pre"):
            if currency is None and groups.get(key):
                currency = normalize_currency(groups[key])
        if currency is None and groups.get("sym"):
            currency = currency_for_symbol(groups["sym"])
        return amount, currency

    for m in _CODE_AMOUNT_RE.finditer(text):
        code = m.group("code") or m.group("code2")
        currency = normalize_currency(code)
        if currency is None:
            continue
        amount = parse_decimal_amount(m.group("num") or m.group("num2"))
        if amount is not None:
            return amount, currency
    return None, None


def _find_date(text: str) -> date | None:
    m = _ISO_DATE_RE.search(text)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            pass

    m = _NUMERIC_DATE_RE.search(text)
    if m:
        month, day, year = (int(g) for g in m.groups())
        if year < 100:
            year += 2000
        # Month-first unless that is impossible.
        for mm, dd in ((month, day), (day, month)):
            try:
                return date(year, mm, dd)
            except ValueError:
                continue

    m = _TEXT_DATE_RE.search(text)
    if m:
        s = re.sub(r"\s+", " ", m.group(1).replace(",", ""))
        for fmt in ("%d %b %Y", "%d %B %Y", "%b %d %Y", "%B %d %Y"):
            try:
                return datetime.strptime(s, fmt).date()
            except ValueError:
                continue
    return None


def _find_vendor(text: str) -> str | None:
    m = _VENDOR_LABEL_RE.search(text)
    if m:
        return _trim_vendor(m.group(1))

    for line in text.splitlines():
        if not line.strip() or _HEADER_RE.match(line):
            continue
        vendor = _trim_vendor(line)
        if vendor:
            return vendor
    return None


def _trim_vendor(raw: str) -> str | None:
    m = _VENDOR_STOP_RE.search(raw)
    head = raw[: m.start()] if m else raw
    head = re.sub(r"(?i)\b(?:total|amount|paid|receipt)\b.*$", "", head)
    head = head.strip(" \t-:|,")
    if not head or not re.search(r"[A-Za-z]", head):
        return None
    return head[:200]
