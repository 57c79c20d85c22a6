from __future__ import annotations

import json
import math
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from spend_intake.core.currencies import currency_for_symbol, normalize_currency
from spend_intake.modules.extraction.errors import (
    BackendMalformedResponse,
    BackendRateLimited,
    BackendRejected,
    BackendTimeout,
    BackendUnavailable,
)
from spend_intake.modules.extraction.schemas import (
    BackendReply,
    ExtractionCandidate,
    Provenance,
)
from spend_intake.modules.extraction.templates import PromptTemplate

_CANDIDATE_KEYS: frozenset[str] = frozenset(
    {"date", "transaction_date", "amount", "total", "currency", "vendor", "merchant", "category"}
)

_SYMBOL_RE = re.compile(r"(US\$|CA\$|C\$|A\$|AU\$|NZ\$|S\$|HK\$|R\$|\$|€|£|¥|₹|₩|₱|฿)")


class HttpExtractionBackend:
    """OpenAI-compatible chat completions endpoint in JSON mode."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        max_chars: int = 12000,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_chars = max_chars
        self.backend_id = f"openai:{model}"
        self._client = client or httpx.Client(follow_redirects=True)

    def close(self) -> None:
        self._client.close()

    def complete(
        self,
        redacted_text: str,
        template: PromptTemplate,
        *,
        timeout: float,
        strict: bool = False,
    ) -> BackendReply:
        if not self.api_key:
            raise BackendRejected("extraction backend has no API key configured")

        system, user = template.render(
            _truncate_text(redacted_text, max_chars=self.max_chars), strict=strict
        )
        payload = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            resp = self._client.post(
                self.base_url + "/chat/completions",
                headers=headers,
                json=payload,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise BackendTimeout(f"backend timed out after {timeout}s") from e
        except httpx.TransportError as e:
            raise BackendUnavailable(f"transport error: {e}") from e

        if resp.status_code == 429:
            raise BackendRateLimited(
                "backend rate limited", retry_after=_retry_after_seconds(resp)
            )
        if resp.status_code >= 500:
            raise BackendUnavailable(f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise BackendRejected(f"HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            raw = resp.json()
            msg = raw["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise BackendMalformedResponse(
                "unexpected completion envelope", preview=resp.text[:200]
            ) from e
        if not isinstance(msg, dict):
            raise BackendMalformedResponse("unexpected completion envelope")
        if msg.get("refusal"):
            raise BackendMalformedResponse("model refused", preview=str(msg["refusal"])[:200])

        return BackendReply(
            payload=msg.get("content"),
            backend_id=self.backend_id,
            meta={"model": raw.get("model") if isinstance(raw, dict) else None},
        )


def parse_candidate(payload: Any, *, provenance: Provenance) -> ExtractionCandidate:
    """
    Resolve a backend payload into a candidate, or raise BackendMalformedResponse.

    Accepts flat and nested ({"value": ..., "confidence": ...}) field shapes, JSON wrapped
    in prose or code fences, and amounts given as numbers or display strings.
    """
    if isinstance(payload, dict):
        obj: Any = payload
    elif isinstance(payload, (str, bytes)):
        text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        obj = _parse_json_object(text)
    else:
        obj = None

    if not isinstance(obj, dict):
        raise BackendMalformedResponse(
            "response is not a JSON object", preview=_preview(payload)
        )
    if not _CANDIDATE_KEYS.intersection(obj):
        raise BackendMalformedResponse(
            "response has no candidate fields", preview=_preview(payload)
        )

    field_confidences: list[float] = []

    def _value(*names: str) -> Any:
        for name in names:
            if name not in obj:
                continue
            raw = obj[name]
            if isinstance(raw, dict):
                if "confidence" in raw:
                    field_confidences.append(_confidence(raw.get("confidence")))
                return raw.get("value")
            return raw
        return None

    amount_raw: Any
    currency_raw: Any
    total = obj.get("total")
    if isinstance(total, dict):
        amount_raw = total.get("amount", total.get("value"))
        currency_raw = total.get("currency")
        if "confidence" in total:
            field_confidences.append(_confidence(total.get("confidence")))
    else:
        amount_raw = _value("amount", "total")
        currency_raw = None
    if currency_raw is None:
        currency_raw = _value("currency")

    amount = _coerce_amount(amount_raw)
    currency = normalize_currency(currency_raw) if isinstance(currency_raw, str) else None
    if currency is None and isinstance(amount_raw, str):
        m = _SYMBOL_RE.search(amount_raw)
        if m:
            currency = currency_for_symbol(m.group(1))

    vendor = _clean_str(_value("vendor", "merchant"), max_len=200)
    category = _clean_str(_value("category"), max_len=100)
    tx_date = _coerce_date(_value("date", "transaction_date"))

    if "confidence" in obj:
        confidence = _confidence(obj.get("confidence"))
    elif field_confidences:
        confidence = min(field_confidences)
    else:
        confidence = 0.0

    return ExtractionCandidate(
        date=tx_date,
        amount=amount,
        currency=currency,
        vendor=vendor,
        category=category,
        confidence=confidence,
        provenance=provenance,
    )


def parse_decimal_amount(raw: str) -> Decimal | None:
    """Parse a display amount ("$1,234.50", "1.234,50", "(5.00)", "-5") keeping its sign."""
    s = str(raw or "").strip()
    if not s:
        return None
    s = s.replace("\u202f", " ").replace("\xa0", " ")
    negative = (
        bool(re.match(r"^[^0-9]*-\s*[0-9]", s))
        or s.endswith("-")
        or (s.startswith("(") and s.endswith(")"))
    )
    s = re.sub(r"[^0-9,.' ]", "", s)
    s = s.replace(" ", "").replace("'", "")
    if not s or not any(ch.isdigit() for ch in s):
        return None

    if "," in s and "." in s:
        decimal_sep = "," if s.rfind(",") > s.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        normalized = s.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif "," in s:
        if s.count(",") > 1:
            normalized = s.replace(",", "")
        else:
            idx = s.rfind(",")
            digits_after = len(s) - idx - 1
            if digits_after == 3 and len(s[:idx]) <= 3:
                normalized = s.replace(",", "")
            else:
                normalized = s.replace(",", ".")
    elif "." in s and s.count(".") > 1:
        normalized = s.replace(".", "")
    else:
        normalized = s

    try:
        value = Decimal(normalized)
    except InvalidOperation:
        return None
    return -value if negative else value


def _coerce_amount(raw: Any) -> Decimal | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return Decimal(raw)
    if isinstance(raw, float):
        if math.isnan(raw) or math.isinf(raw):
            return None
        return Decimal(str(raw))
    if isinstance(raw, str):
        return parse_decimal_amount(raw)
    return None


def _coerce_date(raw: Any) -> date | None:
    if not isinstance(raw, str):
        return None
    s = raw.strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d", "%d %b %Y", "%d %B %Y", "%b %d, %Y", "%B %d, %Y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def _clean_str(raw: Any, *, max_len: int) -> str | None:
    if not isinstance(raw, str):
        return None
    s = raw.strip()
    return s[:max_len] or None


def _confidence(raw: Any) -> float:
    try:
        conf = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(conf) or conf < 0.0:
        return 0.0
    if conf > 1.0:
        return 1.0
    return conf


def _retry_after_seconds(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _truncate_text(text: str, *, max_chars: int) -> str:
    t = (text or "").replace("\u202f", " ").replace("\xa0", " ").strip()
    if not t:
        return ""
    if max_chars <= 0:
        return t
    if len(t) <= max_chars:
        return t
    return t[: max_chars - 20].rstrip() + "\n\n[TRUNCATED]"


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Fallback: extract the first {...} block.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except ValueError:
        return None


def _preview(payload: Any) -> str:
    return str(payload)[:200]
