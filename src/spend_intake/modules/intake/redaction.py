"""
Sensitive-token redaction applied before message text leaves the trust boundary.

Every rule maps a match to a fixed placeholder, so the same input always produces
the same output and fingerprints stay stable across redeliveries.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

CARD = "<CARD>"
IBAN = "<IBAN>"
SSN = "<SSN>"
ACCOUNT = "<ACCOUNT>"
EMAIL = "<EMAIL>"
PHONE = "<PHONE>"


@dataclass(frozen=True)
class _Rule:
    label: str
    pattern: re.Pattern[str]
    replace: Callable[[re.Match[str]], str | None]


def _luhn_ok(digits: str) -> bool:
    total = 0
    for idx, ch in enumerate(reversed(digits)):
        n = int(ch)
        if idx % 2 == 1:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return total % 10 == 0


def _replace_card(m: re.Match[str]) -> str | None:
    digits = re.sub(r"\D", "", m.group(0))
    if not 13 <= len(digits) <= 19:
        return None
    if not _luhn_ok(digits):
        return None
    return CARD


def _replace_keyed_account(m: re.Match[str]) -> str | None:
    return f"{m.group(1)}{m.group(2)}{ACCOUNT}"


def _fixed(token: str) -> Callable[[re.Match[str]], str | None]:
    return lambda _m: token


_RULES: tuple[_Rule, ...] = (
    _Rule("card", re.compile(r"(?<![\d-])\d(?:[ -]?\d){12,18}(?![\d])"), _replace_card),
    _Rule(
        "iban",
        re.compile(r"\b[A-Z]{2}\d{2}(?: ?[A-Z0-9]{4}){2,7}(?: ?[A-Z0-9]{1,3})?\b"),
        _fixed(IBAN),
    ),
    _Rule("ssn", re.compile(r"(?<!\d)\d{3}-\d{2}-\d{4}(?!\d)"), _fixed(SSN)),
    _Rule(
        "account",
        re.compile(
            r"(?i)\b(acct|account|a/c)(\.?\s*(?:no\.?|number|#)?\s*[:#]?\s*)(\d[\d -]{4,20}\d)"
        ),
        _replace_keyed_account,
    ),
    _Rule("account", re.compile(r"(?<![\d.,])\d{10,19}(?![\d])"), _fixed(ACCOUNT)),
    _Rule(
        "email",
        re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
        _fixed(EMAIL),
    ),
    _Rule(
        "phone",
        re.compile(
            r"(?<![\w+])\+\d{1,3}[ .-]?(?:\(\d{1,4}\)[ .-]?)?\d{2,4}(?:[ .-]?\d{2,4}){1,3}(?!\d)"
        ),
        _fixed(PHONE),
    ),
    _Rule(
        "phone",
        re.compile(r"(?<![\d/])(?:\(\d{3}\) ?|\d{3}[-.])\d{3}[-.]\d{4}(?!\d)"),
        _fixed(PHONE),
    ),
)


def redact_with_counts(text: str) -> tuple[str, dict[str, int]]:
    counts: dict[str, int] = {}
    out = text or ""
    for rule in _RULES:

        def _sub(m: re.Match[str], rule: _Rule = rule) -> str:
            replacement = rule.replace(m)
            if replacement is None:
                return m.group(0)
            counts[rule.label] = counts.get(rule.label, 0) + 1
            return replacement

        out = rule.pattern.sub(_sub, out)
    return out, counts


def redact(text: str) -> str:
    return redact_with_counts(text)[0]


def redaction_counts(text: str) -> dict[str, int]:
    return redact_with_counts(text)[1]
