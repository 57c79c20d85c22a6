from __future__ import annotations

import hashlib
from collections.abc import Iterable

from spend_intake.modules.intake.schemas import AttachmentRef, RawMessage

# ASCII unit separator; cannot appear in template ids or hex digests.
_SEP = "\x1f"

CHANNEL_TEMPLATES: dict[str, str] = {
    "email": "receipt_email.v1",
    "sms": "receipt_sms.v1",
}


def attachment_digest(attachments: Iterable[AttachmentRef]) -> str:
    digests = sorted(a.sha256.lower() for a in attachments)
    if not digests:
        return ""
    return hashlib.sha256("\n".join(digests).encode("ascii")).hexdigest()


def compute_fingerprint(redacted_text: str, template_id: str, attachment_digest: str) -> str:
    payload = _SEP.join((redacted_text, template_id, attachment_digest))
    return hashlib.sha256(payload.encode("utf-8", errors="surrogatepass")).hexdigest()


def template_for_channel(source_channel: str, *, default: str) -> str:
    return CHANNEL_TEMPLATES.get((source_channel or "").strip().lower(), default)


def fingerprint_message(message: RawMessage, *, redacted_text: str, template_id: str) -> str:
    return compute_fingerprint(
        redacted_text, template_id, attachment_digest(message.attachments)
    )
