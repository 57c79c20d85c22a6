from __future__ import annotations

import pytest
from pydantic import ValidationError

from spend_intake.modules.intake.fingerprint import (
    attachment_digest,
    compute_fingerprint,
    fingerprint_message,
    template_for_channel,
)
from spend_intake.modules.intake.redaction import redact
from spend_intake.modules.intake.schemas import AttachmentIn, AttachmentRef


def _att(name: str, digest_char: str) -> AttachmentRef:
    return AttachmentRef(filename=name, sha256=digest_char * 64)


def test_fingerprint_is_stable_hex_sha256():
    fp = compute_fingerprint("Cafe ABC $42.50", "receipt_email.v1", "")
    assert fp == compute_fingerprint("Cafe ABC $42.50", "receipt_email.v1", "")
    assert len(fp) == 64
    assert all(c in "0123456789abcdef" for c in fp)


def test_fingerprint_depends_on_every_input():
    base = compute_fingerprint("text", "receipt_email.v1", "")
    assert base != compute_fingerprint("text!", "receipt_email.v1", "")
    assert base != compute_fingerprint("text", "receipt_sms.v1", "")
    assert base != compute_fingerprint("text", "receipt_email.v1", "a" * 64)


def test_field_boundaries_do_not_collide():
    assert compute_fingerprint("ab", "c", "") != compute_fingerprint("a", "bc", "")


def test_attachment_digest_ignores_order():
    a, b = _att("a.pdf", "a"), _att("b.png", "b")
    assert attachment_digest([a, b]) == attachment_digest([b, a])
    assert attachment_digest([]) == ""
    assert attachment_digest([a]) != attachment_digest([a, b])


def test_messages_differing_only_in_redacted_data_share_a_fingerprint(make_inbound):
    m1 = make_inbound("Paid 4111 1111 1111 1111 total $5.00").message
    m2 = make_inbound("Paid 5555 5555 5555 4444 total $5.00", message_id="msg-2").message

    fp1 = fingerprint_message(m1, redacted_text=redact(m1.body_text), template_id="t")
    fp2 = fingerprint_message(m2, redacted_text=redact(m2.body_text), template_id="t")
    assert fp1 == fp2


def test_template_for_channel():
    assert template_for_channel("email", default="x") == "receipt_email.v1"
    assert template_for_channel("SMS", default="x") == "receipt_sms.v1"
    assert template_for_channel("whatsapp", default="x") == "x"


@pytest.mark.parametrize("digest", ["é" * 64, "g" * 64, "a" * 63, "a" * 65])
def test_attachment_digest_must_be_hex_sha256(digest):
    with pytest.raises(ValidationError):
        AttachmentRef(filename="r.pdf", sha256=digest)
    with pytest.raises(ValidationError):
        AttachmentIn(filename="r.pdf", sha256=digest)


def test_client_digest_is_lowercased():
    ref = AttachmentIn(filename="r.pdf", sha256="AB" * 32).to_ref()
    assert ref.sha256 == "ab" * 32
