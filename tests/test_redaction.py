from __future__ import annotations

from spend_intake.modules.intake.redaction import redact, redaction_counts


def test_receipt_text_without_sensitive_data_passes_through():
    text = "Cafe ABC $42.50 9/1/2025"
    assert redact(text) == text
    assert redaction_counts(text) == {}


def test_card_numbers_are_redacted_only_when_luhn_valid():
    assert redact("Paid with 4111 1111 1111 1111 today") == "Paid with <CARD> today"
    assert redact("Card 4111-1111-1111-1111") == "Card <CARD>"

    not_a_card = "Ref 4111 1111 1111 1112"
    assert "<CARD>" not in redact(not_a_card)


def test_ssn_iban_and_accounts():
    assert redact("SSN 123-45-6789") == "SSN <SSN>"
    assert redact("IBAN GB82WEST12345698765432 thanks") == "IBAN <IBAN> thanks"
    assert redact("Account no: 12345678") == "Account no: <ACCOUNT>"
    assert redact("ref 0012345678901") == "ref <ACCOUNT>"


def test_emails_and_phones():
    text = "Questions? billing@cafe-abc.com or +1 415 555 0100 or (415) 555-0100"
    out = redact(text)
    assert out == "Questions? <EMAIL> or <PHONE> or <PHONE>"
    assert redaction_counts(text) == {"email": 1, "phone": 2}


def test_redaction_is_deterministic_and_stable_on_its_own_output():
    text = "Card 4111 1111 1111 1111, mail a@b.co, Total $12.00 on 2025-09-01"
    once = redact(text)
    assert redact(text) == once
    assert redact(once) == once
    assert "$12.00" in once
    assert "2025-09-01" in once


def test_empty_text():
    assert redact("") == ""
