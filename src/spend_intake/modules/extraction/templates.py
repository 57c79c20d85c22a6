from __future__ import annotations

from dataclasses import dataclass

_FIELDS_SHAPE = (
    "{\n"
    '  "date": "YYYY-MM-DD"|null,\n'
    '  "amount": string|null,\n'
    '  "currency": ISO-4217 code|null,\n'
    '  "vendor": string|null,\n'
    '  "category": string|null,\n'
    '  "confidence": number between 0 and 1\n'
    "}"
)

_COMMON_RULES = (
    "Rules:\n"
    "- Only use information explicitly present in the text. Never guess.\n"
    "- amount is the total actually charged (not a subtotal or tax line).\n"
    "- currency MUST be an ISO-4217 code; null if not stated.\n"
    "- Placeholders like <CARD> or <ACCOUNT> are redacted data; ignore them.\n"
    "- confidence reflects how sure you are the text is a receipt and the fields are right.\n"
)

_STRICT_SUFFIX = (
    "\nYour previous reply could not be parsed. Reply with exactly one JSON object "
    "and nothing else: no prose, no code fences, no trailing commas."
)


@dataclass(frozen=True)
class PromptTemplate:
    template_id: str
    system: str
    instructions: str

    def render(self, redacted_text: str, *, strict: bool = False) -> tuple[str, str]:
        user = self.instructions + "\n\nMessage text:\n" + redacted_text
        if strict:
            user += _STRICT_SUFFIX
        return self.system, user


TEMPLATES: dict[str, PromptTemplate] = {
    "receipt_email.v1": PromptTemplate(
        template_id="receipt_email.v1",
        system=(
            "You extract expense fields from forwarded receipt emails.\n"
            "Return JSON only."
        ),
        instructions=(
            "Extract the purchase from this email. If it was forwarded, use the original "
            "receipt content, not the forwarding headers.\n"
            "Return JSON with this exact shape:\n" + _FIELDS_SHAPE + "\n\n" + _COMMON_RULES
        ),
    ),
    "receipt_sms.v1": PromptTemplate(
        template_id="receipt_sms.v1",
        system=(
            "You extract expense fields from short card/bank transaction SMS alerts.\n"
            "Return JSON only."
        ),
        instructions=(
            "The message is a terse payment alert. The merchant is usually after "
            '"at" or "to"; dates may be written as D/M or M/D.\n'
            "Return JSON with this exact shape:\n" + _FIELDS_SHAPE + "\n\n" + _COMMON_RULES
        ),
    ),
}


def get_template(template_id: str) -> PromptTemplate:
    try:
        return TEMPLATES[template_id]
    except KeyError as e:
        raise ValueError(f"Unknown extraction template: {template_id}") from e
