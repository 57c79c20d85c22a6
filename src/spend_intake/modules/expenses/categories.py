from __future__ import annotations

import re

UNCATEGORIZED = "Uncategorized"

# Declaration order breaks ties, so classification is deterministic.
KEYWORD_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "Food",
        (
            "cafe",
            "café",
            "coffee",
            "restaurant",
            "bistro",
            "bakery",
            "diner",
            "pizza",
            "burger",
            "sushi",
            "grill",
            "kitchen",
            "starbucks",
            "doordash",
            "ubereats",
            "grubhub",
            "deliveroo",
        ),
    ),
    (
        "Groceries",
        ("grocery", "groceries", "supermarket", "market", "whole foods", "trader joe", "tesco"),
    ),
    (
        "Transport",
        (
            "uber",
            "lyft",
            "taxi",
            "cab",
            "grab",
            "metro",
            "transit",
            "parking",
            "toll",
            "fuel",
            "gas station",
            "shell",
            "chevron",
        ),
    ),
    ("Lodging", ("hotel", "inn", "motel", "hostel", "airbnb", "resort", "folio")),
    ("Travel", ("airline", "airlines", "flight", "airways", "boarding pass", "e-ticket")),
    (
        "Utilities",
        ("electric", "utility", "water bill", "internet", "broadband", "mobile plan", "telecom"),
    ),
    (
        "Subscriptions",
        ("subscription", "netflix", "spotify", "membership", "renewal", "monthly plan"),
    ),
    ("Office", ("office", "stationery", "printer", "staples", "software", "saas")),
    ("Health", ("pharmacy", "clinic", "dental", "doctor", "hospital", "cvs", "walgreens")),
)

_COMPILED: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = tuple(
    (
        category,
        tuple(re.compile(r"(?<!\w)" + re.escape(k) + r"(?!\w)", re.I) for k in keywords),
    )
    for category, keywords in KEYWORD_RULES
)


def classify(*texts: str | None) -> str | None:
    """Return the category whose keywords hit most often across `texts`, or None."""
    haystack = "\n".join(t for t in texts if t)
    if not haystack.strip():
        return None

    best: str | None = None
    best_score = 0
    for category, patterns in _COMPILED:
        score = sum(len(p.findall(haystack)) for p in patterns)
        if score > best_score:
            best, best_score = category, score
    return best


def fallback_category(vendor: str | None, context_text: str | None) -> str:
    # Vendor names are the stronger signal; body text only breaks a vendor miss.
    return classify(vendor) or classify(context_text) or UNCATEGORIZED
