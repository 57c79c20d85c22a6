"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

from spend_intake.modules.deadletter.models import DeadLetterEntry  # noqa: F401
from spend_intake.modules.expenses.models import ExpenseRecord  # noqa: F401
from spend_intake.modules.extraction.models import ExtractionCacheEntry  # noqa: F401
