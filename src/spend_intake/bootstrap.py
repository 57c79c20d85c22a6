from __future__ import annotations

import spend_intake.models  # noqa: F401
from spend_intake.core.config import settings
from spend_intake.core.db import engine
from spend_intake.core.models import Base


def bootstrap() -> None:
    # Migrations own the schema everywhere except local SQLite development.
    if settings.environment == "dev" and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)
