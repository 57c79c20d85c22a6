from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from spend_intake.core.db import db_session
from spend_intake.modules.expenses.schemas import ExpenseRecordOut
from spend_intake.modules.expenses.service import list_records_for_user

router = APIRouter(tags=["expenses"])


@router.get("/users/{user_id}/expenses", response_model=list[ExpenseRecordOut])
def list_expenses_endpoint(
    user_id: str,
    session: Session = Depends(db_session),
) -> list[ExpenseRecordOut]:
    records = list_records_for_user(session, user_id=user_id)
    return [ExpenseRecordOut.model_validate(r, from_attributes=True) for r in records]
