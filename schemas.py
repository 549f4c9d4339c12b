from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import BudgetPeriod, ErrorKind, Frequency, ObligationStatus


class ObligationIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0)
    category: str = Field(..., min_length=1, max_length=100)
    frequency: Frequency
    start_date: date
    end_date: Optional[date] = None
    status: ObligationStatus = ObligationStatus.active
    ledger_id: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def _end_after_start(self) -> "ObligationIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category: Optional[str] = Field(default=None, max_length=100)
    period: BudgetPeriod
    start_date: date
    end_date: date
    amount_cents: int = Field(..., ge=0)
    spent_cents: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _window_ordered(self) -> "BudgetIn":
        if self.start_date > self.end_date:
            raise ValueError("Start date must be before end date")
        return self


class ObligationErrorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    obligation_id: int
    kind: ErrorKind
    reason: str


class RunResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    today: date
    created_transaction_ids: list[int]
    updated_obligation_ids: list[int]
    errors: list[ObligationErrorOut]
    warnings: list[ObligationErrorOut]
