from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

_CENT = Decimal("0.01")


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(_CENT, rounding=ROUND_HALF_UP)


class RecurringTask(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_id: int
    user_id: int
    attempt: int = Field(default=1, ge=1)

    def next_attempt(self) -> "RecurringTask":
        return self.model_copy(update={"attempt": self.attempt + 1})


class MonthlyStats(BaseModel):
    total_income_cents: int = 0
    total_expenses_cents: int = 0
    by_category_cents: dict[str, int] = Field(default_factory=dict)
    transaction_count: int = 0

    @property
    def net_cents(self) -> int:
        return self.total_income_cents - self.total_expenses_cents

    def as_amounts(self) -> dict[str, object]:
        """Aggregate view handed to the insight generator."""
        return {
            "totalIncome": str(cents_to_decimal(self.total_income_cents)),
            "totalExpenses": str(cents_to_decimal(self.total_expenses_cents)),
            "byCategory": {
                name: str(cents_to_decimal(cents))
                for name, cents in sorted(self.by_category_cents.items())
            },
        }


class BudgetAlertPayload(BaseModel):
    kind: Literal["budget-alert"] = "budget-alert"
    username: str = ""
    percentage_used: Decimal
    budget_amount: Decimal
    total_expenses: Decimal
    account_name: str

    @property
    def remaining(self) -> Decimal:
        return self.budget_amount - self.total_expenses


class CategoryLine(BaseModel):
    category: str
    amount: Decimal


class MonthlyReportPayload(BaseModel):
    kind: Literal["monthly-report"] = "monthly-report"
    username: str = ""
    month: str
    total_income: Decimal
    total_expenses: Decimal
    net: Decimal
    by_category: list[CategoryLine] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)


class DeadLetterOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source: str
    payload_json: str
    error: str
    attempts: int
    created_at: datetime
    resolved_at: Optional[datetime] = None
