from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from money import safe_number
from periods import MonthRange, month_range_utc, remaining_days_in_range


@dataclass(frozen=True)
class SmartBalanceInput:
    # Money available for the month: income sum, or the user's budget goal.
    total_money: float
    # All expenses recorded in the month, fixed and variable.
    expense_total: float
    # Fixed expenses planned for the month (rent, subscriptions, ...).
    planned_fixed_expenses: float
    # Fixed expenses already paid in the month.
    fixed_expenses_paid: float


@dataclass(frozen=True)
class SmartBalanceResult:
    remaining_days_in_month: int
    current_balance: float
    remaining_fixed_expenses: float
    today_spendable_limit: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def calculate_smart_balance(
    data: SmartBalanceInput,
    *,
    month: Optional[MonthRange] = None,
    now: Optional[datetime] = None,
) -> SmartBalanceResult:
    """How much can be spent today without missing the remaining fixed costs.

        (current balance - remaining fixed expenses) / remaining days

    ``month`` must be the same UTC month the expense totals were selected
    from; when omitted it is the UTC month of ``now``. A negative limit means
    the month is already overspent and is returned as is.
    """
    month = month or month_range_utc(None, now)
    remaining_days = remaining_days_in_range(month, now)

    total_money = safe_number(data.total_money)
    expense_total = safe_number(data.expense_total)
    planned_fixed = max(0.0, safe_number(data.planned_fixed_expenses))
    fixed_paid = max(0.0, safe_number(data.fixed_expenses_paid))

    remaining_fixed = max(planned_fixed - fixed_paid, 0.0)
    current_balance = total_money - expense_total
    limit = (current_balance - remaining_fixed) / remaining_days

    return SmartBalanceResult(
        remaining_days_in_month=remaining_days,
        current_balance=current_balance,
        remaining_fixed_expenses=remaining_fixed,
        today_spendable_limit=limit,
    )
