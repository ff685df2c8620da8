"""Whether upcoming payments can be covered by the month's money.

Each payment is checked against the current balance, the balance projected
to its due date at the current daily spending rate, and an expected income
that arrives before the due date. The result carries a warning level and a
user-facing message.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional, Sequence

from money import safe_number
from periods import as_utc, utcnow


class WarningLevel(str, Enum):
    none = "none"
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


WARNING_ORDER = [
    WarningLevel.none,
    WarningLevel.low,
    WarningLevel.medium,
    WarningLevel.high,
    WarningLevel.critical,
]


@dataclass(frozen=True)
class PaymentAnalysisInput:
    # Month income minus month expenses.
    current_balance: float
    total_unpaid_payments: float
    average_daily_expense: float
    days_remaining_in_month: int
    next_income_date: Optional[date] = None
    expected_income_amount: Optional[float] = None


@dataclass(frozen=True)
class PaymentAnalysisResult:
    can_cover_with_current_balance: bool
    can_cover_with_current_trend: bool
    can_cover_with_expected_income: bool
    projected_balance_on_due_date: float
    recommended_daily_spending_limit: float
    days_until_due: int
    warning_level: WarningLevel
    warning_message: Optional[str]

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["warning_level"] = self.warning_level.value
        return data


@dataclass(frozen=True)
class PaymentsOverview:
    analyses: list[PaymentAnalysisResult] = field(default_factory=list)
    overall_warning_level: WarningLevel = WarningLevel.none
    overall_warning_message: Optional[str] = None
    total_amount_due: float = 0.0
    earliest_due_date: Optional[date] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "overall_warning_level": self.overall_warning_level.value,
            "overall_warning_message": self.overall_warning_message,
            "total_amount_due": self.total_amount_due,
            "earliest_due_date": (
                self.earliest_due_date.isoformat() if self.earliest_due_date else None
            ),
        }


def _today(now: Optional[datetime]) -> date:
    return (as_utc(now) if now is not None else utcnow()).date()


def _tl(amount: float) -> str:
    return f"{amount:.2f} ₺"


def _warning_for(
    amount: float,
    days_until_due: int,
    covered_now: bool,
    covered_by_trend: bool,
    covered_by_income: bool,
    projected: float,
) -> tuple[WarningLevel, Optional[str]]:
    due = f"{days_until_due} gün sonra {_tl(amount)} ödemeniz var."

    if days_until_due == 0:
        if not covered_now:
            return (
                WarningLevel.critical,
                f"Bugün ödemeniz gereken {_tl(amount)} tutarındaki ödemeyi karşılayamıyorsunuz.",
            )
        return WarningLevel.none, None

    if days_until_due <= 3:
        if not covered_now and not covered_by_income:
            return WarningLevel.critical, f"{due} Mevcut bakiyeniz yetersiz."
        if not covered_by_trend:
            return (
                WarningLevel.high,
                f"{due} Mevcut harcama trendinizle ödemeyi karşılayamayabilirsiniz.",
            )
        return WarningLevel.none, None

    if days_until_due <= 7:
        if not covered_by_trend and not covered_by_income:
            return WarningLevel.high, f"{due} Harcamalarınızı kontrol etmeniz gerekiyor."
        if projected < amount * 1.1:
            return WarningLevel.medium, f"{due} Harcamalarınıza dikkat edin."
        return WarningLevel.none, None

    if not covered_by_trend and not covered_by_income:
        return WarningLevel.medium, f"{due} Planlamanızı gözden geçirin."
    if projected < amount * 1.2:
        return WarningLevel.low, due
    return WarningLevel.none, None


def analyze_payment(
    amount: float,
    due_date: date,
    data: PaymentAnalysisInput,
    now: Optional[datetime] = None,
) -> PaymentAnalysisResult:
    """Feasibility of paying ``amount`` on ``due_date``.

    Spending is projected at ``average_daily_expense`` for the days until the
    due date, capped at the days left in the month. A payment that is past
    due counts as due today.
    """
    amount = safe_number(amount)
    balance = safe_number(data.current_balance)
    daily_expense = max(0.0, safe_number(data.average_daily_expense))

    days_until_due = max(0, (due_date - _today(now)).days)
    days_to_project = min(days_until_due, max(0, data.days_remaining_in_month))
    projected_expense = daily_expense * days_to_project
    projected = balance - projected_expense

    covered_now = balance >= amount
    covered_by_trend = projected >= amount

    covered_by_income = False
    expected_income = safe_number(data.expected_income_amount)
    if data.next_income_date is not None and expected_income:
        arrives_in_time = data.next_income_date <= due_date
        after_income = balance + expected_income - projected_expense
        covered_by_income = arrives_in_time and after_income >= amount

    if days_until_due > 0:
        daily_limit = max(0.0, (balance - amount) / days_until_due)
    else:
        daily_limit = 0.0

    level, message = _warning_for(
        amount, days_until_due, covered_now, covered_by_trend, covered_by_income, projected
    )
    return PaymentAnalysisResult(
        can_cover_with_current_balance=covered_now,
        can_cover_with_current_trend=covered_by_trend,
        can_cover_with_expected_income=covered_by_income,
        projected_balance_on_due_date=projected,
        recommended_daily_spending_limit=daily_limit,
        days_until_due=days_until_due,
        warning_level=level,
        warning_message=message,
    )


_OVERALL_ADVICE = {
    WarningLevel.critical: "ve bunları karşılayamayabilirsiniz. Acil önlem alın.",
    WarningLevel.high: "Harcamalarınızı kontrol etmeniz gerekiyor.",
    WarningLevel.medium: "Planlamanızı gözden geçirin.",
}


def analyze_payments(
    payments: Sequence[tuple[float, date]],
    data: PaymentAnalysisInput,
    now: Optional[datetime] = None,
) -> PaymentsOverview:
    """Analyse ``(amount, due_date)`` pairs and report the worst warning."""
    if not payments:
        return PaymentsOverview()

    analyses = [analyze_payment(amount, due, data, now) for amount, due in payments]
    overall = max(
        (a.warning_level for a in analyses), key=WARNING_ORDER.index
    )
    total = sum(safe_number(amount) for amount, _ in payments)
    earliest = min(due for _, due in payments)

    message = None
    if overall is not WarningLevel.none:
        message = f"Toplam {_tl(total)} tutarında ödemeniz var"
        advice = _OVERALL_ADVICE.get(overall)
        if overall is WarningLevel.critical:
            message = f"{message} {advice}"
        elif advice:
            message = f"{message}. {advice}"
        else:
            message = f"{message}."

    return PaymentsOverview(
        analyses=analyses,
        overall_warning_level=overall,
        overall_warning_message=message,
        total_amount_due=total,
        earliest_due_date=earliest,
    )
