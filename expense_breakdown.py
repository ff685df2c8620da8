import math
from dataclasses import asdict, dataclass, field
from typing import Iterable, Mapping

from categories import EXPENSE_CATEGORIES, OTHER_CATEGORY, is_expense_category
from money import safe_number

EXPENSE_CATEGORY_COLORS: dict[str, str] = {
    "Sosyal/Keyif": "#f97316",
    "Beslenme": "#22c55e",
    "Ulaşım": "#3b82f6",
    "Sabitler": "#a855f7",
    "Okul": "#eab308",
}

OTHER_COLOR = "#64748b"

NO_EXPENSES_MESSAGE = "Bu ay henüz gider yok."

ADVICE_BY_CATEGORY: dict[str, str] = {
    "Sosyal/Keyif": "Biraz yavaşla.",
    "Beslenme": "Dışarıdan söylemeyi azaltmayı deneyebilirsin.",
    "Ulaşım": "Daha ekonomik bir ulaşım planı yapmayı düşün.",
    "Sabitler": "Sabit giderlerini gözden geçir.",
    "Okul": "Okul masraflarını önceden planla.",
    OTHER_CATEGORY: "Harcamalarını gözden geçir.",
}


@dataclass(frozen=True)
class ExpenseSlice:
    category: str
    amount: float
    percent: float  # 0..1
    color: str


@dataclass(frozen=True)
class ExpenseBreakdown:
    total: float = 0.0
    slices: list[ExpenseSlice] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {"total": self.total, "slices": [asdict(s) for s in self.slices]}


def get_expense_breakdown(
    expenses: Iterable[Mapping[str, object]],
) -> ExpenseBreakdown:
    totals: dict[str, float] = {}
    other_total = 0.0

    for expense in expenses:
        amount = max(0.0, safe_number(expense.get("amount")))
        if amount == 0:
            continue
        category = expense.get("category")
        if is_expense_category(category):
            totals[category] = totals.get(category, 0.0) + amount
        else:
            other_total += amount

    total = sum(totals.values()) + other_total
    if total <= 0:
        return ExpenseBreakdown()

    slices: list[ExpenseSlice] = []
    for category in EXPENSE_CATEGORIES:
        amount = totals.get(category, 0.0)
        if amount <= 0:
            continue
        slices.append(
            ExpenseSlice(
                category=category,
                amount=amount,
                percent=amount / total,
                color=EXPENSE_CATEGORY_COLORS[category],
            )
        )
    if other_total > 0:
        slices.append(
            ExpenseSlice(
                category=OTHER_CATEGORY,
                amount=other_total,
                percent=other_total / total,
                color=OTHER_COLOR,
            )
        )

    # sorted() is stable: ties keep whitelist order, "Other" last
    slices = sorted(slices, key=lambda s: s.amount, reverse=True)
    return ExpenseBreakdown(total=total, slices=slices)


def _format_degrees(value: float) -> str:
    return f"{round(value, 4):g}"


def build_conic_gradient(slices: list[ExpenseSlice]) -> str:
    if not slices:
        return f"conic-gradient({OTHER_COLOR} 0deg 360deg)"

    cursor = 0.0
    parts: list[str] = []
    for s in slices:
        start = cursor
        end = cursor + s.percent * 360
        cursor = end
        parts.append(f"{s.color} {_format_degrees(start)}deg {_format_degrees(end)}deg")
    return f"conic-gradient({', '.join(parts)})"


def get_reality_check_message(slices: list[ExpenseSlice]) -> str:
    if not slices:
        return NO_EXPENSES_MESSAGE

    top = slices[0]
    pct = math.floor(top.percent * 100 + 0.5)
    advice = ADVICE_BY_CATEGORY.get(top.category, ADVICE_BY_CATEGORY[OTHER_CATEGORY])
    return f"Harcamalarının %{pct}'i {top.category} kategorisine gitmiş. {advice}"
