from dataclasses import asdict, dataclass
from typing import Iterable, Mapping, Union

from models import TransactionType
from money import safe_number


@dataclass(frozen=True)
class MonthlySummary:
    income_total: float = 0.0
    expense_total: float = 0.0
    net_total: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def _field(txn: object, name: str) -> object:
    if isinstance(txn, Mapping):
        return txn.get(name)
    return getattr(txn, name, None)


def calculate_monthly_summary(
    transactions: Iterable[Union[Mapping[str, object], object]],
) -> MonthlySummary:
    """Income, expense and net totals in a single pass.

    Accepts ORM rows or plain mappings with ``amount`` and ``type``. The
    transaction type decides the direction; non-finite amounts count as 0.
    """
    income_total = 0.0
    expense_total = 0.0
    for txn in transactions:
        amount = safe_number(_field(txn, "amount"))
        txn_type = _field(txn, "type")
        if txn_type == TransactionType.income:
            income_total += amount
        else:
            expense_total += amount
    return MonthlySummary(
        income_total=income_total,
        expense_total=expense_total,
        net_total=income_total - expense_total,
    )
