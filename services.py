from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from categories import FIXED_EXPENSE_CATEGORY
from config import get_settings
from cursor import encode_tx_cursor
from expense_breakdown import (
    build_conic_gradient,
    get_expense_breakdown,
    get_reality_check_message,
)
from models import (
    BillingCycle,
    FixedExpense,
    Payment,
    Profile,
    RateLimitBucket,
    Subscription,
    Transaction,
    TransactionType,
    Wallet,
)
from money import safe_number, to_finite_number
from payment_analysis import PaymentAnalysisInput, PaymentsOverview, analyze_payments
from periods import (
    MonthRange,
    as_utc,
    month_range_utc,
    remaining_days_in_range,
    utcnow,
)
from schemas import (
    FixedExpenseIn,
    PaymentIn,
    PaymentUpdate,
    ProfileUpdate,
    SubscriptionIn,
    SubscriptionUpdate,
    TransactionIn,
    TransactionUpdate,
    TxCursor,
    WalletIn,
    WalletTransferIn,
    WalletUpdate,
    date_to_utc_instant,
    parse_cursor_date,
    transaction_to_dict,
)
from smart_balance import SmartBalanceInput, calculate_smart_balance
from summary import MonthlySummary, calculate_monthly_summary


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    """The request is valid but clashes with stored state."""


def get_current_user_id() -> int:
    return get_settings().user_id


def _naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.replace(tzinfo=None) - (value.utcoffset() or timedelta(0))


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None


@dataclass
class TransactionPage:
    items: list[Transaction]
    next_cursor: Optional[str]


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            amount=data.amount,
            type=data.type,
            category=data.category,
            date=date_to_utc_instant(data.date),
            description=data.description,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: str) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.id == transaction_id
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: str, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_fields_set
        if "amount" in fields and data.amount is not None:
            txn.amount = data.amount
        if "type" in fields and data.type is not None:
            txn.type = data.type
        if "category" in fields and data.category is not None:
            txn.category = data.category
        if "date" in fields and data.date is not None:
            txn.date = date_to_utc_instant(data.date)
        if "description" in fields:
            txn.description = data.description
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: str) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def _in_range(self, month: MonthRange):
        return select(Transaction).where(
            Transaction.user_id == self.user_id,
            Transaction.date >= _naive(month.start),
            Transaction.date < _naive(month.end),
        )

    def list_page(
        self,
        month: MonthRange,
        limit: int = 50,
        cursor: Optional[TxCursor] = None,
        filters: Optional[TransactionFilters] = None,
    ) -> TransactionPage:
        """Keyset page ordered newest first, continuing after ``cursor``."""
        filters = filters or TransactionFilters()
        stmt = self._in_range(month)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if cursor is not None:
            cursor_date = parse_cursor_date(cursor.date)
            stmt = stmt.where(
                or_(
                    Transaction.date < cursor_date,
                    and_(Transaction.date == cursor_date, Transaction.id < cursor.id),
                )
            )
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc()).limit(
            limit + 1
        )
        rows = list(self.session.scalars(stmt).all())

        has_more = len(rows) > limit
        items = rows[:limit]
        next_cursor = None
        if has_more and items:
            last = transaction_to_dict(items[-1])
            next_cursor = encode_tx_cursor(
                TxCursor(id=str(last["id"]), date=str(last["date"]))
            )
        return TransactionPage(items=items, next_cursor=next_cursor)

    def all_for_range(self, month: MonthRange) -> list[Transaction]:
        stmt = self._in_range(month).order_by(
            Transaction.date.asc(), Transaction.id.asc()
        )
        return list(self.session.scalars(stmt).all())

    def monthly_summary(self, month: MonthRange) -> MonthlySummary:
        stmt = (
            select(Transaction.type, func.sum(Transaction.amount))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date >= _naive(month.start),
                Transaction.date < _naive(month.end),
            )
            .group_by(Transaction.type)
        )
        income_total = 0.0
        expense_total = 0.0
        for txn_type, total in self.session.execute(stmt).all():
            if txn_type == TransactionType.income:
                income_total += safe_number(total)
            else:
                expense_total += safe_number(total)
        return MonthlySummary(
            income_total=income_total,
            expense_total=expense_total,
            net_total=income_total - expense_total,
        )


class ProfileService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get_or_create(self) -> Profile:
        profile = self.session.get(Profile, self.user_id)
        if profile is None:
            profile = Profile(user_id=self.user_id)
            self.session.add(profile)
            self.session.commit()
            self.session.refresh(profile)
        return profile

    def update(self, data: ProfileUpdate) -> Profile:
        profile = self.get_or_create()
        for name in data.model_fields_set:
            setattr(profile, name, getattr(data, name))
        self.session.commit()
        self.session.refresh(profile)
        return profile


class FixedExpenseService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[FixedExpense]:
        stmt = (
            select(FixedExpense)
            .where(FixedExpense.user_id == self.user_id)
            .order_by(FixedExpense.created_at.asc(), FixedExpense.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, fixed_expense_id: str) -> FixedExpense:
        item = self.session.get(FixedExpense, fixed_expense_id)
        if not item or item.user_id != self.user_id:
            raise NotFoundError("Fixed expense not found")
        return item

    def create(self, data: FixedExpenseIn) -> FixedExpense:
        item = FixedExpense(
            user_id=self.user_id, name=data.name.strip(), amount=data.amount
        )
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def update(self, fixed_expense_id: str, data: FixedExpenseIn) -> FixedExpense:
        item = self.get(fixed_expense_id)
        item.name = data.name.strip()
        item.amount = data.amount
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete(self, fixed_expense_id: str) -> None:
        item = self.get(fixed_expense_id)
        self.session.delete(item)
        self.session.commit()

    def planned_total(self) -> float:
        stmt = select(func.sum(FixedExpense.amount)).where(
            FixedExpense.user_id == self.user_id
        )
        return safe_number(self.session.execute(stmt).scalar_one_or_none())


class DashboardService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def overview(
        self, month: MonthRange, now: Optional[datetime] = None
    ) -> dict[str, object]:
        now = now or utcnow()
        profile = ProfileService(self.session, self.user_id).get_or_create()
        budget_goal = to_finite_number(profile.monthly_budget_goal)
        planned_fixed = to_finite_number(profile.monthly_fixed_expenses)
        if planned_fixed is None:
            planned_fixed = FixedExpenseService(
                self.session, self.user_id
            ).planned_total()

        transactions = TransactionService(self.session, self.user_id).all_for_range(
            month
        )
        summary = calculate_monthly_summary(transactions)
        expenses = [
            {"category": t.category, "amount": t.amount}
            for t in transactions
            if t.type == TransactionType.expense
        ]
        fixed_paid = sum(
            safe_number(e["amount"])
            for e in expenses
            if e["category"] == FIXED_EXPENSE_CATEGORY
        )

        total_money = (
            summary.income_total if summary.income_total > 0 else budget_goal or 0.0
        )
        smart = calculate_smart_balance(
            SmartBalanceInput(
                total_money=total_money,
                expense_total=summary.expense_total,
                planned_fixed_expenses=planned_fixed,
                fixed_expenses_paid=fixed_paid,
            ),
            month=month,
            now=now,
        )
        breakdown = get_expense_breakdown(expenses)

        return {
            "month": month.label,
            "needs_onboarding": not budget_goal,
            "total_money": total_money,
            "summary": summary.to_dict(),
            "smart_balance": smart.to_dict(),
            "expense_breakdown": breakdown.to_dict(),
            "gradient": build_conic_gradient(breakdown.slices),
            "reality_check": get_reality_check_message(breakdown.slices),
        }


class PaymentService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_upcoming(self, today: date) -> list[Payment]:
        """Unpaid payments plus everything due from ``today`` on."""
        stmt = (
            select(Payment)
            .where(
                Payment.user_id == self.user_id,
                or_(Payment.is_paid.is_(False), Payment.due_date >= today),
            )
            .order_by(Payment.due_date.asc(), Payment.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def unpaid(self) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.user_id == self.user_id, Payment.is_paid.is_(False))
            .order_by(Payment.due_date.asc(), Payment.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def unpaid_total(self, today: date) -> float:
        stmt = select(func.sum(Payment.amount)).where(
            Payment.user_id == self.user_id,
            Payment.is_paid.is_(False),
            Payment.due_date >= today,
        )
        return safe_number(self.session.execute(stmt).scalar_one_or_none())

    def get(self, payment_id: str) -> Payment:
        item = self.session.get(Payment, payment_id)
        if not item or item.user_id != self.user_id:
            raise NotFoundError("Payment not found")
        return item

    def create(self, data: PaymentIn) -> Payment:
        item = Payment(
            user_id=self.user_id,
            name=data.name,
            amount=data.amount,
            due_date=data.due_date,
        )
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def update(
        self, payment_id: str, data: PaymentUpdate, now: Optional[datetime] = None
    ) -> Payment:
        item = self.get(payment_id)
        fields = data.model_fields_set
        if "name" in fields and data.name is not None:
            item.name = data.name
        if "amount" in fields and data.amount is not None:
            item.amount = data.amount
        if "due_date" in fields and data.due_date is not None:
            item.due_date = data.due_date
        if "is_paid" in fields and data.is_paid is not None:
            item.is_paid = data.is_paid
            item.paid_at = _naive(now or utcnow()) if data.is_paid else None
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete(self, payment_id: str) -> None:
        item = self.get(payment_id)
        self.session.delete(item)
        self.session.commit()

    def analysis(self, now: Optional[datetime] = None) -> PaymentsOverview:
        """Check the unpaid payments against the current month's money."""
        now = as_utc(now or utcnow())
        month = month_range_utc(None, now)
        summary = TransactionService(self.session, self.user_id).monthly_summary(month)
        elapsed_days = max(1, now.day)
        payments = self.unpaid()
        data = PaymentAnalysisInput(
            current_balance=summary.net_total,
            total_unpaid_payments=sum(safe_number(p.amount) for p in payments),
            average_daily_expense=summary.expense_total / elapsed_days,
            days_remaining_in_month=remaining_days_in_range(month, now),
        )
        return analyze_payments(
            [(safe_number(p.amount), p.due_date) for p in payments], data, now
        )


class SubscriptionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == self.user_id)
            .order_by(Subscription.next_renewal_date.asc(), Subscription.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, subscription_id: str) -> Subscription:
        item = self.session.get(Subscription, subscription_id)
        if not item or item.user_id != self.user_id:
            raise NotFoundError("Subscription not found")
        return item

    def create(self, data: SubscriptionIn) -> Subscription:
        item = Subscription(user_id=self.user_id, **data.model_dump())
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def update(self, subscription_id: str, data: SubscriptionUpdate) -> Subscription:
        item = self.get(subscription_id)
        for name in data.model_fields_set:
            value = getattr(data, name)
            if value is None and name != "icon_url":
                continue
            setattr(item, name, value)
        self.session.commit()
        self.session.refresh(item)
        return item

    def delete(self, subscription_id: str) -> None:
        item = self.get(subscription_id)
        self.session.delete(item)
        self.session.commit()

    def monthly_total(self) -> float:
        """Monthly cost of active subscriptions; yearly ones count a twelfth."""
        total = 0.0
        for item in self.list_all():
            if not item.is_active:
                continue
            amount = safe_number(item.amount)
            if item.billing_cycle == BillingCycle.yearly:
                amount /= 12
            total += amount
        return total

    def upcoming_renewals(self, today: date, days_ahead: int = 7) -> list[Subscription]:
        until = today + timedelta(days=days_ahead)
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == self.user_id,
                Subscription.is_active.is_(True),
                Subscription.next_renewal_date >= today,
                Subscription.next_renewal_date <= until,
            )
            .order_by(Subscription.next_renewal_date.asc(), Subscription.id.asc())
        )
        return list(self.session.scalars(stmt).all())


class WalletService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Wallet]:
        stmt = (
            select(Wallet)
            .where(Wallet.user_id == self.user_id)
            .order_by(
                Wallet.is_default.desc(), Wallet.created_at.asc(), Wallet.id.asc()
            )
        )
        return list(self.session.scalars(stmt).all())

    def get(self, wallet_id: str) -> Wallet:
        wallet = self.session.get(Wallet, wallet_id)
        if not wallet or wallet.user_id != self.user_id:
            raise NotFoundError("Wallet not found")
        return wallet

    def _clear_default(self, keep_id: Optional[str] = None) -> None:
        stmt = update(Wallet).where(
            Wallet.user_id == self.user_id, Wallet.is_default.is_(True)
        )
        if keep_id is not None:
            stmt = stmt.where(Wallet.id != keep_id)
        self.session.execute(stmt.values(is_default=False))

    def create(self, data: WalletIn) -> Wallet:
        if data.is_default:
            self._clear_default()
        wallet = Wallet(
            user_id=self.user_id,
            name=data.name,
            balance=data.balance,
            is_default=data.is_default,
        )
        self.session.add(wallet)
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def update(self, wallet_id: str, data: WalletUpdate) -> Wallet:
        wallet = self.get(wallet_id)
        fields = data.model_fields_set
        if "name" in fields and data.name is not None:
            wallet.name = data.name
        if "balance" in fields and data.balance is not None:
            wallet.balance = data.balance
        if "is_default" in fields and data.is_default is not None:
            if data.is_default:
                self._clear_default(keep_id=wallet.id)
            wallet.is_default = data.is_default
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def delete(self, wallet_id: str) -> None:
        wallet = self.get(wallet_id)
        if safe_number(wallet.balance) != 0:
            raise ConflictError("Wallet balance must be zero before deletion")
        self.session.delete(wallet)
        self.session.commit()

    def transfer(self, data: WalletTransferIn) -> tuple[Wallet, Wallet]:
        """Move money between two wallets in a single commit."""
        source = self.get(data.from_wallet_id)
        target = self.get(data.to_wallet_id)
        if source.balance < data.amount:
            raise ConflictError("Insufficient balance")
        source.balance = source.balance - data.amount
        target.balance = target.balance + data.amount
        self.session.commit()
        self.session.refresh(source)
        self.session.refresh(target)
        return source, target


def purge_expired_rate_limit_buckets(
    session: Session, now: datetime, max_window_seconds: int
) -> int:
    """Drop counters whose window ended before ``now``."""
    cutoff = _naive(now) - timedelta(seconds=max_window_seconds)
    result = session.execute(
        delete(RateLimitBucket).where(RateLimitBucket.window_started_at < cutoff)
    )
    session.commit()
    return result.rowcount or 0
