from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from cursor import decode_tx_cursor
from database import Base
from models import Payment, RateLimitBucket, Transaction, TransactionType
from periods import month_range_utc
from schemas import (
    FixedExpenseIn,
    PaymentUpdate,
    ProfileUpdate,
    SubscriptionIn,
    TransactionIn,
    TransactionUpdate,
    WalletIn,
    WalletTransferIn,
)
from services import (
    ConflictError,
    DashboardService,
    FixedExpenseService,
    NotFoundError,
    PaymentService,
    ProfileService,
    SubscriptionService,
    WalletService,
    TransactionFilters,
    TransactionService,
    purge_expired_rate_limit_buckets,
)

NOW = datetime(2025, 12, 21, 12, 0, tzinfo=timezone.utc)
DECEMBER = month_range_utc("2025-12", NOW)


@pytest.fixture
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


def _add(
    session: Session,
    amount: str,
    txn_type: TransactionType,
    category: str,
    when: datetime,
    user_id: int = 1,
) -> Transaction:
    txn = Transaction(
        user_id=user_id,
        amount=Decimal(amount),
        type=txn_type,
        category=category,
        date=when,
    )
    session.add(txn)
    session.commit()
    return txn


def test_create_stores_date_as_utc_midnight(session: Session) -> None:
    service = TransactionService(session, user_id=1)
    txn = service.create(
        TransactionIn(
            amount="12,50", type="expense", category=" Beslenme ", date="2025-12-03"
        )
    )
    assert txn.amount == Decimal("12.50")
    assert txn.category == "Beslenme"
    assert txn.date == datetime(2025, 12, 3)


def test_update_only_touches_sent_fields(session: Session) -> None:
    service = TransactionService(session, user_id=1)
    txn = _add(session, "40", TransactionType.expense, "Okul", datetime(2025, 12, 2))
    txn_id = txn.id

    updated = service.update(
        txn_id, TransactionUpdate(amount="55", date=date(2025, 12, 9))
    )
    assert updated.amount == Decimal("55.00")
    assert updated.category == "Okul"
    assert updated.date == datetime(2025, 12, 9)

    updated = service.update(txn_id, TransactionUpdate(description=None))
    assert updated.description is None


def test_other_users_rows_are_not_found(session: Session) -> None:
    txn = _add(session, "10", TransactionType.expense, "Okul", datetime(2025, 12, 2), user_id=2)
    service = TransactionService(session, user_id=1)
    with pytest.raises(NotFoundError):
        service.get(txn.id)
    with pytest.raises(NotFoundError):
        service.delete(txn.id)


def test_keyset_pagination_walks_every_row_once(session: Session) -> None:
    days = [10, 10, 5, 20, 1, 10, 31]
    rows = [
        _add(session, str(10 + i), TransactionType.expense, "Beslenme", datetime(2025, 12, d))
        for i, d in enumerate(days)
    ]
    _add(session, "99", TransactionType.expense, "Beslenme", datetime(2025, 11, 30, 23, 59))
    _add(session, "99", TransactionType.expense, "Beslenme", datetime(2026, 1, 1))
    _add(session, "99", TransactionType.expense, "Beslenme", datetime(2025, 12, 15), user_id=2)

    expected = [t.id for t in sorted(rows, key=lambda t: (t.date, t.id), reverse=True)]

    service = TransactionService(session, user_id=1)
    seen: list[str] = []
    cursor = None
    pages = 0
    while True:
        page = service.list_page(DECEMBER, limit=2, cursor=cursor)
        seen.extend(t.id for t in page.items)
        pages += 1
        if page.next_cursor is None:
            break
        cursor = decode_tx_cursor(page.next_cursor)
        assert cursor is not None

    assert seen == expected
    assert pages == 4


def test_exact_page_size_has_no_next_cursor(session: Session) -> None:
    for d in (1, 2):
        _add(session, "5", TransactionType.income, "Harçlık", datetime(2025, 12, d))
    page = TransactionService(session, user_id=1).list_page(DECEMBER, limit=2)
    assert len(page.items) == 2
    assert page.next_cursor is None


def test_list_filters(session: Session) -> None:
    _add(session, "100", TransactionType.income, "Harçlık", datetime(2025, 12, 1))
    _add(session, "20", TransactionType.expense, "Okul", datetime(2025, 12, 2))
    _add(session, "30", TransactionType.expense, "Ulaşım", datetime(2025, 12, 3))
    service = TransactionService(session, user_id=1)

    page = service.list_page(
        DECEMBER, filters=TransactionFilters(type=TransactionType.expense)
    )
    assert {t.category for t in page.items} == {"Okul", "Ulaşım"}

    page = service.list_page(DECEMBER, filters=TransactionFilters(category="Okul"))
    assert [t.category for t in page.items] == ["Okul"]


def test_monthly_summary_sums_in_range(session: Session) -> None:
    _add(session, "1000", TransactionType.income, "KYK/Burs", datetime(2025, 12, 1))
    _add(session, "250.25", TransactionType.expense, "Okul", datetime(2025, 12, 2))
    _add(session, "49.75", TransactionType.expense, "Okul", datetime(2025, 12, 31, 23, 59))
    _add(session, "500", TransactionType.expense, "Okul", datetime(2026, 1, 1))

    summary = TransactionService(session, user_id=1).monthly_summary(DECEMBER)
    assert summary.income_total == pytest.approx(1000)
    assert summary.expense_total == pytest.approx(300)
    assert summary.net_total == pytest.approx(700)


def test_profile_partial_update(session: Session) -> None:
    service = ProfileService(session, user_id=1)
    profile = service.get_or_create()
    assert profile.monthly_budget_goal is None

    service.update(ProfileUpdate(full_name="Deniz", monthly_budget_goal="4500"))
    profile = service.update(ProfileUpdate(monthly_fixed_expenses="0"))
    assert profile.full_name == "Deniz"
    assert profile.monthly_budget_goal == Decimal("4500.00")
    assert profile.monthly_fixed_expenses == Decimal("0.00")


def test_fixed_expense_crud_and_total(session: Session) -> None:
    service = FixedExpenseService(session, user_id=1)
    assert service.planned_total() == 0

    rent = service.create(FixedExpenseIn(name=" Kira ", amount="1500"))
    service.create(FixedExpenseIn(name="Telefon", amount="250,50"))
    assert rent.name == "Kira"
    assert service.planned_total() == pytest.approx(1750.5)

    service.update(rent.id, FixedExpenseIn(name="Kira", amount="1600"))
    assert service.planned_total() == pytest.approx(1850.5)

    service.delete(rent.id)
    assert [item.name for item in service.list_all()] == ["Telefon"]
    with pytest.raises(NotFoundError):
        service.get(rent.id)


def test_dashboard_uses_budget_goal_without_income(session: Session) -> None:
    ProfileService(session, user_id=1).update(
        ProfileUpdate(monthly_budget_goal="5000", monthly_fixed_expenses="2000")
    )
    _add(session, "800", TransactionType.expense, "Sabitler", datetime(2025, 12, 2))
    _add(session, "400", TransactionType.expense, "Sosyal/Keyif", datetime(2025, 12, 5))
    _add(session, "900", TransactionType.expense, "Sosyal/Keyif", datetime(2025, 11, 5))

    overview = DashboardService(session, user_id=1).overview(DECEMBER, now=NOW)

    assert overview["month"] == "2025-12"
    assert overview["needs_onboarding"] is False
    assert overview["total_money"] == 5000
    assert overview["summary"]["expense_total"] == 1200
    smart = overview["smart_balance"]
    assert smart["remaining_days_in_month"] == 11
    assert smart["current_balance"] == 3800
    assert smart["remaining_fixed_expenses"] == 1200
    assert smart["today_spendable_limit"] == pytest.approx(2600 / 11)
    assert [s["category"] for s in overview["expense_breakdown"]["slices"]] == [
        "Sabitler",
        "Sosyal/Keyif",
    ]
    assert overview["reality_check"].startswith("Harcamalarının %67'i Sabitler")
    assert overview["gradient"].startswith("conic-gradient(#a855f7 0deg 240deg")


def test_dashboard_falls_back_to_fixed_expense_rows(session: Session) -> None:
    FixedExpenseService(session, user_id=1).create(FixedExpenseIn(name="Kira", amount="300"))
    _add(session, "1000", TransactionType.income, "Harçlık", datetime(2025, 12, 1))

    overview = DashboardService(session, user_id=1).overview(DECEMBER, now=NOW)

    assert overview["needs_onboarding"] is True
    assert overview["total_money"] == 1000
    assert overview["smart_balance"]["remaining_fixed_expenses"] == 300
    assert overview["reality_check"] == "Bu ay henüz gider yok."


def test_purge_drops_only_expired_buckets(session: Session) -> None:
    session.add_all(
        [
            RateLimitBucket(key="old", window_started_at=datetime(2025, 12, 21, 11, 0), count=3),
            RateLimitBucket(key="fresh", window_started_at=datetime(2025, 12, 21, 11, 55), count=1),
        ]
    )
    session.commit()

    removed = purge_expired_rate_limit_buckets(session, NOW, max_window_seconds=600)

    assert removed == 1
    assert session.scalars(select(RateLimitBucket.key)).all() == ["fresh"]


def _payment(session: Session, amount: str, due: date, is_paid: bool = False) -> Payment:
    item = Payment(
        user_id=1, name="Fatura", amount=Decimal(amount), due_date=due, is_paid=is_paid
    )
    session.add(item)
    session.commit()
    return item


def test_upcoming_payments_keep_overdue_unpaid_rows(session: Session) -> None:
    today = NOW.date()
    overdue = _payment(session, "40", date(2025, 12, 1))
    _payment(session, "60", date(2025, 12, 2), is_paid=True)
    later = _payment(session, "100", date(2025, 12, 28))
    paid_later = _payment(session, "30", date(2025, 12, 30), is_paid=True)

    service = PaymentService(session, user_id=1)
    upcoming = service.list_upcoming(today)
    assert [p.id for p in upcoming] == [overdue.id, later.id, paid_later.id]
    assert service.unpaid_total(today) == 100.0


def test_marking_paid_sets_and_clears_paid_at(session: Session) -> None:
    item = _payment(session, "40", date(2025, 12, 28))
    service = PaymentService(session, user_id=1)

    paid = service.update(item.id, PaymentUpdate(is_paid=True), now=NOW)
    assert paid.paid_at == datetime(2025, 12, 21, 12, 0)

    unpaid = service.update(item.id, PaymentUpdate(is_paid=False), now=NOW)
    assert unpaid.is_paid is False
    assert unpaid.paid_at is None

    with pytest.raises(NotFoundError):
        PaymentService(session, user_id=2).get(item.id)


def test_payment_analysis_uses_month_balance_and_spending_rate(session: Session) -> None:
    _add(session, "2000", TransactionType.income, "Harçlık", datetime(2025, 12, 1))
    _add(session, "1050", TransactionType.expense, "Beslenme", datetime(2025, 12, 5))
    _add(session, "999", TransactionType.expense, "Okul", datetime(2025, 11, 30))
    _payment(session, "900", date(2025, 12, 23))

    overview = PaymentService(session, user_id=1).analysis(now=NOW)

    # Balance 950, spending 50 a day for two days.
    [analysis] = overview.analyses
    assert analysis.days_until_due == 2
    assert analysis.projected_balance_on_due_date == pytest.approx(850)
    assert overview.overall_warning_level.value == "high"
    assert overview.total_amount_due == 900


def test_subscription_totals_and_renewals(session: Session) -> None:
    service = SubscriptionService(session, user_id=1)
    music = service.create(
        SubscriptionIn(name="Müzik", amount="60", next_renewal_date="2025-12-24")
    )
    service.create(
        SubscriptionIn(
            name="Bulut",
            amount="240",
            billing_cycle="yearly",
            next_renewal_date="2025-12-22",
            is_active=False,
        )
    )
    service.create(
        SubscriptionIn(
            name="Oyun",
            amount="120",
            billing_cycle="yearly",
            next_renewal_date="2026-02-01",
        )
    )

    assert service.monthly_total() == pytest.approx(70)
    assert [s.id for s in service.upcoming_renewals(NOW.date())] == [music.id]
    assert service.upcoming_renewals(NOW.date(), days_ahead=2) == []


def test_wallet_default_is_unique(session: Session) -> None:
    service = WalletService(session, user_id=1)
    first = service.create(WalletIn(name="Nakit", is_default=True))
    second = service.create(WalletIn(name="Kart", is_default=True))
    session.refresh(first)

    assert first.is_default is False
    assert second.is_default is True
    assert [w.name for w in service.list_all()] == ["Kart", "Nakit"]


def test_wallet_transfer_moves_balance_in_one_commit(session: Session) -> None:
    service = WalletService(session, user_id=1)
    cash = service.create(WalletIn(name="Nakit", balance="100"))
    card = service.create(WalletIn(name="Kart"))

    source, target = service.transfer(
        WalletTransferIn(from_wallet_id=cash.id, to_wallet_id=card.id, amount="40.25")
    )
    assert source.balance == Decimal("59.75")
    assert target.balance == Decimal("40.25")

    with pytest.raises(ConflictError, match="Insufficient balance"):
        service.transfer(
            WalletTransferIn(from_wallet_id=cash.id, to_wallet_id=card.id, amount="60")
        )
    session.refresh(cash)
    assert cash.balance == Decimal("59.75")

    with pytest.raises(ConflictError):
        service.delete(cash.id)
