import datetime as dt
import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Optional
from urllib.parse import urlsplit

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from models import (
    BillingCycle,
    FixedExpense,
    Payment,
    Profile,
    Subscription,
    Transaction,
    TransactionType,
    Wallet,
)
from money import parse_amount, to_finite_number
from periods import utcnow


def _positive_amount(value: object) -> Decimal:
    amount = parse_amount(value)
    if amount <= 0:
        raise ValueError("Amount must be positive")
    return amount


def _date_only(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) != 10:
        raise ValueError("Date must be YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError("Date must be YYYY-MM-DD") from exc


def date_to_utc_instant(value: date) -> datetime:
    """Date-only input is stored as midnight UTC."""
    return datetime.combine(value, time.min)


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=40)
    date: date
    description: Optional[str] = Field(default=None, max_length=200)

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: object) -> Decimal:
        return _positive_amount(value)

    @field_validator("date", mode="before")
    @classmethod
    def _check_date(cls, value: object) -> date:
        return _date_only(value)

    @field_validator("category", mode="before")
    @classmethod
    def _strip_category(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Optional[Decimal] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=40)
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=200)

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: object) -> object:
        return None if value is None else _positive_amount(value)

    @field_validator("date", mode="before")
    @classmethod
    def _check_date(cls, value: object) -> object:
        return None if value is None else _date_only(value)

    @field_validator("category", mode="before")
    @classmethod
    def _strip_category(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _require_fields(self) -> "TransactionUpdate":
        if not self.model_fields_set:
            raise ValueError("No fields to update")
        return self


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(default=None, max_length=100)
    monthly_budget_goal: Optional[Decimal] = None
    monthly_fixed_expenses: Optional[Decimal] = None

    @field_validator("monthly_budget_goal", mode="before")
    @classmethod
    def _check_goal(cls, value: object) -> object:
        if value is None or value == "":
            return None
        return _positive_amount(value)

    @field_validator("monthly_fixed_expenses", mode="before")
    @classmethod
    def _check_fixed(cls, value: object) -> object:
        if value is None or value == "":
            return None
        amount = parse_amount(value)
        if amount < 0:
            raise ValueError("Amount must not be negative")
        return amount

    @model_validator(mode="after")
    def _require_fields(self) -> "ProfileUpdate":
        if not self.model_fields_set:
            raise ValueError("No fields to update")
        return self


class FixedExpenseIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: object) -> Decimal:
        return _positive_amount(value)


def _strip(value: object) -> object:
    return value.strip() if isinstance(value, str) else value


def _not_negative(value: object) -> Decimal:
    amount = parse_amount(value)
    if amount < 0:
        raise ValueError("Balance must not be negative")
    return amount


class PaymentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal
    due_date: date

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: object) -> object:
        return _strip(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: object) -> Decimal:
        return _positive_amount(value)

    @field_validator("due_date", mode="before")
    @classmethod
    def _check_due_date(cls, value: object) -> date:
        due_date = _date_only(value)
        if due_date < utcnow().date():
            raise ValueError("Due date cannot be in the past")
        return due_date


class PaymentUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[Decimal] = None
    due_date: Optional[date] = None
    is_paid: Optional[bool] = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: object) -> object:
        return _strip(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: object) -> object:
        return None if value is None else _positive_amount(value)

    @field_validator("due_date", mode="before")
    @classmethod
    def _check_due_date(cls, value: object) -> object:
        return None if value is None else _date_only(value)

    @model_validator(mode="after")
    def _require_fields(self) -> "PaymentUpdate":
        if not self.model_fields_set:
            raise ValueError("No fields to update")
        return self


def _icon_url(value: object) -> object:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError("Invalid URL")
    parts = urlsplit(value.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError("Invalid URL")
    return value.strip()


class SubscriptionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal
    currency: str = Field(default="TL", min_length=1, max_length=10)
    billing_cycle: BillingCycle = BillingCycle.monthly
    next_renewal_date: date
    icon_url: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = True

    @field_validator("name", "currency", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        return _strip(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: object) -> Decimal:
        return _positive_amount(value)

    @field_validator("next_renewal_date", mode="before")
    @classmethod
    def _check_renewal(cls, value: object) -> date:
        return _date_only(value)

    @field_validator("icon_url", mode="before")
    @classmethod
    def _check_icon(cls, value: object) -> object:
        return _icon_url(value)


class SubscriptionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(default=None, min_length=1, max_length=10)
    billing_cycle: Optional[BillingCycle] = None
    next_renewal_date: Optional[date] = None
    icon_url: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None

    @field_validator("name", "currency", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        return _strip(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: object) -> object:
        return None if value is None else _positive_amount(value)

    @field_validator("next_renewal_date", mode="before")
    @classmethod
    def _check_renewal(cls, value: object) -> object:
        return None if value is None else _date_only(value)

    @field_validator("icon_url", mode="before")
    @classmethod
    def _check_icon(cls, value: object) -> object:
        return _icon_url(value)

    @model_validator(mode="after")
    def _require_fields(self) -> "SubscriptionUpdate":
        if not self.model_fields_set:
            raise ValueError("No fields to update")
        return self


class WalletIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=50)
    balance: Decimal = Decimal("0")
    is_default: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: object) -> object:
        return _strip(value)

    @field_validator("balance", mode="before")
    @classmethod
    def _check_balance(cls, value: object) -> Decimal:
        return _not_negative(value)


class WalletUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    balance: Optional[Decimal] = None
    is_default: Optional[bool] = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: object) -> object:
        return _strip(value)

    @field_validator("balance", mode="before")
    @classmethod
    def _check_balance(cls, value: object) -> object:
        return None if value is None else _not_negative(value)

    @model_validator(mode="after")
    def _require_fields(self) -> "WalletUpdate":
        if not self.model_fields_set:
            raise ValueError("No fields to update")
        return self


class WalletTransferIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    from_wallet_id: str = Field(..., min_length=1)
    to_wallet_id: str = Field(..., min_length=1)
    amount: Decimal

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: object) -> Decimal:
        return _positive_amount(value)

    @model_validator(mode="after")
    def _distinct_wallets(self) -> "WalletTransferIn":
        if self.from_wallet_id == self.to_wallet_id:
            raise ValueError("Cannot transfer to the same wallet")
        return self


class TxCursor(BaseModel):
    """Keyset position: the last row of the previous page."""

    id: str
    date: str = Field(..., min_length=1)

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        # Ids are compared as strings, so only the canonical form is accepted.
        if str(uuid.UUID(value)) != value:
            raise ValueError("Cursor id must be a canonical UUID")
        return value

    @field_validator("date")
    @classmethod
    def _check_date(cls, value: str) -> str:
        parse_cursor_date(value)
        return value


def parse_cursor_date(value: str) -> datetime:
    """Parse an ISO date or datetime into a naive UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        try:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        except OverflowError as exc:
            raise ValueError("Date out of range") from exc
    return parsed


def field_errors(exc: ValidationError) -> dict[str, list[str]]:
    """Flatten pydantic errors into ``{field: [messages]}``."""
    issues: dict[str, list[str]] = {}
    for error in exc.errors():
        loc = error.get("loc") or ()
        key = ".".join(str(part) for part in loc) or "_root"
        message = error.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        issues.setdefault(key, []).append(message)
    return issues


def _instant(value: datetime) -> str:
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "amount": to_finite_number(txn.amount) or 0.0,
        "type": txn.type.value,
        "category": txn.category,
        "date": _instant(txn.date),
        "description": txn.description,
    }


def profile_to_dict(profile: Profile) -> dict[str, object]:
    return {
        "user_id": profile.user_id,
        "full_name": profile.full_name,
        "monthly_budget_goal": to_finite_number(profile.monthly_budget_goal),
        "monthly_fixed_expenses": to_finite_number(profile.monthly_fixed_expenses),
    }


def fixed_expense_to_dict(item: FixedExpense) -> dict[str, object]:
    return {
        "id": item.id,
        "name": item.name,
        "amount": to_finite_number(item.amount) or 0.0,
        "created_at": _instant(item.created_at),
    }


def payment_to_dict(item: Payment, today: Optional[date] = None) -> dict[str, object]:
    today = today or utcnow().date()
    return {
        "id": item.id,
        "name": item.name,
        "amount": to_finite_number(item.amount) or 0.0,
        "due_date": item.due_date.isoformat(),
        "days_until_due": (item.due_date - today).days,
        "is_paid": item.is_paid,
        "paid_at": _instant(item.paid_at) if item.paid_at else None,
    }


def subscription_to_dict(item: Subscription) -> dict[str, object]:
    return {
        "id": item.id,
        "name": item.name,
        "amount": to_finite_number(item.amount) or 0.0,
        "currency": item.currency,
        "billing_cycle": item.billing_cycle.value,
        "next_renewal_date": item.next_renewal_date.isoformat(),
        "icon_url": item.icon_url,
        "is_active": item.is_active,
    }


def wallet_to_dict(wallet: Wallet) -> dict[str, object]:
    return {
        "id": wallet.id,
        "name": wallet.name,
        "balance": to_finite_number(wallet.balance) or 0.0,
        "is_default": wallet.is_default,
    }
