import json
import logging
import platform
import time
from typing import Optional
from urllib.parse import urlsplit

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from categories import EXPENSE_CATEGORIES, INCOME_CATEGORIES, OTHER_CATEGORY
from config import get_settings
from csrf import get_expected_origin, is_same_origin_request
from csv_utils import export_transactions
from cursor import decode_tx_cursor
from database import SessionLocal
from http_helpers import (
    ApiError,
    bad_request,
    conflict,
    forbidden,
    internal_error,
    invalid_payload,
    json_ok,
    no_store,
    not_found,
    read_json_body,
    request_id_for,
    weak_etag,
)
from models import TransactionType
from periods import month_range_utc, month_range_utc_strict, utcnow
from rate_limit import (
    RATE_LIMIT_POLICIES,
    RateLimitCounter,
    RateLimitScope,
    build_rate_limit_key,
    enforce_rate_limit,
    get_client_ip,
    get_rate_limit_counter,
)
from scheduler import SchedulerManager
from schemas import (
    FixedExpenseIn,
    PaymentIn,
    PaymentUpdate,
    ProfileUpdate,
    SubscriptionIn,
    SubscriptionUpdate,
    TransactionIn,
    TransactionUpdate,
    WalletIn,
    WalletTransferIn,
    WalletUpdate,
    field_errors,
    fixed_expense_to_dict,
    payment_to_dict,
    profile_to_dict,
    subscription_to_dict,
    transaction_to_dict,
    wallet_to_dict,
)
from services import (
    ConflictError,
    DashboardService,
    FixedExpenseService,
    NotFoundError,
    PaymentService,
    ProfileService,
    SubscriptionService,
    TransactionFilters,
    TransactionService,
    WalletService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 200
SERVICE_NAME = "budget"
PROCESS_STARTED_AT = time.monotonic()

app = FastAPI(title="Budget Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_counter() -> RateLimitCounter:
    return get_rate_limit_counter()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return exc.to_response()


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    request_id = request_id_for(request)
    issues: dict[str, list[str]] = {}
    for error in exc.errors():
        key = ".".join(str(part) for part in error.get("loc", ())) or "_root"
        issues.setdefault(key, []).append(error.get("msg", "Invalid value"))
    return invalid_payload(request_id, issues).to_response()


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    request_id = request_id_for(request)
    logger.error(
        f"db.query_failed request_id={request_id} path={request.url.path} "
        f"error={type(exc).__name__}"
    )
    return internal_error(request_id).to_response()


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    request_id = request_id_for(request)
    logger.exception(
        f"request.unhandled request_id={request_id} path={request.url.path} "
        f"error={type(exc).__name__}"
    )
    return internal_error(request_id).to_response()


def _site_origin(site_url: Optional[str]) -> Optional[str]:
    if not site_url:
        return None
    parts = urlsplit(site_url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def require_same_origin(request: Request, request_id: str, action: str) -> None:
    settings = get_settings()
    expected_origin = get_expected_origin(request.headers) or _site_origin(
        settings.site_url
    )
    if not expected_origin or not is_same_origin_request(
        request.headers,
        expected_origin,
        allowed_origins=settings.allowed_origins,
        allow_same_site=settings.allow_same_site,
    ):
        logger.warning(
            f"csrf.blocked request_id={request_id} action={action} "
            f"expected_origin={expected_origin} "
            f"origin={request.headers.get('origin')} "
            f"referer={request.headers.get('referer')} "
            f"sec_fetch_site={request.headers.get('sec-fetch-site')}"
        )
        raise forbidden(request_id)


def apply_rate_limit(
    request: Request,
    scope: RateLimitScope,
    request_id: str,
    counter: RateLimitCounter,
) -> None:
    user_id = get_current_user_id()
    key = build_rate_limit_key(scope, get_client_ip(request.headers), user_id)
    enforce_rate_limit(
        key,
        RATE_LIMIT_POLICIES[scope],
        request_id,
        {"route": request.url.path, "user_id": user_id},
        counter=counter,
    )


def parse_payload(model, data: object, request_id: str):
    try:
        return model.model_validate(data if data is not None else {})
    except ValidationError as exc:
        raise invalid_payload(request_id, field_errors(exc)) from exc


async def guarded_payload(
    request: Request,
    model,
    scope: RateLimitScope,
    counter: RateLimitCounter,
    action: str,
):
    """Origin guard, body parsing, validation and rate limit, in that order."""
    request_id = request_id_for(request)
    require_same_origin(request, request_id, action)
    data = parse_payload(model, await read_json_body(request, request_id), request_id)
    apply_rate_limit(request, scope, request_id, counter)
    return request_id, data


def _format_uptime(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    minutes, rem_seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {rem_seconds}s" if rem_seconds else f"{minutes}m"
    hours, rem_minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {rem_minutes}m" if rem_minutes else f"{hours}h"
    days, rem_hours = divmod(hours, 24)
    return f"{days}d {rem_hours}h" if rem_hours else f"{days}d"


@app.get("/api/health")
def health(request: Request):
    request_id = request_id_for(request)
    settings = get_settings()
    stable = {
        "ok": True,
        "service": SERVICE_NAME,
        "build": {
            "version": settings.app_version,
            "environment": settings.environment,
        },
        "runtime": {
            "python_version": platform.python_version(),
            "platform": platform.system().lower(),
            "arch": platform.machine(),
        },
    }
    etag = weak_etag(json.dumps(stable, sort_keys=True))
    cache_control = "public, max-age=0, s-maxage=60, stale-while-revalidate=300"

    if request.headers.get("if-none-match") == etag:
        response = Response(status_code=304)
    else:
        uptime_seconds = int(time.monotonic() - PROCESS_STARTED_AT)
        body = dict(stable)
        body["timestamp"] = utcnow().isoformat().replace("+00:00", "Z")
        body["uptime"] = {
            "seconds": uptime_seconds,
            "formatted": _format_uptime(uptime_seconds),
        }
        response = json_ok(body, request_id)
    response.headers["etag"] = etag
    response.headers["cache-control"] = cache_control
    response.headers["x-request-id"] = request_id
    return response


@app.get("/api/transactions")
def list_transactions(request: Request, db: Session = Depends(get_db)):
    request_id = request_id_for(request)
    params = request.query_params

    month_param = params.get("month")
    month = month_range_utc_strict(month_param) if month_param else month_range_utc()
    if month is None:
        raise bad_request(request_id, "Invalid month")

    limit_param = params.get("limit")
    try:
        limit = DEFAULT_PAGE_LIMIT if limit_param is None else int(limit_param)
    except ValueError as exc:
        raise bad_request(request_id, "Invalid limit") from exc
    if limit < 1 or limit > MAX_PAGE_LIMIT:
        raise bad_request(request_id, "Invalid limit")

    cursor_param = params.get("cursor")
    cursor = decode_tx_cursor(cursor_param) if cursor_param else None
    if cursor_param and cursor is None:
        raise bad_request(request_id, "Invalid cursor")

    type_param = params.get("type")
    filters = TransactionFilters(
        type=TransactionType(type_param) if type_param in ("income", "expense") else None,
        category=params.get("category") or None,
    )

    service = TransactionService(db)
    page = service.list_page(month, limit=limit, cursor=cursor, filters=filters)
    summary = service.monthly_summary(month)
    return no_store(
        json_ok(
            {
                "month": month.label,
                "summary": summary.to_dict(),
                "transactions": [transaction_to_dict(t) for t in page.items],
                "next_cursor": page.next_cursor,
            },
            request_id,
        )
    )


@app.post("/api/transactions")
async def create_transaction(
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request, TransactionIn, RateLimitScope.tx_write, counter, "transactions.create"
    )
    txn = TransactionService(db).create(data)
    logger.info(f"transactions.created request_id={request_id} id={txn.id}")
    return no_store(
        json_ok({"transaction": transaction_to_dict(txn)}, request_id, status_code=201)
    )


@app.get("/api/transactions/export.csv")
def export_transactions_endpoint(request: Request, db: Session = Depends(get_db)):
    request_id = request_id_for(request)
    month_param = request.query_params.get("month")
    month = month_range_utc_strict(month_param) if month_param else month_range_utc()
    if month is None:
        raise bad_request(request_id, "Invalid month")
    transactions = TransactionService(db).all_for_range(month)
    content = export_transactions(transactions)
    return Response(
        content=content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="transactions-{month.label}.csv"',
            "x-request-id": request_id,
            "cache-control": "no-store",
        },
    )


@app.get("/api/transactions/export.json")
def export_transactions_json(request: Request, db: Session = Depends(get_db)):
    request_id = request_id_for(request)
    month_param = request.query_params.get("month")
    month = month_range_utc_strict(month_param) if month_param else month_range_utc()
    if month is None:
        raise bad_request(request_id, "Invalid month")
    transactions = TransactionService(db).all_for_range(month)
    content = json.dumps(
        [transaction_to_dict(t) for t in transactions], ensure_ascii=False, indent=2
    )
    return Response(
        content=content,
        media_type="application/json",
        headers={
            "Content-Disposition": f'attachment; filename="transactions-{month.label}.json"',
            "x-request-id": request_id,
            "cache-control": "no-store",
        },
    )


@app.patch("/api/transactions/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request,
        TransactionUpdate,
        RateLimitScope.tx_write,
        counter,
        "transactions.update",
    )
    try:
        txn = TransactionService(db).update(transaction_id, data)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    return no_store(json_ok({"transaction": transaction_to_dict(txn)}, request_id))


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id = request_id_for(request)
    require_same_origin(request, request_id, "transactions.delete")
    apply_rate_limit(request, RateLimitScope.tx_write, request_id, counter)
    try:
        TransactionService(db).delete(transaction_id)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    return no_store(json_ok({"ok": True}, request_id))


@app.get("/api/profile")
def get_profile(request: Request, db: Session = Depends(get_db)):
    request_id = request_id_for(request)
    profile = ProfileService(db).get_or_create()
    return no_store(json_ok({"profile": profile_to_dict(profile)}, request_id))


@app.patch("/api/profile")
async def update_profile(
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request, ProfileUpdate, RateLimitScope.profile_write, counter, "profile.update"
    )
    profile = ProfileService(db).update(data)
    return no_store(json_ok({"profile": profile_to_dict(profile)}, request_id))


@app.get("/api/fixed-expenses")
def list_fixed_expenses(request: Request, db: Session = Depends(get_db)):
    request_id = request_id_for(request)
    service = FixedExpenseService(db)
    items = service.list_all()
    return no_store(
        json_ok(
            {
                "fixed_expenses": [fixed_expense_to_dict(i) for i in items],
                "planned_total": service.planned_total(),
            },
            request_id,
        )
    )


@app.post("/api/fixed-expenses")
async def create_fixed_expense(
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request,
        FixedExpenseIn,
        RateLimitScope.fixed_expenses_write,
        counter,
        "fixed_expenses.create",
    )
    item = FixedExpenseService(db).create(data)
    return no_store(
        json_ok({"fixed_expense": fixed_expense_to_dict(item)}, request_id, 201)
    )


@app.patch("/api/fixed-expenses/{fixed_expense_id}")
async def update_fixed_expense(
    fixed_expense_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request,
        FixedExpenseIn,
        RateLimitScope.fixed_expenses_write,
        counter,
        "fixed_expenses.update",
    )
    try:
        item = FixedExpenseService(db).update(fixed_expense_id, data)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    return no_store(json_ok({"fixed_expense": fixed_expense_to_dict(item)}, request_id))


@app.delete("/api/fixed-expenses/{fixed_expense_id}")
def delete_fixed_expense(
    fixed_expense_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id = request_id_for(request)
    require_same_origin(request, request_id, "fixed_expenses.delete")
    apply_rate_limit(request, RateLimitScope.fixed_expenses_write, request_id, counter)
    try:
        FixedExpenseService(db).delete(fixed_expense_id)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    return no_store(json_ok({"ok": True}, request_id))


@app.get("/api/dashboard")
def dashboard(request: Request, db: Session = Depends(get_db)):
    request_id = request_id_for(request)
    now = utcnow()
    month_param = request.query_params.get("month")
    month = month_range_utc_strict(month_param) if month_param else month_range_utc(None, now)
    if month is None:
        raise bad_request(request_id, "Invalid month")
    overview = DashboardService(db).overview(month, now=now)
    return no_store(json_ok(overview, request_id))


@app.get("/api/payments")
def list_payments(request: Request, db: Session = Depends(get_db)):
    request_id = request_id_for(request)
    now = utcnow()
    today = now.date()
    service = PaymentService(db)
    payments = service.list_upcoming(today)
    return no_store(
        json_ok(
            {
                "payments": [payment_to_dict(p, today) for p in payments],
                "total_unpaid_amount": service.unpaid_total(today),
                "analysis": service.analysis(now).to_dict(),
            },
            request_id,
        )
    )


@app.post("/api/payments")
async def create_payment(
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request, PaymentIn, RateLimitScope.payments_write, counter, "payments.create"
    )
    item = PaymentService(db).create(data)
    logger.info(f"payments.created request_id={request_id} id={item.id}")
    return no_store(json_ok({"payment": payment_to_dict(item)}, request_id, 201))


@app.patch("/api/payments/{payment_id}")
async def update_payment(
    payment_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request, PaymentUpdate, RateLimitScope.payments_write, counter, "payments.update"
    )
    try:
        item = PaymentService(db).update(payment_id, data)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    return no_store(json_ok({"payment": payment_to_dict(item)}, request_id))


@app.delete("/api/payments/{payment_id}")
def delete_payment(
    payment_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id = request_id_for(request)
    require_same_origin(request, request_id, "payments.delete")
    apply_rate_limit(request, RateLimitScope.payments_write, request_id, counter)
    try:
        PaymentService(db).delete(payment_id)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    return no_store(json_ok({"ok": True}, request_id))


@app.get("/api/subscriptions")
def list_subscriptions(request: Request, db: Session = Depends(get_db)):
    request_id = request_id_for(request)
    params = request.query_params
    try:
        days_ahead = int(params.get("days_ahead", 7))
    except ValueError as exc:
        raise bad_request(request_id, "Invalid days_ahead") from exc
    if days_ahead < 0 or days_ahead > 366:
        raise bad_request(request_id, "Invalid days_ahead")

    today = utcnow().date()
    service = SubscriptionService(db)
    upcoming = []
    for item in service.upcoming_renewals(today, days_ahead):
        data = subscription_to_dict(item)
        data["days_until_renewal"] = (item.next_renewal_date - today).days
        upcoming.append(data)
    return no_store(
        json_ok(
            {
                "subscriptions": [subscription_to_dict(s) for s in service.list_all()],
                "monthly_total": service.monthly_total(),
                "upcoming_renewals": upcoming,
            },
            request_id,
        )
    )


@app.post("/api/subscriptions")
async def create_subscription(
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request,
        SubscriptionIn,
        RateLimitScope.subscriptions_write,
        counter,
        "subscriptions.create",
    )
    item = SubscriptionService(db).create(data)
    return no_store(
        json_ok({"subscription": subscription_to_dict(item)}, request_id, 201)
    )


@app.patch("/api/subscriptions/{subscription_id}")
async def update_subscription(
    subscription_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request,
        SubscriptionUpdate,
        RateLimitScope.subscriptions_write,
        counter,
        "subscriptions.update",
    )
    try:
        item = SubscriptionService(db).update(subscription_id, data)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    return no_store(json_ok({"subscription": subscription_to_dict(item)}, request_id))


@app.delete("/api/subscriptions/{subscription_id}")
def delete_subscription(
    subscription_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id = request_id_for(request)
    require_same_origin(request, request_id, "subscriptions.delete")
    apply_rate_limit(request, RateLimitScope.subscriptions_write, request_id, counter)
    try:
        SubscriptionService(db).delete(subscription_id)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    return no_store(json_ok({"ok": True}, request_id))


@app.get("/api/wallets")
def list_wallets(request: Request, db: Session = Depends(get_db)):
    request_id = request_id_for(request)
    wallets = WalletService(db).list_all()
    return no_store(
        json_ok({"wallets": [wallet_to_dict(w) for w in wallets]}, request_id)
    )


@app.post("/api/wallets")
async def create_wallet(
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request, WalletIn, RateLimitScope.wallets_write, counter, "wallets.create"
    )
    wallet = WalletService(db).create(data)
    return no_store(json_ok({"wallet": wallet_to_dict(wallet)}, request_id, 201))


@app.post("/api/wallets/transfer")
async def transfer_between_wallets(
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request,
        WalletTransferIn,
        RateLimitScope.wallets_write,
        counter,
        "wallets.transfer",
    )
    try:
        source, target = WalletService(db).transfer(data)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    except ConflictError as exc:
        raise conflict(request_id, str(exc)) from exc
    logger.info(
        f"wallets.transferred request_id={request_id} "
        f"from={source.id} to={target.id}"
    )
    return no_store(
        json_ok(
            {"from_wallet": wallet_to_dict(source), "to_wallet": wallet_to_dict(target)},
            request_id,
        )
    )


@app.patch("/api/wallets/{wallet_id}")
async def update_wallet(
    wallet_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id, data = await guarded_payload(
        request, WalletUpdate, RateLimitScope.wallets_write, counter, "wallets.update"
    )
    try:
        wallet = WalletService(db).update(wallet_id, data)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    return no_store(json_ok({"wallet": wallet_to_dict(wallet)}, request_id))


@app.delete("/api/wallets/{wallet_id}")
def delete_wallet(
    wallet_id: str,
    request: Request,
    db: Session = Depends(get_db),
    counter: RateLimitCounter = Depends(get_counter),
):
    request_id = request_id_for(request)
    require_same_origin(request, request_id, "wallets.delete")
    apply_rate_limit(request, RateLimitScope.wallets_write, request_id, counter)
    try:
        WalletService(db).delete(wallet_id)
    except NotFoundError as exc:
        raise not_found(request_id, str(exc)) from exc
    except ConflictError as exc:
        raise conflict(request_id, str(exc)) from exc
    return no_store(json_ok({"ok": True}, request_id))


@app.get("/api/categories")
def list_categories(request: Request):
    request_id = request_id_for(request)
    return json_ok(
        {
            "income": list(INCOME_CATEGORIES),
            "expense": list(EXPENSE_CATEGORIES),
            "other": OTHER_CATEGORY,
        },
        request_id,
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
