import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import lru_cache
from typing import Callable, Mapping, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from database import is_missing_object_error
from http_helpers import too_many_requests
from models import RateLimitBucket

logger = logging.getLogger(__name__)

KEY_NAMESPACE = "budget"
MAX_KEY_LENGTH = 200


class RateLimitScope(str, Enum):
    auth_login = "auth.login"
    auth_register = "auth.register"
    auth_resend = "auth.resend"
    tx_write = "tx.write"
    profile_write = "profile.write"
    fixed_expenses_write = "fixed_expenses.write"
    payments_write = "payments.write"
    subscriptions_write = "subscriptions.write"
    wallets_write = "wallets.write"


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int
    # Allow the request when the counter itself is broken.
    fail_open: bool = True


RATE_LIMIT_POLICIES: dict[RateLimitScope, RateLimitPolicy] = {
    RateLimitScope.auth_login: RateLimitPolicy(limit=10, window_seconds=60),
    RateLimitScope.auth_register: RateLimitPolicy(limit=5, window_seconds=600),
    RateLimitScope.auth_resend: RateLimitPolicy(limit=5, window_seconds=600),
    RateLimitScope.tx_write: RateLimitPolicy(limit=60, window_seconds=60),
    RateLimitScope.profile_write: RateLimitPolicy(limit=20, window_seconds=60),
    RateLimitScope.fixed_expenses_write: RateLimitPolicy(limit=30, window_seconds=60),
    RateLimitScope.payments_write: RateLimitPolicy(limit=30, window_seconds=60),
    RateLimitScope.subscriptions_write: RateLimitPolicy(limit=30, window_seconds=60),
    RateLimitScope.wallets_write: RateLimitPolicy(limit=30, window_seconds=60),
}


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    retry_after_seconds: Optional[int] = None


class RateLimitBackendMissing(RuntimeError):
    """The counting table or function is not installed."""


class RateLimitCounter(Protocol):
    def increment_and_check(self, key: str, limit: int, window_seconds: int) -> bool:
        """Count one hit for ``key``; True while the window is under ``limit``."""


class LogOnce:
    """Thread-safe gate that opens once per name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: set[str] = set()

    def first(self, name: str) -> bool:
        with self._lock:
            if name in self._seen:
                return False
            self._seen.add(name)
            return True

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()


missing_backend_notice = LogOnce()


class DatabaseRateLimitCounter:
    """Fixed-window counter stored as one row per key."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def increment_and_check(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self.clock()
        session = self.session_factory()
        try:
            bucket = session.get(RateLimitBucket, key, with_for_update=True)
            if bucket is None:
                bucket = RateLimitBucket(key=key, window_started_at=now, count=0)
                session.add(bucket)
            elif bucket.window_started_at + timedelta(seconds=window_seconds) <= now:
                bucket.window_started_at = now
                bucket.count = 0
            bucket.count += 1
            count = bucket.count
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            if is_missing_object_error(exc):
                raise RateLimitBackendMissing(str(exc)) from exc
            raise
        finally:
            session.close()
        return count <= limit


class PostgresFunctionRateLimitCounter:
    """Delegates to ``check_rate_limit(p_key, p_limit, p_window_seconds)``."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def increment_and_check(self, key: str, limit: int, window_seconds: int) -> bool:
        session = self.session_factory()
        try:
            allowed = session.execute(
                select(func.check_rate_limit(key, limit, window_seconds))
            ).scalar_one()
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            if is_missing_object_error(exc):
                raise RateLimitBackendMissing(str(exc)) from exc
            raise
        finally:
            session.close()
        return bool(allowed)


class UnavailableRateLimitCounter:
    """Stands in for a backend that cannot be built; every check reports it missing."""

    def __init__(self, reason: str) -> None:
        self.reason = reason

    def increment_and_check(self, key: str, limit: int, window_seconds: int) -> bool:
        raise RateLimitBackendMissing(self.reason)


SUPPORTED_BACKENDS = ("table", "postgres_function")


@lru_cache(maxsize=1)
def get_rate_limit_counter() -> RateLimitCounter:
    from database import SessionLocal

    backend = get_settings().rate_limit_backend
    if backend == "postgres_function":
        return PostgresFunctionRateLimitCounter(SessionLocal)
    if backend == "table":
        return DatabaseRateLimitCounter(SessionLocal)
    return UnavailableRateLimitCounter(
        f"Unsupported rate limit backend: {backend} (expected one of "
        f"{', '.join(SUPPORTED_BACKENDS)})"
    )


def get_client_ip(headers: Mapping[str, str]) -> Optional[str]:
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip() or None

    return None


def build_rate_limit_key(
    scope: RateLimitScope,
    ip: Optional[str],
    user_id: Optional[object] = None,
) -> str:
    # Predictable, low-cardinality and free of secrets.
    parts = [KEY_NAMESPACE, "rl", RateLimitScope(scope).value]
    if user_id is not None and user_id != "":
        parts.append(f"u:{user_id}")
    if ip:
        parts.append(f"ip:{ip}")
    return "|".join(parts)[:MAX_KEY_LENGTH]


def _describe(context: Optional[Mapping[str, object]]) -> str:
    if not context:
        return ""
    return "".join(f" {k}={v}" for k, v in context.items())


def check_rate_limit(
    key: str,
    policy: RateLimitPolicy,
    request_id: str,
    context: Optional[Mapping[str, object]] = None,
    counter: Optional[RateLimitCounter] = None,
    notice: Optional[LogOnce] = None,
) -> RateLimitResult:
    counter = counter or get_rate_limit_counter()
    notice = notice or missing_backend_notice
    ctx = _describe(context)
    infra_result = (
        RateLimitResult(ok=True)
        if policy.fail_open
        else RateLimitResult(ok=False, retry_after_seconds=policy.window_seconds)
    )
    mode = "fail-open" if policy.fail_open else "fail-closed"

    try:
        allowed = counter.increment_and_check(key, policy.limit, policy.window_seconds)
    except RateLimitBackendMissing as exc:
        if notice.first("rate_limit.backend_missing"):
            logger.error(
                f"rate_limit.backend_missing ({mode}) request_id={request_id} error={exc}"
            )
        return infra_result
    except Exception as exc:
        logger.error(
            f"rate_limit.check_failed ({mode}) request_id={request_id} "
            f"error={type(exc).__name__}: {exc}{ctx}"
        )
        return infra_result

    if not allowed:
        logger.warning(f"rate_limit.blocked request_id={request_id} key={key}{ctx}")
        return RateLimitResult(ok=False, retry_after_seconds=policy.window_seconds)

    return RateLimitResult(ok=True)


def enforce_rate_limit(
    key: str,
    policy: RateLimitPolicy,
    request_id: str,
    context: Optional[Mapping[str, object]] = None,
    counter: Optional[RateLimitCounter] = None,
) -> None:
    """Raise a 429 ``ApiError`` when the key is over its limit."""
    result = check_rate_limit(key, policy, request_id, context, counter=counter)
    if not result.ok:
        raise too_many_requests(request_id, result.retry_after_seconds)
