import base64
import hashlib
import json
import uuid
from enum import Enum
from typing import Mapping, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response

MAX_REQUEST_ID_LENGTH = 128
DEFAULT_MAX_BODY_BYTES = 32 * 1024


class ApiErrorCode(str, Enum):
    unauthorized = "UNAUTHORIZED"
    forbidden = "FORBIDDEN"
    bad_request = "BAD_REQUEST"
    validation_error = "VALIDATION_ERROR"
    not_found = "NOT_FOUND"
    conflict = "CONFLICT"
    unsupported_media_type = "UNSUPPORTED_MEDIA_TYPE"
    payload_too_large = "PAYLOAD_TOO_LARGE"
    rate_limited = "RATE_LIMITED"
    internal_error = "INTERNAL_ERROR"


class ApiError(Exception):
    """Raised from route code; rendered as the JSON error envelope."""

    def __init__(
        self,
        status_code: int,
        code: ApiErrorCode,
        message: str,
        request_id: str,
        issues: Optional[dict[str, list[str]]] = None,
        retry_after_seconds: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.request_id = request_id
        self.issues = issues
        self.retry_after_seconds = retry_after_seconds

    def body(self) -> dict[str, object]:
        body: dict[str, object] = {
            "message": self.message,
            "code": self.code.value,
            "requestId": self.request_id,
        }
        if self.issues is not None:
            body["issues"] = self.issues
        return body

    def to_response(self) -> JSONResponse:
        response = json_error(self.status_code, self.body())
        if self.retry_after_seconds and self.retry_after_seconds > 0:
            response.headers["retry-after"] = str(int(self.retry_after_seconds))
        return response


def get_request_id(headers: Mapping[str, str]) -> str:
    existing = headers.get("x-request-id")
    if existing and len(existing) <= MAX_REQUEST_ID_LENGTH:
        return existing
    return str(uuid.uuid4())


def request_id_for(request: Request) -> str:
    """Correlation id, computed once per request."""
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        request_id = get_request_id(request.headers)
        request.state.request_id = request_id
    return request_id


def json_ok(data: object, request_id: str, status_code: int = 200) -> JSONResponse:
    response = JSONResponse(data, status_code=status_code)
    response.headers["x-request-id"] = request_id
    return response


def json_error(status_code: int, body: dict[str, object]) -> JSONResponse:
    response = JSONResponse(body, status_code=status_code)
    response.headers["x-request-id"] = str(body["requestId"])
    return response


def no_store(response: Response) -> Response:
    response.headers["cache-control"] = "no-store"
    return response


def forbidden(request_id: str) -> ApiError:
    return ApiError(403, ApiErrorCode.forbidden, "Forbidden", request_id)


def bad_request(request_id: str, message: str = "Bad request") -> ApiError:
    return ApiError(400, ApiErrorCode.bad_request, message, request_id)


def not_found(request_id: str, message: str = "Not found") -> ApiError:
    return ApiError(404, ApiErrorCode.not_found, message, request_id)


def conflict(request_id: str, message: str) -> ApiError:
    return ApiError(409, ApiErrorCode.conflict, message, request_id)


def invalid_payload(request_id: str, issues: dict[str, list[str]]) -> ApiError:
    return ApiError(
        400, ApiErrorCode.validation_error, "Invalid payload", request_id, issues
    )


def too_many_requests(request_id: str, retry_after_seconds: Optional[int]) -> ApiError:
    return ApiError(
        429,
        ApiErrorCode.rate_limited,
        "Too many requests",
        request_id,
        retry_after_seconds=retry_after_seconds,
    )


def internal_error(request_id: str, message: str = "Server error") -> ApiError:
    return ApiError(500, ApiErrorCode.internal_error, message, request_id)


async def read_json_body(
    request: Request, request_id: str, max_bytes: int = DEFAULT_MAX_BODY_BYTES
) -> object:
    """Read and parse a JSON request body; ``None`` when the body is empty."""
    content_type = request.headers.get("content-type") or ""
    if "application/json" not in content_type.lower():
        raise ApiError(
            415,
            ApiErrorCode.unsupported_media_type,
            "Unsupported media type",
            request_id,
        )

    raw = await request.body()
    if len(raw) > max_bytes:
        raise ApiError(
            413, ApiErrorCode.payload_too_large, "Payload too large", request_id
        )

    if raw.strip() == b"":
        return None

    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise bad_request(request_id, "Invalid JSON") from exc


def weak_etag(payload: str) -> str:
    digest = hashlib.sha256(payload.encode("utf-8")).digest()
    encoded = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return f'W/"{encoded}"'
