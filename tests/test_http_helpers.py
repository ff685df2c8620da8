import json
import uuid

from http_helpers import (
    ApiError,
    ApiErrorCode,
    forbidden,
    get_request_id,
    invalid_payload,
    json_ok,
    no_store,
    too_many_requests,
    weak_etag,
)


def test_request_id_reused_when_reasonable() -> None:
    assert get_request_id({"x-request-id": "abc-123"}) == "abc-123"


def test_request_id_generated_when_missing_or_too_long() -> None:
    uuid.UUID(get_request_id({}))
    generated = get_request_id({"x-request-id": "a" * 129})
    assert generated != "a" * 129
    uuid.UUID(generated)
    assert get_request_id({"x-request-id": "a" * 128}) == "a" * 128


def test_error_envelope_shape() -> None:
    response = forbidden("req-1").to_response()
    assert response.status_code == 403
    assert json.loads(response.body) == {
        "message": "Forbidden",
        "code": "FORBIDDEN",
        "requestId": "req-1",
    }
    assert response.headers["x-request-id"] == "req-1"
    assert "retry-after" not in response.headers


def test_validation_envelope_includes_issues() -> None:
    error = invalid_payload("req-2", {"amount": ["Amount must be positive"]})
    assert error.status_code == 400
    assert error.code is ApiErrorCode.validation_error
    assert error.body()["issues"] == {"amount": ["Amount must be positive"]}


def test_rate_limited_response_sets_retry_after() -> None:
    response = too_many_requests("req-3", 600).to_response()
    assert response.status_code == 429
    assert response.headers["retry-after"] == "600"

    response = ApiError(429, ApiErrorCode.rate_limited, "Too many requests", "r").to_response()
    assert "retry-after" not in response.headers


def test_json_ok_and_no_store() -> None:
    response = no_store(json_ok({"a": 1}, "req-4", status_code=201))
    assert response.status_code == 201
    assert json.loads(response.body) == {"a": 1}
    assert response.headers["x-request-id"] == "req-4"
    assert response.headers["cache-control"] == "no-store"


def test_weak_etag_is_stable() -> None:
    first = weak_etag('{"ok": true}')
    assert first == weak_etag('{"ok": true}')
    assert first != weak_etag('{"ok": false}')
    assert first.startswith('W/"') and first.endswith('"')
