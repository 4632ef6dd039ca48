from __future__ import annotations

NOT_FOUND = "NOT_FOUND"
INSUFFICIENT_RESOURCE = "INSUFFICIENT_RESOURCE"
VALIDATION_FAILED = "VALIDATION_FAILED"
UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
CONFLICT = "CONFLICT"
INTERNAL_ERROR = "INTERNAL_ERROR"
UNAUTHORIZED = "UNAUTHORIZED"

HTTP_STATUS_BY_CODE: dict[str, int] = {
    NOT_FOUND: 404,
    INSUFFICIENT_RESOURCE: 402,
    VALIDATION_FAILED: 422,
    CONFLICT: 409,
    UPSTREAM_TIMEOUT: 504,
    UPSTREAM_FAILURE: 502,
    INTERNAL_ERROR: 500,
    UNAUTHORIZED: 401,
}


def http_status_for(code: str | None) -> int:
    return HTTP_STATUS_BY_CODE.get(str(code or ""), 500)


def error_detail(code: str, message: str | None = None) -> dict:
    return {"code": code, "message": message or code}
