from gradeportal.schemas.common import ErrorOut

_ERROR_DESCRIPTIONS: dict[int, tuple[str, str]] = {
    400: ("bad_request", "Identity is empty or malformed"),
    401: ("unauthorized", "Missing or invalid admin token"),
    403: ("forbidden", "Admin API is disabled"),
    404: ("not_found", "Resource not found"),
    422: ("validation_error", "Validation failed"),
    500: ("internal_error", "Internal server error"),
    503: ("service_unavailable", "Security storage is temporarily unavailable"),
}

_RETRY_AFTER_HEADER = {
    "Retry-After": {
        "description": "Seconds to wait before retrying",
        "schema": {"type": "string"},
    }
}


def error_responses(*status_codes: int, path: str = "/example") -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _ERROR_DESCRIPTIONS.get(status_code, ("http_error", "HTTP error"))
        response: dict = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": path,
                            "details": None,
                        }
                    }
                }
            },
        }
        if status_code == 503:
            response["headers"] = _RETRY_AFTER_HEADER
        responses[status_code] = response
    return responses
