from fieldflow.core.observability import ERROR_CODES
from fieldflow.schemas.common import ErrorOut

_EXAMPLE_PATHS = {
    401: "/automations/rules",
    403: "/automations/queue",
    404: "/automations/rules/00000000-0000-0000-0000-000000000000",
    409: "/automations/rules",
    503: "/cron/automation-scheduler",
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    """OpenAPI ``responses`` entries documenting the shared error envelope."""
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = ERROR_CODES.get(status_code, ("http_error", "HTTP error"))
        example = {
            "code": code,
            "message": message,
            "request_id": "request-id",
            "path": _EXAMPLE_PATHS.get(status_code, "/automations/events"),
            "details": None,
        }
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {"application/json": {"example": {"error": example}}},
        }
    return responses
