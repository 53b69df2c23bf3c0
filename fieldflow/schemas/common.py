from pydantic import BaseModel, ConfigDict


class PaginationMeta(BaseModel):
    total: int
    limit: int
    offset: int
    count: int
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={"example": {"total": 12, "limit": 5, "offset": 5, "count": 5, "has_next": True}}
    )


class ValidationIssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


class ErrorDetailOut(BaseModel):
    code: str
    message: str
    request_id: str
    path: str
    details: list[ValidationIssueOut] | None = None


class ErrorOut(BaseModel):
    """Envelope returned by every error handler."""

    error: ErrorDetailOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "conflict",
                    "message": "Automation rule name already exists",
                    "request_id": "3f0c7f0e-5a43-4c61-9a55-2f7d0e1c6b1a",
                    "path": "/automations/rules",
                    "details": None,
                }
            }
        }
    )
