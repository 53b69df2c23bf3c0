from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

AppointmentStatus = Literal["scheduled", "cancelled", "completed", "noshow"]


class QuoteSignIn(BaseModel):
    signed_by: str = Field(min_length=1, max_length=160)
    signed_at: datetime | None = None

    model_config = ConfigDict(json_schema_extra={"example": {"signed_by": "Dana Customer"}})


class QuoteOut(BaseModel):
    id: str
    quote_number: str
    project_id: str | None = None
    contact_id: str | None = None
    title: str | None = None
    status: str
    total: float
    deposit_required: bool
    deposit_amount: float
    sent_at: datetime | None = None
    viewed_at: datetime | None = None
    signed_at: datetime | None = None
    signed_by: str | None = None


class AppointmentUpdateIn(BaseModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    status: AppointmentStatus | None = None
    assigned_user_id: str | None = Field(default=None, max_length=36)

    model_config = ConfigDict(
        json_schema_extra={"example": {"start_time": "2026-10-21T15:00:00Z", "end_time": "2026-10-21T16:00:00Z"}}
    )

    @model_validator(mode="after")
    def validate_has_updates(self) -> "AppointmentUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AppointmentOut(BaseModel):
    id: str
    contact_id: str | None = None
    project_id: str | None = None
    calendar_id: str | None = None
    title: str
    status: str
    start_time: datetime
    end_time: datetime | None = None
    assigned_user_id: str | None = None
    events: list[str] = []


class ProjectStageIn(BaseModel):
    stage_id: str = Field(min_length=1, max_length=64)
    pipeline_id: str | None = Field(default=None, min_length=1, max_length=64)

    model_config = ConfigDict(json_schema_extra={"example": {"pipeline_id": "pipe-main", "stage_id": "stage-install"}})


class ProjectOut(BaseModel):
    id: str
    contact_id: str | None = None
    title: str
    status: str
    pipeline_id: str | None = None
    pipeline_stage_id: str | None = None
    stage_entered_at: datetime | None = None
    assigned_user_id: str | None = None
