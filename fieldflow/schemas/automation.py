from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fieldflow.schemas.common import PaginationMeta
from fieldflow.services.automation_actions import ActionType
from fieldflow.services.automation_matcher import normalize_operator


AutomationTriggerType = Literal[
    "quote-event",
    "appointment-event",
    "contact-event",
    "stage-entered",
    "sms-received",
    "payment-received",
    "time-based",
    "recurring-schedule",
]
AutomationRunStatus = Literal["running", "success", "partial", "failed"]
AutomationStepStatus = Literal["running", "success", "failed"]
AutomationQueueStatus = Literal["pending", "processing", "completed", "failed", "dead-lettered"]
AutomationConditionOperator = Literal[
    "equals",
    "not-equals",
    "in",
    "not-in",
    "greater-than",
    "less-than",
    "greater-than-or-equals",
    "less-than-or-equals",
    "contains",
    "exists",
    "empty",
    "not-empty",
]
AutomationTemplateKey = Literal[
    "quote_signed_followup",
    "appointment_reminder_24h",
    "sms_keyword_router",
    "daily_brief",
]


class AutomationConditionIn(BaseModel):
    field: str = Field(min_length=1, max_length=120)
    operator: AutomationConditionOperator = "equals"
    value: Any | None = None
    case_sensitive: bool = False

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator_alias(cls, value: Any) -> str:
        return normalize_operator(value)


class AutomationActionIn(BaseModel):
    type: ActionType
    config_json: dict[str, Any] = Field(default_factory=dict)
    critical: bool = False


class AutomationRuleCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    is_active: bool = True
    trigger_type: AutomationTriggerType
    trigger_subtype: str | None = Field(default=None, max_length=40)
    trigger_config: dict[str, Any] | None = None
    pipeline_id: str | None = Field(default=None, max_length=64)
    stage_id: str | None = Field(default=None, max_length=64)
    calendar_id: str | None = Field(default=None, max_length=64)
    conditions: list[AutomationConditionIn] = Field(default_factory=list)
    actions: list[AutomationActionIn] = Field(default_factory=list)
    priority: int = Field(default=0, ge=-1000, le=1000)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Big quote signed",
                "trigger_type": "quote-event",
                "trigger_subtype": "signed",
                "conditions": [{"field": "quote.total", "operator": "greater-than", "value": 1000}],
                "actions": [
                    {"type": "send-sms", "config_json": {"message": "Thanks {{contact.firstName}}!"}},
                    {"type": "move-to-stage", "config_json": {"stage_id": "stage-signed"}},
                ],
                "priority": 10,
            }
        }
    )


class AutomationRuleUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None
    trigger_type: AutomationTriggerType | None = None
    trigger_subtype: str | None = Field(default=None, max_length=40)
    trigger_config: dict[str, Any] | None = None
    pipeline_id: str | None = Field(default=None, max_length=64)
    stage_id: str | None = Field(default=None, max_length=64)
    calendar_id: str | None = Field(default=None, max_length=64)
    conditions: list[AutomationConditionIn] | None = None
    actions: list[AutomationActionIn] | None = None
    priority: int | None = Field(default=None, ge=-1000, le=1000)

    @model_validator(mode="after")
    def validate_has_updates(self) -> "AutomationRuleUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class AutomationConditionOut(BaseModel):
    field: str
    operator: str
    value: Any | None = None
    case_sensitive: bool = False


class AutomationActionOut(BaseModel):
    type: str
    config_json: dict[str, Any]
    critical: bool = False


class AutomationRuleOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    is_active: bool
    trigger_type: str
    trigger_subtype: str | None = None
    trigger_config: dict[str, Any] | None = None
    pipeline_id: str | None = None
    stage_id: str | None = None
    calendar_id: str | None = None
    conditions: list[AutomationConditionOut]
    actions: list[AutomationActionOut]
    priority: int
    template_key: str | None = None
    version: int
    execution_count: int
    success_count: int
    failure_count: int
    last_executed_at: datetime | None = None
    created_by_user_id: str | None = None
    updated_by_user_id: str | None = None
    deactivated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class AutomationRuleListOut(BaseModel):
    items: list[AutomationRuleOut]
    pagination: PaginationMeta
    is_active: bool | None = None
    trigger_type: str | None = None


class AutomationRuleTestIn(BaseModel):
    event_type: str | None = Field(default=None, min_length=1, max_length=60)
    entity_type: str = Field(default="sample", min_length=1, max_length=40)
    entity_id: str = Field(default="sample-entity", min_length=1, max_length=64)
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "event_type": "quote-signed",
                "entity_type": "quote",
                "entity_id": "quote-123",
                "data": {"contact": {"firstName": "Dana", "phone": "+15125550100"}, "quote": {"total": 4200}},
            }
        }
    )


class AutomationActionPreviewOut(BaseModel):
    index: int
    type: str
    status: Literal["preview", "failed"]
    config: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error: str | None = None


class AutomationRuleTestOut(BaseModel):
    rule_id: str
    event_type: str
    matched: bool
    reason: str | None = None
    errors: list[str]
    actions: list[AutomationActionPreviewOut]


class AutomationRuleStepOut(BaseModel):
    id: str
    step_index: int
    action_type: str
    status: AutomationStepStatus
    input_json: dict[str, Any] | None = None
    output_json: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime | None = None


class AutomationRuleRunOut(BaseModel):
    id: str
    rule_id: str
    queue_item_id: str | None = None
    attempt: int
    event_type: str
    entity_type: str
    entity_id: str
    status: AutomationRunStatus
    error_message: str | None = None
    steps_total: int
    steps_succeeded: int
    steps_failed: int
    started_at: datetime
    completed_at: datetime | None = None
    steps: list[AutomationRuleStepOut] = []


class AutomationRuleRunListOut(BaseModel):
    items: list[AutomationRuleRunOut]
    pagination: PaginationMeta
    rule_id: str | None = None
    status: AutomationRunStatus | None = None


class AutomationTemplateOut(BaseModel):
    template_key: AutomationTemplateKey
    name: str
    description: str
    trigger_type: str
    trigger_subtype: str | None = None
    trigger_config: dict[str, Any] | None = None
    default_conditions: list[AutomationConditionOut]
    default_actions: list[AutomationActionOut]


class AutomationTemplateCatalogOut(BaseModel):
    items: list[AutomationTemplateOut]


class AutomationTemplateInstallIn(BaseModel):
    template_key: AutomationTemplateKey
    activate: bool = True

    model_config = ConfigDict(
        json_schema_extra={"example": {"template_key": "appointment_reminder_24h", "activate": True}}
    )


class AutomationTemplateInstallOut(BaseModel):
    template: AutomationTemplateOut
    rule: AutomationRuleOut
    created: bool


class AutomationQueueItemOut(BaseModel):
    id: str
    rule_id: str
    entity_type: str
    entity_id: str
    occurrence_id: str
    event_type: str
    status: AutomationQueueStatus
    attempts: int
    max_attempts: int
    next_attempt_at: datetime
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    last_error: str | None = None
    result_json: dict[str, Any] | None = None
    completed_at: datetime | None = None
    dead_lettered_at: datetime | None = None
    created_at: datetime


class AutomationQueueListOut(BaseModel):
    items: list[AutomationQueueItemOut]
    pagination: PaginationMeta
    status: AutomationQueueStatus | None = None


class AutomationQueueStatsOut(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    dead_lettered: int
    total: int


class AutomationEventIn(BaseModel):
    type: str = Field(min_length=1, max_length=60)
    entity_type: str = Field(min_length=1, max_length=40)
    entity_id: str = Field(min_length=1, max_length=64)
    data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None
    occurrence_id: str | None = Field(default=None, max_length=200)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "type": "sms-received",
                "entity_type": "contact",
                "entity_id": "contact-123",
                "data": {"contact": {"id": "contact-123", "firstName": "Dana"}, "message": {"body": "YES"}},
                "occurrence_id": "sms-received:msg-789",
            }
        }
    )


class AutomationDispatchOut(BaseModel):
    event_type: str
    occurrence_id: str
    matched: int
    enqueued: int
    duplicates: int
    scheduled: int
    rescheduled: int
    cancelled: int
    match_errors: int
    queue_item_ids: list[str]


class CronSchedulerOut(BaseModel):
    fired: int
    stale: int
    skipped: int
    errors: int
    recurring_enqueued: int


class CronQueueOut(BaseModel):
    processed: int
    completed: int
    retried: int
    failed: int
    dead_lettered: int


class CronCleanupOut(BaseModel):
    completed_deleted: int
    failed_deleted: int
    triggers_deleted: int
    recent_dead_letters: int
