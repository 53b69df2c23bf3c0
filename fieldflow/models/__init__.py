from fieldflow.models.location import Location
from fieldflow.models.user import User
from fieldflow.models.audit_log import AuditLog
from fieldflow.models.contact import Contact
from fieldflow.models.project import Project
from fieldflow.models.quote import Quote
from fieldflow.models.appointment import Appointment
from fieldflow.models.automation import (
    AutomationAnchor,
    AutomationQueueItem,
    AutomationRule,
    AutomationRuleRun,
    AutomationRuleStep,
    ScheduledTrigger,
)
from fieldflow.models.task import Task
from fieldflow.models.contract import Contract
from fieldflow.models.integration import OutboundMessage
