class AutomationError(Exception):
    pass


class UnknownEventType(AutomationError, ValueError):
    pass


class MatchError(AutomationError):
    """A rule's trigger or condition config could not be evaluated."""

    def __init__(self, message: str, *, rule_id: str | None = None, field: str | None = None):
        super().__init__(message)
        self.rule_id = rule_id
        self.field = field


class ActionFailure(AutomationError):
    def __init__(self, message: str, *, action_type: str | None = None):
        super().__init__(message)
        self.action_type = action_type


class CrmError(ActionFailure):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message, action_type=None)
        self.status_code = status_code


class QueueRetryExhausted(AutomationError):
    def __init__(self, queue_item_id: str, attempts: int, last_error: str | None):
        super().__init__(f"Queue item {queue_item_id} exhausted {attempts} attempts: {last_error or 'unknown error'}")
        self.queue_item_id = queue_item_id
        self.attempts = attempts
        self.last_error = last_error


class SchedulerStaleAnchor(AutomationError):
    def __init__(self, trigger_id: str, *, expected_version: int, live_version: int | None):
        super().__init__(
            f"Scheduled trigger {trigger_id} was computed for anchor version {expected_version}, "
            f"live version is {live_version}"
        )
        self.trigger_id = trigger_id
        self.expected_version = expected_version
        self.live_version = live_version
