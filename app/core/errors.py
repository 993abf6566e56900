class SchedulingError(Exception):
    """Base exception for booking and opportunity scan failures."""

    def __init__(self, message: str, business_id: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.business_id = business_id
        self.retryable = retryable


class ConfigurationMissing(SchedulingError):
    """Working hours or a service duration could not be resolved for a business."""


class DataInconsistent(SchedulingError):
    """A stored record cannot be interpreted (e.g. a job ending before it starts)."""

    def __init__(self, message: str, record: str | None = None, business_id: int | None = None):
        super().__init__(message, business_id=business_id)
        self.record = record


class ConflictOnCommit(SchedulingError):
    """A concurrent writer took the slot or the notification key this write relied on."""

    def __init__(self, message: str, business_id: int | None = None, conflicting_job_id: int | None = None):
        super().__init__(message, business_id=business_id, retryable=True)
        self.conflicting_job_id = conflicting_job_id


class DetectorFailure(SchedulingError):
    def __init__(self, message: str, detector: str, business_id: int | None = None):
        super().__init__(message, business_id=business_id)
        self.detector = detector


class InvalidTransition(ValueError):
    def __init__(self, from_status: str, action: str):
        super().__init__(f"Cannot {action} a notification in status '{from_status}'")
        self.from_status = from_status
        self.action = action
