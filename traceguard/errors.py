"""Exception types shared by the alerting and investigation modules."""


class TraceGuardError(Exception):
    """Base class for all TraceGuard errors."""


class AlertNotFoundError(TraceGuardError):
    """The alert id does not exist in the store."""

    def __init__(self, alert_id: str) -> None:
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id


class StateConflictError(TraceGuardError):
    """Another writer changed the alert state between read and write."""

    def __init__(self, alert_id: str) -> None:
        super().__init__(f"Concurrent state change detected for alert {alert_id}")
        self.alert_id = alert_id


class TransientDependencyError(TraceGuardError):
    """A dependency (metric read, span query, search) failed or timed out.

    Callers treat this as "try again next tick", never as a conclusive result.
    """

    def __init__(self, dependency: str, detail: str) -> None:
        super().__init__(f"{dependency} unavailable: {detail}")
        self.dependency = dependency
        self.detail = detail
