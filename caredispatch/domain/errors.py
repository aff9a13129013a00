"""
Error taxonomy for the care dispatch core.

Caller-visible failures are NotFound, PermissionDenied, InvalidInput and
InfrastructureFailure. ChannelFailure is operational telemetry only: it is
raised inside delivery code and always caught before it reaches a caller.
"""


class CareDispatchError(Exception):
    """Base class for all domain errors."""

    kind = "error"

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(CareDispatchError):
    """Unknown subject, alert, reminder or notification."""

    kind = "not_found"


class PermissionDenied(CareDispatchError):
    """Caller is neither the subject, a caregiver nor an admin."""

    kind = "permission_denied"


class InvalidInput(CareDispatchError):
    """Unrecognized enum value where no default exists, or malformed input."""

    kind = "invalid_input"


class ChannelFailure(CareDispatchError):
    """Push or SMS delivery failed."""

    kind = "channel_failure"


class InfrastructureFailure(CareDispatchError):
    """The persistent store is unreachable."""

    kind = "infrastructure_failure"
