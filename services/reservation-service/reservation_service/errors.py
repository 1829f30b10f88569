class DomainError(Exception):
    """
    Base for every failure the engine reports to a caller.

    kind: stable machine-readable category
    reason: human-readable detail, safe to show to the caller
    retryable: True only for transient kinds (the same request may succeed later)
    """

    kind = "Internal"
    status_code = 500
    retryable = False

    def __init__(self, reason: str, code: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code

    def to_dict(self) -> dict:
        body = {"kind": self.kind, "reason": self.reason, "retryable": self.retryable}
        if self.code:
            body["code"] = self.code
        return body


class ValidationError(DomainError):
    kind = "ValidationError"
    status_code = 400


class Unauthenticated(DomainError):
    kind = "Unauthenticated"
    status_code = 401


class NotFound(DomainError):
    kind = "NotFound"
    status_code = 404


class Forbidden(DomainError):
    kind = "Forbidden"
    status_code = 403


class Conflict(DomainError):
    kind = "Conflict"
    status_code = 409


class InvalidTransition(DomainError):
    kind = "InvalidTransition"
    status_code = 409


class DependencyFailure(DomainError):
    kind = "DependencyFailure"
    status_code = 503
    retryable = True


class Internal(DomainError):
    kind = "Internal"
    status_code = 500
    retryable = True


# Conflict codes
SLOT_TAKEN = "SlotTaken"
OUTSIDE_AVAILABILITY = "OutsideAvailability"
STALE_PROPOSAL = "StaleProposal"
ACTIVE_TIME_CHANGE = "ActiveTimeChange"
DUPLICATE = "Duplicate"
