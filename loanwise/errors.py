class LoanwiseError(Exception):
    """Base class for errors raised by the loan engine."""


class UnknownFieldError(LoanwiseError, KeyError):
    def __init__(self, field: str):
        super().__init__(field)
        self.field = field

    def __str__(self) -> str:
        return f"unknown loan field: {self.field}"


class ValidationError(LoanwiseError, ValueError):
    """A field value was rejected by its validator."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class ExtractionAmbiguity(UserWarning):
    """
    Recorded (never raised) when the extractor had to fall back to a
    positional or expected-field tie-break to assign a number.
    """

    def __init__(self, field: str, value, rule: str):
        super().__init__(f"{field}={value} assigned by {rule}")
        self.field = field
        self.value = value
        self.rule = rule


class DecisionIncomplete(LoanwiseError):
    def __init__(self, missing: list[str]):
        super().__init__(f"missing fields: {', '.join(missing) or 'none'}")
        self.missing = missing


class SubmissionNotAllowed(LoanwiseError):
    pass


class CollaboratorUnavailable(LoanwiseError):
    """Persistence, model or speech service failure. The session carries on degraded."""

    def __init__(self, service: str, reason: str = "unavailable"):
        super().__init__(f"{service}: {reason}")
        self.service = service
        self.reason = reason


class CancelledOperation(LoanwiseError):
    """An async result arrived for a generation that has since been cancelled."""
