"""
core/errors.py -- Error taxonomy for the ticket/incident engine.

Every failure a manager can report is a DeskError subclass carrying a
machine-readable code, an HTTP status, a human message, and a context dict
with whatever the caller needs to act (for example the existing incident's
id and number on a repeated conversion). api/main.py turns these into the
shared ErrorResponse envelope; nothing below the API layer knows about HTTP
beyond the status_code class attribute.

Layer rule: core/ imports nothing from api/, auth/, desk/, or cache/.
"""

from typing import Any, Optional


class DeskError(Exception):
    """Base class for all recoverable engine errors."""

    code = "desk_error"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}


class ValidationError(DeskError):
    """A required field is missing or a value is malformed."""

    code = "validation_error"
    status_code = 400


class NotFound(DeskError):
    code = "not_found"
    status_code = 404


class Forbidden(DeskError):
    """The RBAC guard denied the operation."""

    code = "forbidden"
    status_code = 403


class ImmutableResource(DeskError):
    """Mutation attempted on a resolved/closed/converted ticket or a closed incident."""

    code = "immutable_resource"
    status_code = 409


class Conflict(DeskError):
    code = "conflict"
    status_code = 409


class AlreadyConverted(Conflict):
    """The ticket is already the source of an incident.

    Carries the existing incident's identity so the caller can redirect
    instead of retrying.
    """

    code = "already_converted"

    def __init__(
        self,
        message: str = "Ticket has already been converted to an incident.",
        incident_id: Optional[int] = None,
        incident_number: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(message, incident_id=incident_id, incident_number=incident_number, **context)
        self.incident_id = incident_id
        self.incident_number = incident_number


class DuplicateNumber(Conflict):
    """A generated sequence number collided with an existing row."""

    code = "duplicate_number"


class DependencyFailure(DeskError):
    """The store or an external collaborator is unavailable."""

    code = "dependency_failure"
    status_code = 503
    partial = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, **context)
        self.context["partial"] = self.partial


class ConversionIncomplete(DependencyFailure):
    """An incident references the ticket but the ticket was never frozen.

    The caller must surface this distinctly so an operator can reconcile it
    (POST /tickets/{id}/convert/reconcile or `main.py reconcile`).
    """

    code = "conversion_incomplete"
    status_code = 500
    partial = True
