"""
Platform-wide exception hierarchy.

Services raise these; ``create_app`` registers one handler per type so every
blueprint gets the same status code and ``{error, code, details?}`` envelope.

Usage:
    from campusdesk.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Student", resource_id="S123")
    raise ValidationError("note is required", details={"note": "required"})

Transient failures (``CompletionServiceUnavailable``, ``StorageUnavailable``)
are kept apart from business refusals so callers never report an outage as
a rejection.
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist (or is not visible to the actor).

    Args:
        resource: Human-readable model/entity name (e.g. "Student", "ChatSession").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness rule. Maps to HTTP 409."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class PermissionDenied(Exception):
    """Raised when the actor's role does not grant the attempted capability. HTTP 403."""

    def __init__(self, message: str, required_role: str | None = None) -> None:
        self.required_role = required_role
        super().__init__(message)


class ImmutableRecordError(Exception):
    """Raised by ORM guards when code tries to rewrite an append-only row."""

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} id={resource_id} is immutable")


# ── Proposal pipeline ────────────────────────────────────────────────────────

class MalformedProposal(Exception):
    """A tool call's payload failed structural or referential validation.

    ``details`` maps field names to the reason each one was refused; the
    orchestrator turns it into an assistant-visible refusal.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class UnknownCapability(Exception):
    """The completion service emitted a tool name that maps to no capability."""

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Unknown tool {tool_name!r}")


class AlreadyDecided(Exception):
    """The approval request left PENDING before this decision landed. HTTP 409."""

    def __init__(self, approval_id: int, current_status: str | None = None) -> None:
        self.approval_id = approval_id
        self.current_status = current_status
        msg = f"Approval request {approval_id} is already decided"
        if current_status:
            msg += f" ({current_status})"
        super().__init__(msg)


class StaleTarget(Exception):
    """The approved mutation no longer applies to the current record state."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class TurnCancelled(Exception):
    """The user abandoned the turn before its tool calls were decoded."""


# ── Transient (retryable) ────────────────────────────────────────────────────

class CompletionServiceUnavailable(Exception):
    """The completion service failed or timed out after retries. HTTP 503."""

    def __init__(self, message: str = "Completion service unavailable", provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class StorageUnavailable(Exception):
    """The persistent store failed mid-operation. HTTP 503."""

    def __init__(self, message: str = "Storage unavailable") -> None:
        super().__init__(message)
