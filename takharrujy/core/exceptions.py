"""
Exception hierarchy for the workflow core.

Every service raises one of these four kinds. The application factory
registers a handler per type once, so callers get consistent HTTP status
codes without importing service modules.

Usage:
    from takharrujy.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Project", resource_id=42)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-university access
    attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "Project", "Task").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        university_id: Optional, the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        university_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.university_id = university_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if university_id is not None:
            msg += f" (university={university_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the access policy denies an action.

    The public message never says which rule failed; ``action`` and
    ``actor_id`` are kept for logs only. Maps to HTTP 403.
    """

    MESSAGE = "Operation not allowed"

    def __init__(self, action: str | None = None, actor_id: int | None = None) -> None:
        self.action = action
        self.actor_id = actor_id
        super().__init__(self.MESSAGE)


class ConflictError(Exception):
    """Raised when an operation collides with current state.

    Covers duplicate values, team-size and one-project limits, dependency
    graph violations and concurrent modification. Maps to HTTP 409.

    Args:
        resource: Entity name.
        field: The field (or rule) in conflict.
        value: The conflicting value.
        message: Overrides the default "already exists" wording.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value=None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        if message is None:
            message = f"{resource} with {field}={value!r} already exists"
        super().__init__(message)


class TransitionError(ConflictError):
    """Raised when a lifecycle action is not legal from the current status."""

    def __init__(
        self,
        resource: str,
        resource_id,
        action: str,
        current: str,
        reason: str | None = None,
    ) -> None:
        msg = f"Cannot '{action}' {resource.lower()} {resource_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(resource, "status", current, message=msg)
        self.resource_id = resource_id
        self.action = action
        self.current_status = current
        self.reason = reason


class DependencyNotReadyError(TransitionError):
    """Raised when a task is started before all of its dependencies completed."""

    def __init__(self, task_id, pending_ids: list[int]) -> None:
        super().__init__(
            "Task", task_id, "start", "todo",
            reason=f"dependencies not completed: {sorted(pending_ids)}",
        )
        self.pending_ids = sorted(pending_ids)
