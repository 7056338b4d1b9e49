"""
Subscrio exceptions.

Error taxonomy shared by every service in the package. Each error carries a
machine-readable code, an HTTP-style status code for hosts that expose the
core over an API, context about the offending entity, and a recovery hint.
"""

from typing import Any


class SubscrioError(Exception):
    """
    Base error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "SUBSCRIO_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ValidationError(SubscrioError):
    """Malformed input: duration mismatch, invalid feature value, etc."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any | None = None,
        context: dict[str, Any] | None = None,
    ):
        context = dict(context or {})
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = value

        super().__init__(
            message,
            "VALIDATION_ERROR",
            status_code=422,
            context=context,
            recovery_hint="Correct the input and retry",
        )


class NotFoundError(SubscrioError):
    """A referenced key does not resolve."""

    def __init__(self, message: str, entity: str | None = None, key: str | None = None) -> None:
        context = {}
        if entity:
            context["entity"] = entity
        if key:
            context["key"] = key

        super().__init__(
            message,
            "NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the key and ensure the referenced entity exists",
        )


class ConflictError(SubscrioError):
    """Duplicate natural key or external identifier."""

    def __init__(
        self,
        message: str,
        entity: str | None = None,
        key: str | None = None,
        recovery_hint: str | None = None,
    ):
        context = {}
        if entity:
            context["entity"] = entity
        if key:
            context["key"] = key

        super().__init__(
            message,
            "CONFLICT",
            status_code=409,
            context=context,
            recovery_hint=recovery_hint or "Use a unique key or update the existing entity",
        )


class ConcurrencyConflictError(ConflictError):
    """An aggregate was modified concurrently; the operation may be retried."""

    def __init__(self, message: str, entity: str, entity_id: str, expected_version: int) -> None:
        super().__init__(
            message,
            entity=entity,
            recovery_hint="Reload the aggregate and retry the operation",
        )
        self.error_code = "CONCURRENT_MODIFICATION"
        self.context["entity_id"] = entity_id
        self.context["expected_version"] = expected_version


class DomainError(SubscrioError):
    """Business-rule violation caused by caller misuse."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "DOMAIN_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class SubscriptionStateError(DomainError):
    """Invalid subscription state transition error."""

    def __init__(
        self, message: str, subscription_key: str, current_state: str, requested_action: str
    ) -> None:
        super().__init__(
            message,
            context={
                "subscription_key": subscription_key,
                "current_state": current_state,
                "requested_action": requested_action,
            },
            recovery_hint=f"Cannot {requested_action} a subscription in state {current_state}. Check subscription status first.",
        )
        self.error_code = "INVALID_SUBSCRIPTION_STATE"


class ConfigurationError(SubscrioError):
    """Configuration errors."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "CONFIGURATION_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check subscrio configuration settings",
        )
