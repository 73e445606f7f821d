"""
Gatehouse exceptions.

This module defines the error taxonomy shared by the approval gate, the
idempotency ledger, the workflow engine and the outbox worker.
"""


class GatehouseError(Exception):
    """Base class for all Gatehouse errors."""

    status_code = 500


class ValidationError(GatehouseError):
    """
    Raised when input is malformed (missing user id, unknown rule operator, ...).

    Validation happens before anything is written, so the request can be
    corrected and retried with the same idempotency key.
    """

    status_code = 400


class IdempotencyKeyMismatchError(GatehouseError):
    """
    Raised when an idempotency key is reused for a different request payload.

    This is a client error and must never be retried automatically.
    """

    status_code = 409

    def __init__(self, action_key: str, idempotency_key: str):
        self.action_key = action_key
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency key {idempotency_key!r} was reused with a different payload "
            f"for action {action_key!r}"
        )


class NotFoundError(GatehouseError):
    """Raised when a policy, workflow instance or task does not exist."""

    status_code = 404


class WorkflowStateError(GatehouseError):
    """Raised when a decision targets a task or instance that is no longer open."""

    status_code = 409


class DeliveryError(GatehouseError):
    """Base class for outbox delivery failures."""

    retryable = True


class TransientDeliveryError(DeliveryError):
    """
    Delivery failed for a reason that may go away (network error, 5xx, timeout).

    The outbox worker retries these with exponential backoff until the
    configured maximum number of attempts is reached.
    """

    retryable = True


class PermanentDeliveryError(DeliveryError):
    """Delivery can never succeed; the event is marked FAILED immediately."""

    retryable = False


class UnknownEventTypeError(PermanentDeliveryError):
    """Raised when no handler is registered for an outbox event type."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"No handler found for event type: {event_type}")


class OutboxEventTimeoutError(TransientDeliveryError):
    """Raised when a handler does not finish within the configured event timeout."""

    def __init__(self, event_id: str, event_type: str, timeout_seconds: float):
        self.event_id = event_id
        self.event_type = event_type
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Event {event_id} ({event_type}) timed out after {timeout_seconds}s")
