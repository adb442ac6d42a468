"""
Exception taxonomy for the inbound event pipeline.

Each class names the stage that failed. Most of them never reach the CRM:
the gateway swallows intake/enqueue/trigger errors, the token manager
degrades to the last-known token, and the worker records handler errors
on the queued event.
"""


class LineBridgeError(Exception):
    """Base class for all pipeline errors."""


class IntakeParseError(LineBridgeError):
    """Webhook body could not be decoded in any supported encoding."""


class EnqueueError(LineBridgeError):
    """Inserting the queued event failed."""


class TriggerDispatchError(LineBridgeError):
    """The worker trigger request could not be delivered."""


class TokenRefreshError(LineBridgeError):
    """OAuth refresh was attempted and did not produce a new token."""


class CrmApiError(LineBridgeError):
    """CRM REST call returned a non-2xx status or an error body."""

    def __init__(self, method: str, message: str, status_code: int | None = None, error_code: str | None = None):
        super().__init__(f"{method}: {message}")
        self.method = method
        self.status_code = status_code
        self.error_code = error_code


class ConnectorStepError(LineBridgeError):
    """One step of connector activation failed."""

    def __init__(self, step: str, cause: Exception):
        super().__init__(f"{step} failed: {cause}")
        self.step = step
        self.cause = cause


class DispatchError(LineBridgeError):
    """The message sender rejected or failed to deliver a message."""


class HandlerError(LineBridgeError):
    """An event handler could not complete its side effect."""


class IntegrationNotFoundError(HandlerError):
    """No integration matches the event's member_id / domain."""


class TerminalEventError(LineBridgeError):
    """Attempt to mutate a queued event that is already completed or failed."""
