"""Errors raised before a request reaches the broker."""

from secret_broker.utils.exceptions import BrokerError


class ContextNotSetError(BrokerError):
    """Request context was read outside of request_context()."""

    def __init__(self, message: str = "Request context is not set"):
        super().__init__(message)


class AuthenticationError(BrokerError):
    """The bearer credential is missing, malformed or unknown.

    No identity exists yet, so the policy gate never sees the request
    and no audit event is written.
    """

    def __init__(self, reason: str = "Authentication failed"):
        super().__init__(reason)
        self.reason = reason
