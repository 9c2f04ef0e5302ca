"""Custom exceptions for the secret broker."""


class BrokerError(Exception):
    """Base exception for all secret broker errors."""

    pass


class ConfigurationError(BrokerError):
    """Error in configuration or settings."""

    pass
