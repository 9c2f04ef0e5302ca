"""Utility modules for the secret broker."""

from secret_broker.utils.exceptions import BrokerError, ConfigurationError

__all__ = [
    "BrokerError",
    "ConfigurationError",
]
