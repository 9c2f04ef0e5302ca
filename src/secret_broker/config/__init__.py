"""Configuration module for the secret broker."""

from secret_broker.config.settings import AuditSinkKind, BackendKind, Settings, get_settings

__all__ = ["Settings", "get_settings", "BackendKind", "AuditSinkKind"]
