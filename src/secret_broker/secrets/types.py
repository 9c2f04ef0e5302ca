"""Secret broker types and enumerations.

This module defines the small vocabulary shared by the backends, the
policy gate, the audit sink and the broker facade.
"""

from enum import Enum


class Capability(str, Enum):
    """Operations a policy rule can grant on a path."""

    READ = "read"
    WRITE = "write"
    ROTATE = "rotate"


class FailureKind(str, Enum):
    """Shared error taxonomy every backend maps its vendor errors into."""

    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class AuditOutcome(str, Enum):
    """Outcome recorded on an audit event."""

    GRANTED = "granted"
    DENIED = "denied"
    FAILED = "failed"


class Operation(str, Enum):
    """Broker operations, each gated by one capability."""

    GET = "get"
    PUT = "put"
    DELETE = "delete"
    ROTATE = "rotate"

    @property
    def capability(self) -> Capability:
        """Capability the policy gate checks for this operation."""
        if self is Operation.GET:
            return Capability.READ
        if self is Operation.ROTATE:
            return Capability.ROTATE
        return Capability.WRITE


def normalize_path(path: str) -> str:
    """Normalize a hierarchical secret path.

    Strips surrounding slashes and collapses duplicate separators.

    Raises:
        ValueError: If the path is empty or contains relative segments
    """
    segments = [s for s in path.strip().split("/") if s]
    if not segments:
        raise ValueError("Secret path must not be empty")
    if any(s in (".", "..") for s in segments):
        raise ValueError(f"Secret path must not contain relative segments: {path}")
    return "/".join(segments)
