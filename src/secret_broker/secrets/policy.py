"""Policy gate for per-call authorization.

Rules are path patterns with a set of granted capabilities and the roles
they apply to. A pattern ending in ``*`` matches by prefix; any other
pattern matches its exact path. Rules are evaluated most specific first
(exact before prefix, longer literal first, file order on ties) and the
first rule that matches both the path and one of the caller's roles
decides. No matching rule means deny.

Policy document format (JSON)::

    {
      "rules": [
        {"path": "secret/db", "capabilities": ["read"], "roles": ["app"]},
        {"path": "secret/*", "capabilities": ["read", "write", "rotate"], "roles": ["admin"]}
      ],
      "identities": [
        {"principal": "billing", "token_sha256": "<hex digest>", "roles": ["app"]}
      ]
    }
"""

import hashlib
import hmac
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from secret_broker.core.context import CallerIdentity
from secret_broker.secrets.types import Capability, normalize_path
from secret_broker.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ANY_ROLE = "*"


class PolicyRule(BaseModel):
    """A single allow-list entry."""

    path: str
    capabilities: frozenset[Capability]
    roles: frozenset[str] = frozenset({ANY_ROLE})

    model_config = {"frozen": True}

    @field_validator("path")
    @classmethod
    def validate_pattern(cls, value: str) -> str:
        """Normalize the pattern; ``*`` is only allowed as the last character."""
        if value.strip() == "*":
            return "*"
        if "*" in value[:-1]:
            raise ValueError(f"Wildcard is only supported at the end of a pattern: {value}")
        if value.endswith("*"):
            literal = value[:-1]
            # Keep a trailing separator: "secret/*" must not match "secrets/x"
            keep_slash = literal.endswith("/")
            normalized = normalize_path(literal) if literal.strip("/") else ""
            return f"{normalized}{'/' if keep_slash and normalized else ''}*"
        return normalize_path(value)

    @property
    def is_prefix(self) -> bool:
        return self.path.endswith("*")

    @property
    def literal(self) -> str:
        """The pattern without its wildcard."""
        return self.path[:-1] if self.is_prefix else self.path

    def matches_path(self, path: str) -> bool:
        if self.is_prefix:
            return path.startswith(self.literal)
        return path == self.path

    def applies_to(self, caller: CallerIdentity) -> bool:
        return ANY_ROLE in self.roles or not self.roles.isdisjoint(caller.roles)


class IdentityEntry(BaseModel):
    """A bearer-token identity declared in the policy document."""

    principal: str
    token_sha256: str = Field(min_length=64, max_length=64)
    roles: frozenset[str] = frozenset()

    @field_validator("token_sha256")
    @classmethod
    def lowercase_digest(cls, value: str) -> str:
        int(value, 16)  # raises ValueError on non-hex input
        return value.lower()


class PolicyDocument(BaseModel):
    """Top-level policy file contents."""

    rules: list[PolicyRule] = Field(default_factory=list)
    identities: list[IdentityEntry] = Field(default_factory=list)


def load_policy_document(path: str | Path) -> PolicyDocument:
    """Read and validate a JSON policy document.

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read policy file {path}: {e}") from e

    try:
        return PolicyDocument.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid policy file {path}: {e}") from e


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    """Result of an authorization check.

    Attributes:
        allowed: Whether the capability is granted
        reason: Human-readable explanation
        rule: The rule that decided, if any
    """

    allowed: bool
    reason: str
    rule: PolicyRule | None = None

    @classmethod
    def allow(cls, rule: PolicyRule, capability: Capability) -> "PolicyDecision":
        return cls(True, f"rule '{rule.path}' grants {capability.value}", rule)

    @classmethod
    def deny(cls, reason: str, rule: PolicyRule | None = None) -> "PolicyDecision":
        return cls(False, reason, rule)


class PolicyGate:
    """Evaluates caller, path and capability against the allow-list.

    Decisions are computed on every call and never cached per caller, so
    a rule change applies to the very next request.

    Example:
        gate = PolicyGate([PolicyRule(path="secret/db", capabilities={"read"})])
        decision = gate.authorize(caller, "secret/db", Capability.READ)
    """

    def __init__(self, rules: Iterable[PolicyRule] = ()):
        self._rules: tuple[PolicyRule, ...] = ()
        self.replace_rules(rules)

    @classmethod
    def from_file(cls, path: str | Path) -> "PolicyGate":
        """Build a gate from a JSON policy document."""
        return cls(load_policy_document(path).rules)

    @property
    def rules(self) -> tuple[PolicyRule, ...]:
        """Rules in evaluation order."""
        return self._rules

    def replace_rules(self, rules: Iterable[PolicyRule]) -> None:
        """Swap the whole rule set atomically."""
        self._rules = tuple(sorted(rules, key=lambda r: (-len(r.literal), r.is_prefix)))
        logger.info(f"Policy gate loaded {len(self._rules)} rules")

    def authorize(
        self,
        caller: CallerIdentity,
        path: str,
        capability: Capability,
    ) -> PolicyDecision:
        """Decide whether ``caller`` may use ``capability`` on ``path``.

        Args:
            caller: Resolved caller identity
            path: Normalized secret path
            capability: Requested capability

        Returns:
            PolicyDecision (deny when no rule matches)
        """
        for rule in self._rules:
            if not rule.matches_path(path) or not rule.applies_to(caller):
                continue
            if capability in rule.capabilities:
                return PolicyDecision.allow(rule, capability)
            return PolicyDecision.deny(
                f"rule '{rule.path}' does not grant {capability.value}", rule
            )

        return PolicyDecision.deny(f"no policy rule grants {capability.value} on {path}")


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store bearer tokens in the policy file."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class IdentityRegistry:
    """Resolves bearer tokens to caller identities.

    Only token digests are held; the token itself is compared in constant
    time after hashing.
    """

    def __init__(self, identities: Iterable[IdentityEntry] = ()):
        self._identities = list(identities)

    @classmethod
    def from_file(cls, path: str | Path) -> "IdentityRegistry":
        return cls(load_policy_document(path).identities)

    def __len__(self) -> int:
        return len(self._identities)

    def replace_identities(self, identities: Iterable[IdentityEntry]) -> None:
        self._identities = list(identities)
        logger.info(f"Identity registry loaded {len(self._identities)} identities")

    def resolve(self, token: str) -> CallerIdentity | None:
        """Return the identity for ``token``, or None if unknown."""
        digest = hash_token(token)
        for entry in self._identities:
            if hmac.compare_digest(entry.token_sha256, digest):
                return CallerIdentity(principal=entry.principal, roles=entry.roles)
        return None


class PolicySource:
    """The policy file behind a gate and an identity registry.

    Rules and identities come from one document and are swapped together,
    so a token or rule removed from the file stops working on the first
    request after the change. ``refresh`` only re-reads the file when its
    modification time or size differ from the last load.

    Example:
        source = PolicySource(settings.POLICY_FILE, broker.gate, identities)
        source.refresh()
    """

    def __init__(self, path: str | Path, gate: PolicyGate, identities: IdentityRegistry):
        self.path = Path(path)
        self.gate = gate
        self.identities = identities
        self._stamp = self._stat()

    def _stat(self) -> tuple[int, int] | None:
        try:
            stat = self.path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def reload(self) -> None:
        """Re-read the document and swap rules and identities.

        Raises:
            ConfigurationError: If the document is unreadable or invalid;
                the current rules and identities stay in place
        """
        stamp = self._stat()
        document = load_policy_document(self.path)
        self.gate.replace_rules(document.rules)
        self.identities.replace_identities(document.identities)
        self._stamp = stamp

    def refresh(self) -> bool:
        """Reload when the file changed since the last load.

        A document that fails to load is logged once and the current
        policy stays in force until the file changes again.

        Returns:
            True if a new document was loaded
        """
        stamp = self._stat()
        if stamp == self._stamp:
            return False
        try:
            self.reload()
        except ConfigurationError as e:
            self._stamp = stamp
            logger.error(f"Policy reload failed, keeping current policy: {e}")
            return False
        return True
