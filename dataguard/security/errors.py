from __future__ import annotations


class SecurityError(Exception):
    """Base error for authentication and rule enforcement failures."""


class AuthenticationFailed(SecurityError):
    """Raised when a token is missing, unknown, expired or revoked."""


class AuthorizationDenied(SecurityError):
    """Raised when a row security rule blocks all access to a table."""

    def __init__(self, table: str, message: str | None = None) -> None:
        self.table = table
        super().__init__(message or f"access denied to {table}")


class RuleUnavailable(SecurityError):
    """Raised when no rule has been loaded for a (schema, table, user) key."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"no {kind} security rules loaded for {key}")


class MaskingFailure(SecurityError):
    """Raised when a column rule path cannot be resolved against a record."""


class UpstreamFailure(SecurityError):
    """Raised when the rule store or an OAuth2 provider fails."""


class StateFailure(SecurityError):
    """Raised for invalid, expired or reused OAuth2 CSRF states."""


class ProviderNotFound(SecurityError):
    def __init__(self, provider: str, available: list[str]) -> None:
        self.provider = provider
        self.available = sorted(available)
        super().__init__(f"OAuth2 provider '{provider}' not found (available: {', '.join(self.available) or 'none'})")


class CapabilityNotSupported(SecurityError):
    def __init__(self, capability: str) -> None:
        self.capability = capability
        super().__init__(f"capability '{capability}' is not supported by the configured providers")
