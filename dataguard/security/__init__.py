from dataguard.security.authenticators import (
    DatabaseAuthenticator,
    HeaderAuthenticator,
    JWTAuthenticator,
    new_database_authenticator,
    new_facebook_authenticator,
    new_github_authenticator,
    new_google_authenticator,
    new_microsoft_authenticator,
    new_multi_provider_authenticator,
)
from dataguard.security.cache import SecurityList
from dataguard.security.composite import CompositeSecurityProvider
from dataguard.security.context import LoginRequest, LoginResponse, LogoutRequest, RegisterRequest, UserContext
from dataguard.security.errors import (
    AuthenticationFailed,
    AuthorizationDenied,
    CapabilityNotSupported,
    MaskingFailure,
    ProviderNotFound,
    RuleUnavailable,
    SecurityError,
    StateFailure,
    UpstreamFailure,
)
from dataguard.security.fls import apply_column_rules, guard_record_update, mask_string
from dataguard.security.middleware import (
    AuthMiddleware,
    get_current_user,
    install_security,
    require_authenticated_user,
)
from dataguard.security.oauth2 import OAuth2Config, OAuth2Provider, OAuth2Token
from dataguard.security.providers import (
    ConfigColumnSecurityProvider,
    ConfigRowSecurityProvider,
    DatabaseColumnSecurityProvider,
    DatabaseRowSecurityProvider,
)
from dataguard.security.repository import SecuredRepository
from dataguard.security.rls import apply_row_security
from dataguard.security.rules import ColumnSecurity, RowSecurity
from dataguard.security.store import RuleStore, SqlRuleStore, StoreResult, TwoFactorStore
from dataguard.security.totp import (
    DatabaseTwoFactorProvider,
    MemoryTwoFactorProvider,
    TOTPGenerator,
    TwoFactorAuthenticator,
    TwoFactorConfig,
)

__all__ = [
    "AuthMiddleware",
    "AuthenticationFailed",
    "AuthorizationDenied",
    "CapabilityNotSupported",
    "ColumnSecurity",
    "CompositeSecurityProvider",
    "ConfigColumnSecurityProvider",
    "ConfigRowSecurityProvider",
    "DatabaseAuthenticator",
    "DatabaseColumnSecurityProvider",
    "DatabaseRowSecurityProvider",
    "DatabaseTwoFactorProvider",
    "HeaderAuthenticator",
    "JWTAuthenticator",
    "LoginRequest",
    "LoginResponse",
    "LogoutRequest",
    "MaskingFailure",
    "MemoryTwoFactorProvider",
    "OAuth2Config",
    "OAuth2Provider",
    "OAuth2Token",
    "ProviderNotFound",
    "RegisterRequest",
    "RowSecurity",
    "RuleStore",
    "RuleUnavailable",
    "SecuredRepository",
    "SecurityError",
    "SecurityList",
    "SqlRuleStore",
    "StateFailure",
    "StoreResult",
    "TOTPGenerator",
    "TwoFactorAuthenticator",
    "TwoFactorConfig",
    "TwoFactorStore",
    "UpstreamFailure",
    "UserContext",
    "apply_column_rules",
    "apply_row_security",
    "get_current_user",
    "guard_record_update",
    "install_security",
    "mask_string",
    "new_database_authenticator",
    "new_facebook_authenticator",
    "new_github_authenticator",
    "new_google_authenticator",
    "new_microsoft_authenticator",
    "new_multi_provider_authenticator",
    "require_authenticated_user",
]
