from oauth_login.client.auth import (
    AuthorizationCoordinator,
    CredentialStorage,
    FlowState,
    LoggedIn,
    LoginFailed,
    LoginResult,
)
from oauth_login.shared.auth import IdentityInfo, LoginConfig, TokenResponse
from oauth_login.shared.exceptions import LoginFlowError

__all__ = [
    "AuthorizationCoordinator",
    "CredentialStorage",
    "FlowState",
    "IdentityInfo",
    "LoggedIn",
    "LoginConfig",
    "LoginFailed",
    "LoginFlowError",
    "LoginResult",
    "TokenResponse",
]
