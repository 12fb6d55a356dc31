from oauth_login.client.auth import (
    AuthorizationCoordinator,
    CredentialStorage,
    FlowState,
    LoggedIn,
    LoginFailed,
    LoginResult,
)

__all__ = [
    "AuthorizationCoordinator",
    "CredentialStorage",
    "FlowState",
    "LoggedIn",
    "LoginFailed",
    "LoginResult",
]
