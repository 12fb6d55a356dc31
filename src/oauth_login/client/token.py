"""
Authorization-code-for-token exchange.

使用授权码换取访问令牌。
"""

import logging

import httpx
from pydantic import ValidationError

from oauth_login.shared._httpx_utils import send_request
from oauth_login.shared.auth import TokenResponse
from oauth_login.shared.exceptions import ServerError, TokenError

logger = logging.getLogger(__name__)

CLIENT_SECRET_BASIC = "client_secret_basic"
CLIENT_SECRET_POST = "client_secret_post"


def select_auth_method(supported_methods: list[str] | None) -> str:
    """
    选择令牌端点的客户端认证方式。

    没有发现文档或服务器支持 client_secret_basic 时使用 HTTP Basic；
    只声明了 client_secret_post 时把密钥放进表单。
    """
    if not supported_methods or CLIENT_SECRET_BASIC in supported_methods:
        return CLIENT_SECRET_BASIC
    if CLIENT_SECRET_POST in supported_methods:
        return CLIENT_SECRET_POST
    return CLIENT_SECRET_BASIC


class TokenExchangeClient:
    """向令牌端点发送 authorization_code 授权请求。"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        client_id: str,
        client_secret: str | None = None,
        auth_methods: list[str] | None = None,
        timeout: float = 300.0,
    ):
        self.client = client
        self.client_id = client_id
        self.client_secret = client_secret
        self.auth_method = select_auth_method(auth_methods)
        self.timeout = timeout

    def build_request(
        self, token_endpoint: str, code: str, redirect_uri: str, code_verifier: str | None = None
    ) -> httpx.Request:
        """构建令牌请求；端点地址原样使用（可能与服务器不在同一主机）。"""
        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            token_data["code_verifier"] = code_verifier

        auth = None
        if self.client_secret:
            if self.auth_method == CLIENT_SECRET_POST:
                token_data["client_secret"] = self.client_secret
            else:
                auth = httpx.BasicAuth(self.client_id, self.client_secret)

        request = self.client.build_request(
            "POST",
            token_endpoint,
            data=token_data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if auth is not None:
            # BasicAuth 只修改请求头，直接应用到已构建的请求上
            request = next(auth.auth_flow(request))
        return request

    async def exchange(
        self, token_endpoint: str, code: str, redirect_uri: str, code_verifier: str | None = None
    ) -> TokenResponse:
        if not code:
            raise ValueError("An authorization code is required")

        request = self.build_request(token_endpoint, code, redirect_uri, code_verifier)
        # OAuth2 的令牌请求总是携带表单数据；空请求体是调用方的编程错误
        if not request.content:
            raise ValueError("Token request must carry a form body")

        response = await send_request(self.client, request, self.timeout)
        if not response.is_success:
            raise ServerError(f"Token exchange failed: {response.status_code}", response.status_code)

        try:
            token_response = TokenResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise TokenError(f"Invalid token response: {e}")

        logger.debug(f"Received {token_response.token_type} token for user {token_response.user_id}")
        return token_response
