"""
OAuth2 authorization-code login flow for desktop applications.

Drives the browser sign-in through a loopback redirect listener, exchanges the
authorization code (with PKCE) for tokens and verifies the resulting identity.

桌面应用的 OAuth2 授权码登录流程实现。
通过本地回环监听器接收浏览器回调，使用授权码（带 PKCE）换取令牌并校验登录身份。
"""

import base64
import hashlib
import logging
import secrets
import string
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack
from dataclasses import dataclass
from enum import Enum
from typing import Protocol
from urllib.parse import urlencode

import anyio
import httpx
from pydantic import BaseModel, Field

from oauth_login.client.discovery import DiscoveryResolver, StatusProbe
from oauth_login.client.identity import IdentityVerifier
from oauth_login.client.listener import LoopbackRedirectListener, PendingRedirect
from oauth_login.client.token import TokenExchangeClient
from oauth_login.shared._httpx_utils import LoginHttpClientFactory, create_login_http_client
from oauth_login.shared.auth import (
    DEFAULT_AUTHORIZATION_PATH,
    DEFAULT_TOKEN_PATH,
    DiscoveryDocument,
    IdentityInfo,
    LoginConfig,
    TokenResponse,
)
from oauth_login.shared.exceptions import (
    BrowserCancelled,
    DiscoveryError,
    IdentityMismatch,
    LoginFlowError,
    NetworkError,
    NetworkTimeout,
    RedirectTimeout,
)

logger = logging.getLogger(__name__)

# 普通 OAuth2 使用 localhost，OpenID Connect 使用 127.0.0.1
OAUTH2_REDIRECT_HOST = "localhost"
OIDC_REDIRECT_HOST = "127.0.0.1"

SUCCESS_BODY = "<html><body><h1>Login successful</h1><p>You can close this window.</p></body></html>"
ERROR_BODY = "<html><body><h1>Login failed</h1><p>Please return to the application and try again.</p></body></html>"
WRONG_USER_BODY = (
    "<html><body><h1>Wrong user</h1>"
    "<p>You logged in as a different user than the one configured for this account.</p></body></html>"
)


class FlowState(Enum):
    """单次登录尝试的状态。"""

    START = "start"
    DISCOVERY_PENDING = "discovery_pending"
    LISTENER_WAITING_FOR_REDIRECT = "listener_waiting_for_redirect"
    TOKEN_REQUESTED = "token_requested"
    IDENTITY_VERIFYING = "identity_verifying"
    COMPLETED = "completed"
    FAILED = "failed"


# 显式的状态转换表；COMPLETED 与 FAILED 为终止状态
FLOW_TRANSITIONS: dict[FlowState, frozenset[FlowState]] = {
    FlowState.START: frozenset({FlowState.DISCOVERY_PENDING, FlowState.FAILED}),
    FlowState.DISCOVERY_PENDING: frozenset({FlowState.LISTENER_WAITING_FOR_REDIRECT, FlowState.FAILED}),
    FlowState.LISTENER_WAITING_FOR_REDIRECT: frozenset({FlowState.TOKEN_REQUESTED, FlowState.FAILED}),
    FlowState.TOKEN_REQUESTED: frozenset({FlowState.IDENTITY_VERIFYING, FlowState.FAILED}),
    FlowState.IDENTITY_VERIFYING: frozenset({FlowState.COMPLETED, FlowState.FAILED}),
    FlowState.COMPLETED: frozenset(),
    FlowState.FAILED: frozenset(),
}


# 定义 PKCE（Proof Key for Code Exchange）参数的数据模型
class PKCEParameters(BaseModel):
    """PKCE（授权码校验）参数。"""

    code_verifier: str = Field(..., min_length=43, max_length=128)
    code_challenge: str = Field(..., min_length=43, max_length=128)

    @classmethod
    def generate(cls) -> "PKCEParameters":
        """生成新的 PKCE 参数。"""
        # 128 个字符的 code_verifier，字符集为 RFC 7636 允许的非保留字符
        code_verifier = "".join(secrets.choice(string.ascii_letters + string.digits + "-._~") for _ in range(128))
        digest = hashlib.sha256(code_verifier.encode()).digest()
        # base64-url 编码并去掉末尾的填充等号
        code_challenge = base64.urlsafe_b64encode(digest).decode().rstrip("=")
        return cls(code_verifier=code_verifier, code_challenge=code_challenge)


class CredentialStorage(Protocol):
    """账户凭据存储的协议（接口）类。"""

    async def set_credentials(self, tokens: TokenResponse, identity: IdentityInfo) -> None:
        """保存登录成功后得到的令牌和身份信息。"""
        ...


@dataclass(frozen=True)
class Endpoints:
    """本次登录使用的授权端点和令牌端点。"""

    authorization_endpoint: str
    token_endpoint: str
    auth_methods: tuple[str, ...] = ()
    discovered: bool = False

    @classmethod
    def resolve(cls, server_url: str, document: DiscoveryDocument | None) -> "Endpoints":
        if document is None:
            base_url = server_url.rstrip("/")
            return cls(
                authorization_endpoint=f"{base_url}{DEFAULT_AUTHORIZATION_PATH}",
                token_endpoint=f"{base_url}{DEFAULT_TOKEN_PATH}",
            )
        return cls(
            authorization_endpoint=document.authorization_endpoint,
            token_endpoint=document.token_endpoint,
            auth_methods=tuple(document.token_endpoint_auth_methods_supported),
            discovered=True,
        )

    @property
    def redirect_host(self) -> str:
        return OIDC_REDIRECT_HOST if self.discovered else OAUTH2_REDIRECT_HOST


@dataclass(frozen=True)
class AuthorizationRequest:
    client_id: str
    state: str
    redirect_uri: str
    scope: str | None = None
    pkce: PKCEParameters | None = None


def generate_state() -> str:
    """生成一次性的、不可预测的 state。"""
    return secrets.token_urlsafe(32)


def build_authorization_url(authorization_endpoint: str, request: AuthorizationRequest) -> str:
    """构造在系统浏览器中打开的授权 URL。"""
    auth_params = {
        "response_type": "code",
        "client_id": request.client_id,
        "redirect_uri": request.redirect_uri,
        "state": request.state,
    }
    if request.pkce is not None:
        auth_params["code_challenge"] = request.pkce.code_challenge
        auth_params["code_challenge_method"] = "S256"
    if request.scope:
        auth_params["scope"] = request.scope

    separator = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{separator}{urlencode(auth_params)}"


@dataclass(frozen=True)
class LoggedIn:
    access_token: str
    refresh_token: str
    user_id: str
    identity: IdentityInfo


@dataclass(frozen=True)
class LoginFailed:
    error: LoginFlowError


LoginResult = LoggedIn | LoginFailed

LinkHandler = Callable[[str], Awaitable[None]]
ResultHandler = Callable[[LoginResult], Awaitable[None]]


class AuthorizationCoordinator:
    """
    驱动一次完整的登录尝试。

    流程：status.php 探测 → 发现 → 启动回环监听器并发出授权链接 →
    等待匹配的回调 → 换取令牌 → 校验身份 → 回复浏览器 → 报告结果。

    每个实例只能 start() 一次；失败后需要用新的实例重新开始。
    """

    def __init__(
        self,
        config: LoginConfig,
        link_handler: LinkHandler,
        *,
        result_handler: ResultHandler | None = None,
        storage: CredentialStorage | None = None,
        http_client: httpx.AsyncClient | None = None,
        client_factory: LoginHttpClientFactory = create_login_http_client,
        status_probe: StatusProbe | None = None,
        discovery: DiscoveryResolver | None = None,
        token_client: TokenExchangeClient | None = None,
        identity_verifier: IdentityVerifier | None = None,
    ):
        self.config = config
        self.link_handler = link_handler
        self.result_handler = result_handler
        self.storage = storage
        self._http_client = http_client
        self._client_factory = client_factory
        self._status_probe = status_probe
        self._discovery = discovery
        self._token_client = token_client
        self._identity_verifier = identity_verifier

        self._flow_state = FlowState.START
        self._failed_in: FlowState | None = None
        self._started = False
        self._browser_cancelled = False
        self.request: AuthorizationRequest | None = None
        self.endpoints: Endpoints | None = None
        self.authorization_url: str | None = None
        self.result: LoginResult | None = None

    @property
    def flow_state(self) -> FlowState:
        return self._flow_state

    @property
    def failed_in(self) -> FlowState | None:
        """流程失败时所处的状态；未失败时为 None。"""
        return self._failed_in

    @property
    def browser_cancelled(self) -> bool:
        """浏览器是否在收到最终响应前关闭了回调连接。"""
        return self._browser_cancelled

    async def start(self) -> LoginResult:
        if self._started:
            raise RuntimeError("A login attempt can only be started once")
        self._started = True

        async with AsyncExitStack() as stack:
            client = self._http_client
            if client is None:
                client = await stack.enter_async_context(
                    self._client_factory(timeout=httpx.Timeout(self.config.timeout))
                )
            try:
                result: LoginResult = await self._run(client)
            except LoginFlowError as e:
                result = self._fail(e)

        self.result = result
        if self.result_handler is not None:
            await self.result_handler(result)
        return result

    def _transition(self, new_state: FlowState) -> None:
        if new_state not in FLOW_TRANSITIONS[self._flow_state]:
            raise RuntimeError(f"Invalid login flow transition: {self._flow_state.name} -> {new_state.name}")
        logger.debug(f"Login flow: {self._flow_state.name} -> {new_state.name}")
        self._flow_state = new_state

    def _fail(self, error: LoginFlowError) -> LoginFailed:
        self._failed_in = self._flow_state
        self._transition(FlowState.FAILED)
        logger.warning(f"Login failed in state {self._failed_in.name}: {error}")
        return LoginFailed(error)

    async def _run(self, client: httpx.AsyncClient) -> LoggedIn:
        config = self.config

        # 第一步：确认服务器可用（超时则在 START 状态直接失败）
        if config.probe_status:
            probe = self._status_probe or StatusProbe(client, config.server_url, config.timeout)
            await probe.probe()

        # 第二步：发现端点，决定回调地址使用的主机名
        self._transition(FlowState.DISCOVERY_PENDING)
        self.endpoints = endpoints = await self._resolve_endpoints(client)

        # 第三步：启动监听器，构造授权链接并通知调用方打开浏览器
        state = generate_state()
        async with LoopbackRedirectListener(state, read_timeout=config.listener_read_timeout) as listener:
            self.request = request = AuthorizationRequest(
                client_id=config.client_id,
                state=state,
                redirect_uri=f"http://{endpoints.redirect_host}:{listener.port}",
                scope=config.scope,
                pkce=PKCEParameters.generate() if config.use_pkce else None,
            )
            self.authorization_url = build_authorization_url(endpoints.authorization_endpoint, request)
            self._transition(FlowState.LISTENER_WAITING_FOR_REDIRECT)
            await self.link_handler(self.authorization_url)

            # 第四步：等待 state 匹配的浏览器回调
            pending = await self._wait_for_redirect(listener)
            self._transition(FlowState.TOKEN_REQUESTED)

            # 第五步：换取令牌并校验身份；失败时先回复浏览器再报告错误
            try:
                tokens, identity = await self._exchange_and_verify(client, endpoints, request, pending)
            except IdentityMismatch:
                await self._answer_browser(pending, 401, WRONG_USER_BODY)
                raise
            except LoginFlowError:
                await self._answer_browser(pending, 400, ERROR_BODY)
                raise

            if self.storage is not None:
                await self.storage.set_credentials(tokens, identity)

            if tokens.message_url:
                await self._answer_browser(pending, 303, headers={"Location": tokens.message_url})
            else:
                await self._answer_browser(pending, 200, SUCCESS_BODY)
            self._transition(FlowState.COMPLETED)

        logger.info(f"Logged in as {identity.id}")
        return LoggedIn(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            user_id=tokens.user_id or identity.id,
            identity=identity,
        )

    async def _resolve_endpoints(self, client: httpx.AsyncClient) -> Endpoints:
        config = self.config
        resolver = self._discovery or DiscoveryResolver(client, config.server_url, config.timeout)
        try:
            document = await resolver.resolve()
        except NetworkTimeout:
            raise
        except (DiscoveryError, NetworkError) as e:
            # 很多服务器早于发现机制，失败时使用默认端点
            logger.warning(f"Ignoring discovery failure, using default endpoints: {e}")
            document = None
        return Endpoints.resolve(config.server_url, document)

    async def _wait_for_redirect(self, listener: LoopbackRedirectListener) -> PendingRedirect:
        if self.config.redirect_timeout is None:
            return await listener.wait_for_redirect()
        with anyio.move_on_after(self.config.redirect_timeout):
            return await listener.wait_for_redirect()
        raise RedirectTimeout(f"No redirect received within {self.config.redirect_timeout}s")

    async def _exchange_and_verify(
        self,
        client: httpx.AsyncClient,
        endpoints: Endpoints,
        request: AuthorizationRequest,
        pending: PendingRedirect,
    ) -> tuple[TokenResponse, IdentityInfo]:
        config = self.config
        token_client = self._token_client or TokenExchangeClient(
            client,
            config.client_id,
            client_secret=config.client_secret,
            auth_methods=list(endpoints.auth_methods),
            timeout=config.timeout,
        )
        tokens = await token_client.exchange(
            endpoints.token_endpoint,
            pending.code,
            request.redirect_uri,
            code_verifier=request.pkce.code_verifier if request.pkce else None,
        )

        # 登录的用户必须与账户期望的用户一致；不一致时不再请求用户信息
        if config.expected_user is not None and tokens.user_id != config.expected_user:
            raise IdentityMismatch(config.expected_user, tokens.user_id)

        self._transition(FlowState.IDENTITY_VERIFYING)
        verifier = self._identity_verifier or IdentityVerifier(client, config.server_url, config.timeout)
        identity = await verifier.fetch(tokens.access_token)
        if tokens.user_id and identity.id != tokens.user_id:
            logger.warning(f"User info reports {identity.id!r} but the token was issued for {tokens.user_id!r}")
        return tokens, identity

    async def _answer_browser(
        self, pending: PendingRedirect, status: int, body: str = "", headers: dict[str, str] | None = None
    ) -> None:
        """回复浏览器；浏览器已关闭时只记录，不影响登录结果。"""
        try:
            await pending.respond(status, body, headers)
        except BrowserCancelled as e:
            self._browser_cancelled = True
            logger.info(f"Could not deliver the final response to the browser: {e}")
