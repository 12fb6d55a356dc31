"""Fake login server and browser used by the flow tests."""

import json
from collections.abc import Awaitable, Callable
from urllib.parse import parse_qs, urlsplit

import anyio
import httpx
from anyio.abc import ByteStream

SERVER_URL = "https://cloud.example.com/owncloud"
CLIENT_ID = "desktop-client"
CODE = "c0ffee-code"

TOKEN_PAYLOAD = {
    "access_token": "123",
    "refresh_token": "456",
    "message_url": "owncloud://success",
    "user_id": "admin",
    "token_type": "Bearer",
}

STATUS_PAYLOAD = {
    "installed": True,
    "maintenance": False,
    "needsDbUpgrade": False,
    "version": "10.5.0.10",
    "versionstring": "10.5.0",
    "edition": "Enterprise",
    "productname": "ownCloud",
}

USER_PAYLOAD = {
    "ocs": {
        "data": {
            "display-name": "Admin",
            "id": "admin",
            "email": "admin@admin.admin",
        }
    }
}

Handler = Callable[[httpx.Request], Awaitable[httpx.Response]]


def json_response(payload: object, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload).encode(), headers={"Content-Type": "application/json"})


class FakeServer:
    """
    Routes requests the way the real server would.

    Each endpoint is an overridable coroutine, and every call is recorded in
    `calls` so tests can check ordering.
    """

    def __init__(self):
        self.calls: list[str] = []
        self.requests: dict[str, httpx.Request] = {}
        self.status: Handler = self._status
        self.well_known: Handler = self._well_known
        self.token: Handler = self._token
        self.user: Handler = self._user
        self.token_payload = dict(TOKEN_PAYLOAD)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/.well-known/openid-configuration"):
            name, handler = "well-known", self.well_known
        elif path.endswith("/status.php"):
            name, handler = "status", self.status
        elif path.endswith("/ocs/v2.php/cloud/user"):
            name, handler = "user", self.user
        elif request.method == "POST":
            name, handler = "token", self.token
        else:
            return httpx.Response(404)
        self.calls.append(name)
        self.requests[name] = request
        return await handler(request)

    async def _status(self, request: httpx.Request) -> httpx.Response:
        return json_response(STATUS_PAYLOAD)

    async def _well_known(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    async def _token(self, request: httpx.Request) -> httpx.Response:
        return json_response(self.token_payload)

    async def _user(self, request: httpx.Request) -> httpx.Response:
        return json_response(USER_PAYLOAD)


def redirect_target(authorization_url: str, code: str = CODE) -> tuple[str, str]:
    """Returns the loopback URL the server would redirect to, and the redirect_uri host."""
    query = parse_qs(urlsplit(authorization_url).query)
    redirect_uri = query["redirect_uri"][0]
    state = query["state"][0]
    return f"{redirect_uri}/?code={code}&state={state}", urlsplit(redirect_uri).hostname or ""


def redirect_port(authorization_url: str) -> int:
    query = parse_qs(urlsplit(authorization_url).query)
    port = urlsplit(query["redirect_uri"][0]).port
    assert port is not None
    return port


async def read_all(stream: ByteStream) -> bytes:
    data = b""
    while True:
        try:
            data += await stream.receive()
        except (anyio.EndOfStream, anyio.BrokenResourceError):
            return data


class FakeBrowser:
    """Follows the authorization URL straight to the loopback redirect."""

    def __init__(self):
        self.responses: list[httpx.Response] = []
        self.opened: list[str] = []

    async def visit(self, authorization_url: str) -> httpx.Response:
        self.opened.append(authorization_url)
        target, _ = redirect_target(authorization_url)
        # 不跟随 owncloud://success 之类的重定向
        async with httpx.AsyncClient(follow_redirects=False, trust_env=False, timeout=10) as browser:
            response = await browser.get(target)
        self.responses.append(response)
        return response
