import base64
from urllib.parse import parse_qs

import httpx
import pytest

from oauth_login.client.token import (
    CLIENT_SECRET_BASIC,
    CLIENT_SECRET_POST,
    TokenExchangeClient,
    select_auth_method,
)
from oauth_login.shared.exceptions import ServerError, TokenError
from tests.client.fakes import CLIENT_ID, CODE, SERVER_URL, FakeServer, json_response

TOKEN_ENDPOINT = f"{SERVER_URL}/index.php/apps/oauth2/api/v1/token"
REDIRECT_URI = "http://localhost:54321"


def form(request: httpx.Request) -> dict[str, list[str]]:
    return parse_qs(request.content.decode())


@pytest.mark.parametrize(
    "methods, expected",
    [
        (None, CLIENT_SECRET_BASIC),
        ([], CLIENT_SECRET_BASIC),
        (["client_secret_basic", "client_secret_post"], CLIENT_SECRET_BASIC),
        (["client_secret_post"], CLIENT_SECRET_POST),
        (["private_key_jwt"], CLIENT_SECRET_BASIC),
    ],
)
def test_select_auth_method(methods, expected):
    assert select_auth_method(methods) == expected


class TestBuildRequest:
    def test_form_fields(self):
        token_client = TokenExchangeClient(httpx.AsyncClient(), CLIENT_ID)
        request = token_client.build_request(TOKEN_ENDPOINT, CODE, REDIRECT_URI, "verifier")

        assert request.method == "POST"
        assert str(request.url) == TOKEN_ENDPOINT
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert form(request) == {
            "grant_type": ["authorization_code"],
            "code": [CODE],
            "client_id": [CLIENT_ID],
            "redirect_uri": [REDIRECT_URI],
            "code_verifier": ["verifier"],
        }
        assert "Authorization" not in request.headers

    def test_secret_in_basic_header(self):
        token_client = TokenExchangeClient(httpx.AsyncClient(), CLIENT_ID, "s3cret")
        request = token_client.build_request(TOKEN_ENDPOINT, CODE, REDIRECT_URI)

        expected = base64.b64encode(f"{CLIENT_ID}:s3cret".encode()).decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert "client_secret" not in form(request)
        assert "code_verifier" not in form(request)

    def test_secret_in_form(self):
        token_client = TokenExchangeClient(httpx.AsyncClient(), CLIENT_ID, "s3cret", ["client_secret_post"])
        request = token_client.build_request(TOKEN_ENDPOINT, CODE, REDIRECT_URI)

        assert form(request)["client_secret"] == ["s3cret"]
        assert "Authorization" not in request.headers


@pytest.mark.anyio
class TestExchange:
    async def test_success(self, server: FakeServer):
        async with server.client() as client:
            tokens = await TokenExchangeClient(client, CLIENT_ID).exchange(TOKEN_ENDPOINT, CODE, REDIRECT_URI)

        assert tokens.access_token == "123"
        assert tokens.refresh_token == "456"
        assert tokens.user_id == "admin"
        assert tokens.message_url == "owncloud://success"
        assert form(server.requests["token"])["code"] == [CODE]

    async def test_missing_access_token(self, server: FakeServer):
        del server.token_payload["access_token"]
        async with server.client() as client:
            with pytest.raises(TokenError):
                await TokenExchangeClient(client, CLIENT_ID).exchange(TOKEN_ENDPOINT, CODE, REDIRECT_URI)

    async def test_invalid_json(self, server: FakeServer):
        async def token(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>oops</html>")

        server.token = token
        async with server.client() as client:
            with pytest.raises(TokenError):
                await TokenExchangeClient(client, CLIENT_ID).exchange(TOKEN_ENDPOINT, CODE, REDIRECT_URI)

    @pytest.mark.parametrize("status_code", [400, 401, 500])
    async def test_error_status(self, server: FakeServer, status_code: int):
        async def token(request: httpx.Request) -> httpx.Response:
            return json_response({"error": "invalid_grant"}, status_code)

        server.token = token
        async with server.client() as client:
            with pytest.raises(ServerError) as exc_info:
                await TokenExchangeClient(client, CLIENT_ID).exchange(TOKEN_ENDPOINT, CODE, REDIRECT_URI)
        assert exc_info.value.status_code == status_code

    async def test_empty_code(self, server: FakeServer):
        async with server.client() as client:
            with pytest.raises(ValueError):
                await TokenExchangeClient(client, CLIENT_ID).exchange(TOKEN_ENDPOINT, "", REDIRECT_URI)
        assert server.calls == []
