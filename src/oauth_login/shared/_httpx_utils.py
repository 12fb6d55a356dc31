"""Utilities for creating and driving httpx clients for the login flow."""

import logging
from typing import Any, Protocol

import anyio
import httpx

from oauth_login.shared.exceptions import NetworkError, NetworkTimeout

logger = logging.getLogger(__name__)

__all__ = ["create_login_http_client", "LoginHttpClientFactory", "send_request"]


class LoginHttpClientFactory(Protocol):
    def __call__(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient: ...


def create_login_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
) -> httpx.AsyncClient:
    """Create a standardized httpx AsyncClient for talking to the login server.

    Redirects are not followed: a redirect from the status, token or user
    endpoints is reported as an error rather than silently chased.

    Args:
        headers: Optional headers to include with all requests.
        timeout: Request timeout as httpx.Timeout object. Defaults to 30 seconds.
        auth: Optional authentication handler.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    kwargs: dict[str, Any] = {"follow_redirects": False}

    if timeout is None:
        kwargs["timeout"] = httpx.Timeout(30.0)
    else:
        kwargs["timeout"] = timeout

    if headers is not None:
        kwargs["headers"] = headers

    if auth is not None:
        kwargs["auth"] = auth

    return httpx.AsyncClient(**kwargs)


async def send_request(client: httpx.AsyncClient, request: httpx.Request, timeout: float) -> httpx.Response:
    """
    在截止时间内发送请求并读取完整响应体。

    超时统一转换为 NetworkTimeout，其余传输错误转换为 NetworkError；
    HTTP 状态码由调用方自行判断。
    """
    try:
        with anyio.fail_after(timeout):
            response = await client.send(request)
            await response.aread()
            return response
    except TimeoutError as exc:
        logger.warning(f"{request.method} {request.url} timed out after {timeout}s")
        raise NetworkTimeout(f"{request.method} {request.url} timed out") from exc
    except httpx.TimeoutException as exc:
        logger.warning(f"{request.method} {request.url} timed out: {exc}")
        raise NetworkTimeout(f"{request.method} {request.url} timed out") from exc
    except httpx.HTTPError as exc:
        logger.warning(f"{request.method} {request.url} failed: {exc}")
        raise NetworkError(f"{request.method} {request.url} failed: {exc}") from exc
