"""
Server capability probe and OpenID Connect discovery.

服务器能力探测（status.php）与 OpenID Connect 发现文档解析。
"""

import logging

import httpx
from pydantic import ValidationError

from oauth_login.shared._httpx_utils import send_request
from oauth_login.shared.auth import STATUS_PATH, WELL_KNOWN_PATH, DiscoveryDocument, ServerStatus
from oauth_login.shared.exceptions import DiscoveryError, ServerError

logger = logging.getLogger(__name__)

# 这些状态码表示服务器不支持发现，不算错误
DISCOVERY_UNSUPPORTED_STATUSES = frozenset({404, 410})


class StatusProbe:
    """请求 status.php，确认服务器可用且不在维护中。"""

    def __init__(self, client: httpx.AsyncClient, server_url: str, timeout: float = 300.0):
        self.client = client
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout

    async def probe(self) -> ServerStatus:
        request = self.client.build_request("GET", f"{self.server_url}{STATUS_PATH}")
        response = await send_request(self.client, request, self.timeout)
        if not response.is_success:
            raise ServerError(f"status.php returned {response.status_code}", response.status_code)

        try:
            status = ServerStatus.model_validate_json(response.content)
        except ValidationError as e:
            raise ServerError(f"Invalid status.php response: {e}", response.status_code)

        if not status.installed:
            raise ServerError("The server is not installed", response.status_code)
        if status.maintenance:
            raise ServerError("The server is in maintenance mode", response.status_code)

        logger.debug(f"Server {status.productname} {status.versionstring or status.version} is available")
        return status


class DiscoveryResolver:
    """
    获取 `.well-known/openid-configuration`。

    - 404/410：服务器不支持发现，返回 None（回退到默认端点）
    - 其他非 2xx 或文档无效：抛出 DiscoveryError
    - 超时/网络错误：NetworkTimeout / NetworkError 原样抛出
    """

    def __init__(self, client: httpx.AsyncClient, server_url: str, timeout: float = 300.0):
        self.client = client
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout

    @property
    def discovery_url(self) -> str:
        return f"{self.server_url}{WELL_KNOWN_PATH}"

    async def resolve(self) -> DiscoveryDocument | None:
        request = self.client.build_request("GET", self.discovery_url)
        response = await send_request(self.client, request, self.timeout)

        if response.status_code in DISCOVERY_UNSUPPORTED_STATUSES:
            logger.debug(f"Server does not provide {WELL_KNOWN_PATH} ({response.status_code})")
            return None
        if not response.is_success:
            raise DiscoveryError(f"Discovery failed: {response.status_code}")

        try:
            document = DiscoveryDocument.model_validate_json(response.content)
        except ValidationError as e:
            raise DiscoveryError(f"Invalid discovery document: {e}")

        logger.info(f"Using OpenID Connect endpoints from {self.discovery_url}")
        return document
