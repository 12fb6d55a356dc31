"""Fetch the authenticated user's profile."""

import logging

import httpx
from pydantic import BaseModel, ValidationError

from oauth_login.shared._httpx_utils import send_request
from oauth_login.shared.auth import USER_INFO_PATH, IdentityInfo
from oauth_login.shared.exceptions import ServerError

logger = logging.getLogger(__name__)


class _OcsData(BaseModel):
    data: IdentityInfo


class _OcsEnvelope(BaseModel):
    ocs: _OcsData


class IdentityVerifier:
    """请求 `ocs/v2.php/cloud/user?format=json` 获取用户 ID、显示名和邮箱。"""

    def __init__(self, client: httpx.AsyncClient, server_url: str, timeout: float = 300.0):
        self.client = client
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout

    async def fetch(self, access_token: str) -> IdentityInfo:
        request = self.client.build_request(
            "GET",
            f"{self.server_url}{USER_INFO_PATH}",
            params={"format": "json"},
            headers={
                "Authorization": f"Bearer {access_token}",
                "OCS-APIREQUEST": "true",
            },
        )
        response = await send_request(self.client, request, self.timeout)
        if not response.is_success:
            raise ServerError(f"Fetching user info failed: {response.status_code}", response.status_code)

        try:
            envelope = _OcsEnvelope.model_validate_json(response.content)
        except ValidationError as e:
            raise ServerError(f"Invalid user info response: {e}", response.status_code)

        identity = envelope.ocs.data
        logger.debug(f"Fetched identity {identity.id} ({identity.display_name})")
        return identity
