"""
Wire models for the authorization-code login flow.

授权码登录流程中与服务端交互的数据模型。
"""

from urllib.parse import quote, urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

# 未提供发现文档时，相对于服务器地址使用的默认端点路径
DEFAULT_AUTHORIZATION_PATH = "/index.php/apps/oauth2/authorize"
DEFAULT_TOKEN_PATH = "/index.php/apps/oauth2/api/v1/token"
WELL_KNOWN_PATH = "/.well-known/openid-configuration"
STATUS_PATH = "/status.php"
USER_INFO_PATH = "/ocs/v2.php/cloud/user"

# message_url 中原样保留的字符（RFC 3986 保留字符以及已有的百分号编码）
MESSAGE_URL_SAFE_CHARS = ":/?#[]@!$&'()*+,;=%"


class ServerStatus(BaseModel):
    """status.php 返回的服务器能力信息。"""

    model_config = ConfigDict(extra="ignore")

    installed: bool = True
    maintenance: bool = False
    version: str | None = None
    versionstring: str | None = None
    productname: str | None = None


class DiscoveryDocument(BaseModel):
    """
    OpenID Connect 发现文档（只保留登录流程需要的字段）。
    """

    model_config = ConfigDict(extra="ignore")

    authorization_endpoint: str = Field(..., min_length=1)
    token_endpoint: str = Field(..., min_length=1)
    token_endpoint_auth_methods_supported: list[str] = Field(default_factory=list)


class TokenResponse(BaseModel):
    """令牌端点返回的 JSON。"""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: str = ""
    token_type: str = "Bearer"
    expires_in: int | None = None
    # 服务器声明的用户 ID，用于与期望账户比对
    user_id: str | None = None
    # 登录成功后浏览器应跳转到的地址（例如 owncloud://success）
    message_url: str | None = None

    @field_validator("message_url")
    @classmethod
    def _usable_message_url(cls, value: str | None) -> str | None:
        """
        message_url 会写进回调响应的 Location 头。

        含控制字符（包括 CR/LF）或没有 scheme 的地址被丢弃，浏览器改为收到 200 页面；
        非 ASCII 字符做百分号编码。
        """
        if value is None:
            return None
        value = value.strip()
        if not value or not value.isprintable():
            return None
        url = quote(value, safe=MESSAGE_URL_SAFE_CHARS)
        try:
            scheme = urlsplit(url).scheme
        except ValueError:
            return None
        return url if scheme else None


class IdentityInfo(BaseModel):
    """已登录用户的身份信息（来自 ocs/v2.php/cloud/user）。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(..., min_length=1)
    display_name: str | None = Field(default=None, alias="display-name")
    email: str | None = None


class LoginConfig(BaseModel):
    """单次登录尝试的配置。"""

    server_url: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: str | None = None
    scope: str | None = None
    # 如果设置，令牌中的 user_id 必须与之完全一致
    expected_user: str | None = None
    # 每个网络请求的超时时间（秒）
    timeout: float = Field(default=300.0, gt=0)
    # 等待浏览器回调的时间上限；None 表示一直等待
    redirect_timeout: float | None = Field(default=None, gt=0)
    probe_status: bool = True
    use_pkce: bool = True
    listener_read_timeout: float = Field(default=10.0, gt=0)
