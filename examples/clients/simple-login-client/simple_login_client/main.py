#!/usr/bin/env python3
"""
简单的桌面登录客户端示例。

该客户端通过系统浏览器完成 OAuth2 授权码登录，
并把得到的令牌和用户信息保存在内存中。
"""

import asyncio
import os
import webbrowser

from dotenv import load_dotenv

from oauth_login.client.auth import AuthorizationCoordinator, CredentialStorage, LoggedIn, LoginResult
from oauth_login.shared.auth import IdentityInfo, LoginConfig, TokenResponse


class InMemoryCredentialStorage(CredentialStorage):
    """简单的内存中凭据存储实现类。"""

    def __init__(self):
        self.tokens: TokenResponse | None = None
        self.identity: IdentityInfo | None = None

    async def set_credentials(self, tokens: TokenResponse, identity: IdentityInfo) -> None:
        """
        保存登录成功后的令牌和身份信息
        参数:
            tokens: 令牌端点返回的 TokenResponse
            identity: 用户信息端点返回的 IdentityInfo
        """
        self.tokens = tokens
        self.identity = identity


class SimpleLoginClient:
    """带有浏览器登录的简单客户端。"""

    def __init__(self, config: LoginConfig):
        self.config = config
        self.storage = InMemoryCredentialStorage()

    async def login(self) -> LoginResult:
        """
        运行一次完整的登录流程。
        """
        print(f"🔗 正在登录 {self.config.server_url}...")

        async def _open_browser(authorization_url: str) -> None:
            """
            在浏览器中打开授权地址。
            """
            print(f"正在打开浏览器进行授权: {authorization_url}")
            webbrowser.open(authorization_url)

        async def _on_result(result: LoginResult) -> None:
            if isinstance(result, LoggedIn):
                print(f"✅ 登录成功: {result.identity.display_name} <{result.identity.email}>")
            else:
                print(f"❌ 登录失败: {result.error}")

        coordinator = AuthorizationCoordinator(
            self.config,
            _open_browser,
            result_handler=_on_result,
            storage=self.storage,
        )
        return await coordinator.start()


async def main():
    """主入口函数。"""
    # 服务器地址和客户端 ID 可通过环境变量（或 .env 文件）覆盖
    load_dotenv()
    config = LoginConfig(
        server_url=os.getenv("OAUTH_LOGIN_SERVER_URL", "http://localhost:8080"),
        client_id=os.getenv("OAUTH_LOGIN_CLIENT_ID", "desktop-client"),
        client_secret=os.getenv("OAUTH_LOGIN_CLIENT_SECRET"),
        expected_user=os.getenv("OAUTH_LOGIN_USER"),
    )

    print("🚀 简易登录客户端启动")
    client = SimpleLoginClient(config)
    result = await client.login()
    if isinstance(result, LoggedIn) and client.storage.tokens:
        print(f"令牌类型: {client.storage.tokens.token_type}")


def cli():
    """作为命令行工具的入口函数。"""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
