import argparse
import logging
import os
import sys
import webbrowser
from functools import partial

import anyio
from dotenv import load_dotenv

from oauth_login.client.auth import AuthorizationCoordinator, LoggedIn
from oauth_login.shared.auth import LoginConfig

# 如果没有设置 Python 警告选项
if not sys.warnoptions:
    import warnings

    warnings.simplefilter("ignore")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("client")


# 打开系统浏览器进行登录
async def open_browser(url: str) -> None:
    logger.info("Opening browser for login: %s", url)
    if not webbrowser.open(url):
        # 无法打开浏览器时让用户手动复制链接
        print(f"Please open this URL in your browser:\n{url}")


async def main(config: LoginConfig, show_tokens: bool) -> int:
    coordinator = AuthorizationCoordinator(config, open_browser)
    result = await coordinator.start()

    if isinstance(result, LoggedIn):
        logger.info("Logged in as %s (%s)", result.identity.display_name, result.user_id)
        if show_tokens:
            print(f"access_token={result.access_token}")
            print(f"refresh_token={result.refresh_token}")
        return 0

    logger.error("Login failed: %s", result.error)
    return 1


def cli():
    # 允许通过当前目录下的 .env 文件提供 OAUTH_LOGIN_* 默认值
    load_dotenv()
    parser = argparse.ArgumentParser(description="Log in to a server with the OAuth2 authorization code flow")
    parser.add_argument("server_url", help="服务器地址，例如 https://cloud.example.com")
    parser.add_argument("--client-id", default=os.getenv("OAUTH_LOGIN_CLIENT_ID"), help="OAuth 客户端 ID")
    parser.add_argument("--client-secret", default=os.getenv("OAUTH_LOGIN_CLIENT_SECRET"), help="OAuth 客户端密钥")
    parser.add_argument("--scope", default=os.getenv("OAUTH_LOGIN_SCOPE"), help="请求的 scope")
    parser.add_argument("--user", dest="expected_user", help="期望登录的用户 ID")
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(os.getenv("OAUTH_LOGIN_TIMEOUT", "300")),
        help="每个网络请求的超时时间（秒）",
    )
    parser.add_argument("--no-status-probe", dest="probe_status", action="store_false", help="跳过 status.php 探测")
    parser.add_argument("--no-pkce", dest="use_pkce", action="store_false", help="不使用 PKCE")
    parser.add_argument("--show-tokens", action="store_true", help="登录成功后打印令牌")

    args = parser.parse_args()
    if not args.client_id:
        parser.error("--client-id (or OAUTH_LOGIN_CLIENT_ID) is required")

    config = LoginConfig(
        server_url=args.server_url,
        client_id=args.client_id,
        client_secret=args.client_secret,
        scope=args.scope,
        expected_user=args.expected_user,
        timeout=args.timeout,
        probe_status=args.probe_status,
        use_pkce=args.use_pkce,
    )
    sys.exit(anyio.run(partial(main, config, args.show_tokens)))


if __name__ == "__main__":
    cli()
