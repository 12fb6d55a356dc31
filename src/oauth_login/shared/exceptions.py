"""
Error taxonomy for the desktop login flow.

桌面端登录流程中使用的异常层次结构。
"""


# 登录流程所有可预期错误的基类
class LoginFlowError(Exception):
    """登录流程错误的基类异常。"""


# 传输层失败（连接被拒绝、DNS 失败等）
class NetworkError(LoginFlowError):
    """网络请求失败时引发的异常。"""


class NetworkTimeout(NetworkError):
    """单个网络请求超过截止时间时引发的异常。"""


class ServerError(LoginFlowError):
    """服务端返回非 2xx 状态码时引发的异常。"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# 发现文档存在但无法使用；协调器会退回到默认端点
class DiscoveryError(LoginFlowError):
    """发现文档获取或解析失败时引发的异常。"""


class TokenError(LoginFlowError):
    """令牌响应无效（例如缺少 access_token）时引发的异常。"""


class IdentityMismatch(LoginFlowError):
    """令牌中的 user_id 与期望的账户不一致时引发的异常。"""

    def __init__(self, expected: str, actual: str | None):
        super().__init__(f"Logged in as {actual!r}, expected {expected!r}")
        self.expected = expected
        self.actual = actual


class BrowserCancelled(LoginFlowError):
    """浏览器在收到最终响应之前关闭了回调连接。"""


class RedirectTimeout(LoginFlowError):
    """在限定时间内没有收到匹配的浏览器回调。"""
