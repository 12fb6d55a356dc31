"""
Loopback redirect listener.

Accepts raw TCP connections on a loopback port, parses only the first request
line, and publishes the first request whose `state` matches. That winning
connection is held open until the coordinator has an answer for the browser.

本地回环重定向监听器：只解析请求行，第一个 state 匹配的请求获胜并保持连接，
直到协调器给出最终响应。
"""

import logging
import secrets
import socket
from dataclasses import dataclass
from http import HTTPStatus
from types import TracebackType
from urllib.parse import parse_qs, urlsplit

import anyio
from anyio.abc import Listener, SocketAttribute, SocketStream, TaskGroup
from anyio.streams.stapled import MultiListener

from oauth_login.shared.exceptions import BrowserCancelled

logger = logging.getLogger(__name__)

# 请求行最大长度，超过则视为垃圾数据
MAX_REQUEST_LINE = 8192

NOT_FOUND_BODY = "<html><body><h1>Not found</h1></body></html>"


@dataclass(frozen=True)
class RequestLine:
    method: str
    target: str
    version: str


@dataclass(frozen=True)
class RedirectResult:
    """浏览器回调中携带的授权码和 state。"""

    code: str
    state: str


def parse_request_line(data: bytes) -> RequestLine | None:
    """
    解析 `METHOD SP TARGET SP VERSION` 形式的请求行。

    无法解析（截断、二进制、非 UTF-8、字段数量不对、空数据）时返回 None。
    """
    line, newline, _ = data.partition(b"\n")
    if not newline:
        # 没有换行符：请求被截断
        return None
    try:
        text = line.decode("utf-8").removesuffix("\r")
    except UnicodeDecodeError:
        return None
    if not text or not text.isprintable():
        return None

    parts = text.split(" ")
    if len(parts) != 3:
        return None
    method, target, version = parts
    if not method.isalpha() or not method.isupper():
        return None
    if not target.startswith("/"):
        return None
    if not version.startswith("HTTP/"):
        return None
    return RequestLine(method=method, target=target, version=version)


def extract_redirect(target: str, expected_state: str) -> RedirectResult | None:
    """从请求目标中提取 code/state；state 必须与期望值完全一致。"""
    params = parse_qs(urlsplit(target).query, keep_blank_values=True)
    codes = params.get("code", [])
    states = params.get("state", [])
    # 参数重复视为无效，避免歧义
    if len(codes) != 1 or len(states) != 1 or not codes[0]:
        return None
    state = states[0]
    if not secrets.compare_digest(state.encode(), expected_state.encode()):
        return None
    return RedirectResult(code=codes[0], state=state)


def render_response(status: int, body: str = "", headers: dict[str, str] | None = None) -> bytes:
    """渲染一个最小的 HTTP/1.1 响应，并要求浏览器关闭连接。"""
    payload = body.encode("utf-8")
    lines = [f"HTTP/1.1 {status} {HTTPStatus(status).phrase}"]
    all_headers = {"Content-Type": "text/html; charset=utf-8", **(headers or {})}
    all_headers["Content-Length"] = str(len(payload))
    all_headers["Connection"] = "close"
    for name, value in all_headers.items():
        # 头部中的 CR/LF 会拆分出额外的头部
        if any(ch in f"{name}{value}" for ch in "\r\n"):
            raise ValueError(f"Invalid header {name!r}: contains a line break")
    lines.extend(f"{name}: {value}" for name, value in all_headers.items())
    head = "\r\n".join(lines) + "\r\n\r\n"
    return head.encode("latin-1") + payload


class PendingRedirect:
    """
    获胜的浏览器连接。

    连接一直保持打开，直到 respond() 被调用；如果浏览器先关闭了连接，
    respond() 会抛出 BrowserCancelled，但不会影响令牌交换等后续步骤。
    """

    def __init__(self, stream: SocketStream, result: RedirectResult):
        self.result = result
        self._stream = stream
        self._finished = anyio.Event()
        self._peer_closed = False
        self._watch_scope: anyio.CancelScope | None = None

    @property
    def code(self) -> str:
        return self.result.code

    @property
    def state(self) -> str:
        return self.result.state

    @property
    def peer_closed(self) -> bool:
        return self._peer_closed

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    async def hold(self) -> None:
        """在监听器的任务中运行：吞掉剩余请求数据，并检测浏览器是否断开。"""
        if self._finished.is_set():
            return
        with anyio.CancelScope() as scope:
            self._watch_scope = scope
            try:
                while True:
                    await self._stream.receive()
            except (anyio.EndOfStream, anyio.BrokenResourceError, anyio.ClosedResourceError):
                self._peer_closed = True
                logger.debug("Browser closed the redirect connection before the response was sent")
        await self._finished.wait()

    async def respond(self, status: int, body: str = "", headers: dict[str, str] | None = None) -> None:
        """发送最终响应并关闭连接。"""
        if self._finished.is_set():
            raise RuntimeError("The browser connection has already been answered")
        try:
            if self._peer_closed:
                raise BrowserCancelled("The browser closed the connection")
            try:
                await self._stream.send(render_response(status, body, headers))
            except (anyio.BrokenResourceError, anyio.ClosedResourceError) as exc:
                raise BrowserCancelled("The browser connection was aborted") from exc
        finally:
            self._finish()
            await self._close_stream()

    async def abandon(self) -> None:
        """不发送任何响应直接关闭连接（用于流程被取消时）。"""
        if self._finished.is_set():
            return
        self._finish()
        await self._close_stream()

    def _finish(self) -> None:
        self._finished.set()
        if self._watch_scope is not None:
            self._watch_scope.cancel()

    async def _close_stream(self) -> None:
        with anyio.CancelScope(shield=True):
            await self._stream.aclose()


class LoopbackRedirectListener:
    """
    在回环地址上监听浏览器回调的微型 HTTP 服务。

    用法::

        async with LoopbackRedirectListener(state) as listener:
            redirect_uri = f"http://localhost:{listener.port}"
            pending = await listener.wait_for_redirect()
            ...
            await pending.respond(303, headers={"Location": "app://success"})
    """

    def __init__(self, expected_state: str, *, read_timeout: float = 10.0):
        if not expected_state:
            raise ValueError("expected_state must not be empty")
        self.expected_state = expected_state
        self.read_timeout = read_timeout
        self._listener: Listener[SocketStream] | None = None
        self._task_group: TaskGroup | None = None
        self._accept_scope: anyio.CancelScope | None = None
        self._winner: PendingRedirect | None = None
        self._redirect_received = anyio.Event()
        self._port: int | None = None

    @property
    def port(self) -> int:
        if self._port is None:
            raise RuntimeError("Listener is not running")
        return self._port

    @property
    def accepting(self) -> bool:
        return self._accept_scope is not None and not self._accept_scope.cancel_called

    async def __aenter__(self) -> "LoopbackRedirectListener":
        self._listener = await self._bind()
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._serve)
        logger.debug(f"Listening for the OAuth redirect on port {self._port}")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        if self._winner is not None:
            await self._winner.abandon()
        assert self._task_group is not None
        # 调用方的异常原样向外传播，不交给任务组包装成 ExceptionGroup
        self._task_group.cancel_scope.cancel()
        try:
            await self._task_group.__aexit__(None, None, None)
        finally:
            await self._close_listener()
        return None

    async def wait_for_redirect(self) -> PendingRedirect:
        """等待第一个 state 匹配的回调。"""
        await self._redirect_received.wait()
        assert self._winner is not None
        return self._winner

    async def _bind(self) -> Listener[SocketStream]:
        # 先在 IPv4 回环上获取随机端口，再尝试在 IPv6 回环上绑定同一端口
        ipv4 = await anyio.create_tcp_listener(local_host="127.0.0.1", local_port=0)
        self._port = ipv4.extra(SocketAttribute.local_port)
        if not socket.has_ipv6:
            return ipv4
        try:
            ipv6 = await anyio.create_tcp_listener(local_host="::1", local_port=self._port)
        except OSError as exc:
            logger.debug(f"Not listening on ::1: {exc}")
            return ipv4
        return MultiListener([ipv4, ipv6])

    async def _serve(self) -> None:
        assert self._listener is not None and self._task_group is not None
        with anyio.CancelScope() as scope:
            self._accept_scope = scope
            try:
                await self._listener.serve(self._handle_connection, self._task_group)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug("Redirect listener socket closed")
        # 获胜请求出现后不再接受新连接
        await self._close_listener()

    async def _close_listener(self) -> None:
        if self._listener is not None:
            listener, self._listener = self._listener, None
            with anyio.CancelScope(shield=True):
                await listener.aclose()

    async def _handle_connection(self, stream: SocketStream) -> None:
        # 单个连接上的任何错误都不能逃出监听器，也不能影响流程状态
        async with stream:
            try:
                request_line = await self._read_request_line(stream)
                if request_line is None:
                    logger.debug("Dropping malformed request on the redirect listener")
                    return

                redirect = None
                if request_line.method == "GET" and self._winner is None:
                    redirect = extract_redirect(request_line.target, self.expected_state)

                if redirect is None:
                    logger.debug(
                        f"Ignoring non-matching request: {request_line.method} {urlsplit(request_line.target).path}"
                    )
                    await stream.send(render_response(404, NOT_FOUND_BODY))
                    return

                # 检查和赋值之间没有 await，保证只有一个获胜者
                pending = PendingRedirect(stream, redirect)
                self._winner = pending
                self._redirect_received.set()
                if self._accept_scope is not None:
                    self._accept_scope.cancel()
                logger.info("Received the OAuth redirect from the browser")
                await pending.hold()
            except (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError) as exc:
                logger.debug(f"Redirect connection failed: {exc}")

    async def _read_request_line(self, stream: SocketStream) -> RequestLine | None:
        buffer = b""
        with anyio.move_on_after(self.read_timeout):
            while b"\n" not in buffer and len(buffer) < MAX_REQUEST_LINE:
                try:
                    buffer += await stream.receive()
                except anyio.EndOfStream:
                    break
        return parse_request_line(buffer[:MAX_REQUEST_LINE])
