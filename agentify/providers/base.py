"""Provider 适配器基类。

编排器不直接依赖具体厂商的 HTTP 格式，而是依赖以下四个操作：

- format_request(messages, tools, config) -> WireRequest：构造线上请求。
- make_request(wire, stream)：发送请求；非流式返回 JSON dict，流式返回逐行迭代器。
- parse_response(data) -> ParsedResponse：解析非流式响应。
- decode_stream(lines) -> Iterator[StreamChunk]：把流式响应解码为类型化的增量。

HTTP 传输与错误映射（状态码 -> 错误码，httpx 异常 -> NetworkError）在这里统一实现，
子类只负责各厂商的 JSON 格式。
"""

import json
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional, Union

import httpx

from agentify.domain.exceptions import (
    ApiError,
    ModelResponseError,
    NetworkError,
    RateLimitError,
    TransportError,
)
from agentify.domain.models import Message
from agentify.tools.definitions import ToolCall


ChunkKind = Literal["token", "tool_call", "thinking", "finish", "error"]


@dataclass
class WireRequest:
    url: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    method: str = "POST"


@dataclass
class ParsedResponse:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    thinking: str = ""
    usage: Optional[Dict[str, Any]] = None


@dataclass
class StreamChunk:
    """流式响应中的一个类型化增量。"""

    kind: ChunkKind
    text: str = ""
    tool_call: Optional[ToolCall] = None
    finish_reason: Optional[str] = None
    error: Any = None
    usage: Optional[Dict[str, Any]] = None


_SERVER_ERROR_STATUSES = (500, 502, 503, 504)
_DNS_MARKERS = ("name or service not known", "nodename nor servname", "getaddrinfo failed", "name resolution")


def _is_dns_failure(exc: BaseException) -> bool:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return True
        if any(marker in str(current).lower() for marker in _DNS_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


def map_request_error(exc: httpx.RequestError, endpoint: str) -> NetworkError:
    """把 httpx 的请求异常映射为带错误码的 NetworkError。"""

    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(code="NET_TIMEOUT", message=f"Request timed out: {exc}", http_status=504, endpoint=endpoint)
    if isinstance(exc, httpx.ConnectError):
        if _is_dns_failure(exc):
            return NetworkError(code="NET_DNS_FAILURE", message=f"DNS lookup failed: {exc}", http_status=502, endpoint=endpoint)
        return NetworkError(
            code="NET_CONNECTION_REFUSED", message=f"Connection refused: {exc}", http_status=502, endpoint=endpoint
        )
    return NetworkError(code="NET_CONNECTION_FAILED", message=str(exc) or type(exc).__name__, http_status=502, endpoint=endpoint)


def map_status_error(status: int, body: str, endpoint: str, retry_after: Optional[str] = None) -> TransportError:
    """把非 2xx 响应映射为 TransportError 子类。"""

    detail = _error_detail(body)
    if status == 429:
        return RateLimitError(
            code="NET_RATE_LIMIT", message=detail or "Rate limit exceeded", http_status=429,
            endpoint=endpoint, retry_after=retry_after,
        )
    if status == 401:
        code = "NET_UNAUTHORIZED"
    elif status == 403:
        code = "NET_FORBIDDEN"
    elif status == 404:
        code = "NET_NOT_FOUND"
    elif status in _SERVER_ERROR_STATUSES:
        code = "NET_SERVER_ERROR"
    else:
        code = "NET_INVALID_RESPONSE"
    return ApiError(code=code, message=detail or f"HTTP {status}", http_status=status, endpoint=endpoint)


def _error_detail(body: str) -> str:
    """尽量从错误响应体中取出厂商给的错误信息。"""

    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return (body or "").strip()[:500]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if data.get("message"):
            return str(data["message"])
    return (body or "").strip()[:500]


def iter_payloads(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """从 SSE（data: 前缀）或 NDJSON 行中逐个取出 JSON 对象，跳过无法解析的行。"""

    for line in lines:
        if not line:
            continue
        data_str = line.strip()
        if data_str.startswith("event:") or data_str.startswith(":"):
            continue
        if data_str.startswith("data:"):
            data_str = data_str[5:].strip()
        if not data_str or data_str == "[DONE]":
            continue
        try:
            payload = json.loads(data_str)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            yield payload


class BaseAdapter:
    """Provider 适配器基类。

    - name: Provider 名称，同时决定 ToolRegistry 输出的工具定义格式。
    - api_url / api_key: 请求地址与凭证。
    - timeout: 只作用于 Provider 网络请求的超时时间（秒）。
    """

    name = "base"

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        custom_headers: Optional[Dict[str, str]] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self.custom_headers = dict(custom_headers or {})

    # ---- 子类实现的格式转换 ----

    def format_request(self, messages: List[Message], tools: List[Dict[str, Any]], config) -> WireRequest:
        raise NotImplementedError

    def format_tools(self, tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def parse_response(self, data: Dict[str, Any]) -> ParsedResponse:
        raise NotImplementedError

    def decode_stream(self, lines: Iterable[str]) -> Iterator[StreamChunk]:
        raise NotImplementedError

    # ---- 公共部分 ----

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update(self.custom_headers)
        return headers

    def endpoint(self, stream: bool = False) -> str:
        return self.api_url

    def make_request(self, wire: WireRequest, stream: bool = False) -> Union[Dict[str, Any], Iterator[str]]:
        if stream:
            return self._stream_lines(wire)
        try:
            with httpx.Client(timeout=self.timeout, trust_env=False) as client:
                resp = client.post(wire.url, json=wire.body, headers=wire.headers)
        except httpx.RequestError as e:
            raise map_request_error(e, wire.url) from e
        if resp.status_code >= 400:
            raise map_status_error(resp.status_code, resp.text, wire.url, resp.headers.get("retry-after"))
        try:
            return resp.json()
        except ValueError as e:
            raise ModelResponseError(
                code="MDL_INVALID_RESPONSE",
                message=f"Response is not valid JSON: {e}",
                http_status=502,
                endpoint=wire.url,
            )

    def _stream_lines(self, wire: WireRequest) -> Iterator[str]:
        """流式请求：逐行产出响应体。连接与状态码错误在第一次迭代时抛出。"""

        try:
            with httpx.Client(timeout=self.timeout, trust_env=False) as client:
                with client.stream(wire.method, wire.url, json=wire.body, headers=wire.headers) as resp:
                    if resp.status_code >= 400:
                        body = resp.read().decode("utf-8", errors="replace")
                        raise map_status_error(resp.status_code, body, wire.url, resp.headers.get("retry-after"))
                    for line in resp.iter_lines():
                        yield line
        except httpx.RequestError as e:
            raise map_request_error(e, wire.url) from e

    @staticmethod
    def tool_call_id(raw_id: Optional[str], index: int) -> str:
        return raw_id or f"call_{index}"

    @staticmethod
    def _model_error(message: str, data: Any) -> ModelResponseError:
        return ModelResponseError(code="MDL_INVALID_RESPONSE", message=message, http_status=502, response=data)
