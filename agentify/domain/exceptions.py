"""统一业务异常模型。

所有跨模块抛出的错误都继承自 AgentError，便于编排层统一分类：

- ValidationError / ConfigurationError：本地校验失败，总是转换为 TurnResult。
- ToolError 系列：总是转换为 ToolResult 失败结果回传给模型，不向外抛出。
- TransportError 系列：网络/超时/限流/5xx，可恢复。
- StorageError 系列：持久化失败，StorageQuotaExceeded 表示裁剪+压缩后仍超配额。
"""

from typing import Any, Dict


class AgentError(Exception):
    """异常基类。

    Attributes:
        code: 机器可读错误码（如 "NET_RATE_LIMIT"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 tool_name、endpoint 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "http_status": self.http_status,
            "details": dict(self.extra),
        }


class ValidationError(AgentError):
    """用户输入或参数校验失败。"""


class ConfigurationError(AgentError):
    """缺少 endpoint / 凭证 / 模型等必需配置。"""


class ToolRoundLimitError(AgentError):
    """工具调用轮数达到上限。"""


class ToolError(AgentError):
    """工具相关错误的基类。"""


class ToolArgumentParseError(ToolError):
    """模型给出的工具参数无法解析为结构化对象。"""


class UnknownToolError(ToolError):
    """模型请求了未注册的工具。"""


class ToolExecutionError(ToolError):
    """工具执行过程中抛出异常。"""


class TransportError(AgentError):
    """与 Provider 通信失败（网络、超时、HTTP 错误）。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、DNS 解析失败、超时等。"""


class RateLimitError(TransportError):
    """Provider 限流错误（HTTP 429）。"""


class ApiError(TransportError):
    """Provider 返回非 2xx 且非 429 的响应。"""


class ModelResponseError(AgentError):
    """Provider 返回的响应结构无法解析。"""


class StreamError(AgentError):
    """流式响应中收到错误事件或解析失败。"""


class StorageError(AgentError):
    """持久化读写失败。"""


class StorageQuotaExceeded(StorageError):
    """裁剪与压缩之后写入仍然超出后端字节配额。

    调用方已经持有内存中的记录，会话内行为可以继续，只是没有被持久化。
    """


# 不可恢复的网络错误码：连接被拒绝 / DNS 解析失败
FATAL_ERROR_CODES = frozenset({"NET_CONNECTION_REFUSED", "NET_DNS_FAILURE"})

# 编程错误，一律视为不可恢复
PROGRAMMING_ERRORS = (TypeError, AttributeError, NameError, ImportError)


def is_recoverable(error: BaseException) -> bool:
    """判断一次编排失败是否可以转换成普通的 TurnResult 返回给调用方。"""

    if isinstance(error, AgentError):
        return error.code not in FATAL_ERROR_CODES
    return not isinstance(error, PROGRAMMING_ERRORS)


def classify_error(error: BaseException) -> str:
    return "recoverable" if is_recoverable(error) else "fatal"


def error_code(error: BaseException) -> str:
    code = getattr(error, "code", None)
    return str(code) if code else type(error).__name__


def user_facing_message(error: BaseException) -> str:
    """根据错误分类生成给终端用户看的文案，保证不会返回空内容。"""

    code = error_code(error)
    status = getattr(error, "http_status", None)
    message = getattr(error, "message", None) or str(error) or type(error).__name__
    if code in ("NET_UNAUTHORIZED", "UNAUTHORIZED") or status == 401:
        return "Authentication failed. Please check your API key."
    if code in ("NET_RATE_LIMIT", "RATE_LIMIT") or status == 429:
        return "Rate limit exceeded. Please wait a moment and try again."
    if code in ("NET_SERVER_ERROR", "SERVER_ERROR") or (
        status is not None and status >= 500 and not isinstance(error, NetworkError)
    ):
        return "The AI service is experiencing issues. Please try again in a moment."
    text = f"I encountered an error: {message}"
    if is_recoverable(error):
        text += "\n\nWould you like to try rephrasing your request or asking something else?"
    return text


def error_payload(error: BaseException) -> Dict[str, Any]:
    """把任意异常转换为可 JSON 序列化的字典。"""

    if isinstance(error, AgentError):
        return error.to_dict()
    return {"name": type(error).__name__, "message": str(error)}
