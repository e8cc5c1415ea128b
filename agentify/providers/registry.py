"""Provider 注册表与识别。

Provider 在配置阶段确定一次：显式配置优先，否则根据 api_url 的域名识别，
识别不到的 endpoint 一律按 custom（OpenAI 兼容）处理。
"""

from typing import Dict, Optional, Type

from agentify.domain.exceptions import ConfigurationError
from agentify.providers.anthropic_adapter import AnthropicAdapter
from agentify.providers.base import BaseAdapter
from agentify.providers.custom_adapter import CustomAdapter
from agentify.providers.gemini_adapter import GeminiAdapter
from agentify.providers.openai_adapter import DeepSeekAdapter, OpenAIAdapter


PROVIDER_REGISTRY: Dict[str, Type[BaseAdapter]] = {
    "openai": OpenAIAdapter,
    "deepseek": DeepSeekAdapter,
    "anthropic": AnthropicAdapter,
    "gemini": GeminiAdapter,
    "custom": CustomAdapter,
}

# 域名片段 -> Provider 名称，按顺序匹配
_URL_MARKERS = (
    ("openai.com", "openai"),
    ("anthropic.com", "anthropic"),
    ("generativelanguage.googleapis.com", "gemini"),
    ("googleapis.com", "gemini"),
    ("deepseek.com", "deepseek"),
)


def detect_provider(api_url: Optional[str]) -> str:
    url = (api_url or "").lower()
    for marker, name in _URL_MARKERS:
        if marker in url:
            return name
    return "custom"


def get_adapter_class(name: str) -> Type[BaseAdapter]:
    """根据名称获取适配器类，名称不区分大小写。"""

    key = (name or "").strip().lower()
    try:
        return PROVIDER_REGISTRY[key]
    except KeyError:
        raise ConfigurationError(
            code="SYS_CONFIG_INVALID",
            message=f"Unknown provider: {name!r}",
            available=sorted(PROVIDER_REGISTRY),
        )
