"""LLM Provider 集成层。

该包下的模块负责：
- 定义适配器基类与 HTTP 传输/错误映射 (base)。
- 维护 Provider 名称与适配器的对应关系 (registry)。
- 提供各厂商的具体实现（openai_adapter、anthropic_adapter、gemini_adapter、custom_adapter）。
"""

from agentify.config.settings import OrchestratorConfig
from agentify.providers.base import BaseAdapter, ParsedResponse, StreamChunk, WireRequest
from agentify.providers.registry import PROVIDER_REGISTRY, detect_provider, get_adapter_class


def create_adapter(config: OrchestratorConfig) -> BaseAdapter:
    """根据配置创建适配器实例，provider 为空时按 api_url 自动识别。"""

    name = config.provider or detect_provider(config.api_url)
    adapter_cls = get_adapter_class(name)
    return adapter_cls(
        api_url=config.api_url or "",
        api_key=config.api_key,
        timeout=config.http_timeout,
        custom_headers=config.custom_headers,
    )


__all__ = [
    "BaseAdapter",
    "ParsedResponse",
    "StreamChunk",
    "WireRequest",
    "PROVIDER_REGISTRY",
    "create_adapter",
    "detect_provider",
    "get_adapter_class",
]
