"""Agentify 顶层包。

该包提供浏览器端 AI Agent 的编排核心，
包括配置加载、领域模型、Provider 适配、工具系统、
对话编排、思考状态发布与有界持久化存储等能力。
"""

from agentify.agents.orchestrator import ConversationOrchestrator
from agentify.config.settings import OrchestratorConfig
from agentify.domain.models import Message, TurnOptions, TurnResult
from agentify.tools.definitions import ToolDef, ToolParam

__all__ = [
    "ConversationOrchestrator",
    "Message",
    "OrchestratorConfig",
    "ToolDef",
    "ToolParam",
    "TurnOptions",
    "TurnResult",
]
