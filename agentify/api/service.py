"""对外 API 服务模块。

提供简化的函数接口供上层应用调用。
"""

from typing import Any, Dict, List, Optional

from agentify.agents.orchestrator import ConversationOrchestrator
from agentify.domain.models import TurnOptions
from agentify.infrastructure.logging.logger import logger


_orchestrator: Optional[ConversationOrchestrator] = None


def get_default_orchestrator() -> ConversationOrchestrator:
    """获取默认的编排器实例（单例），配置来自全局 settings。"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ConversationOrchestrator()
    return _orchestrator


def set_default_orchestrator(orchestrator: Optional[ConversationOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator


def run_turn(
    user_input: str,
    chat_id: Optional[str] = None,
    max_tool_rounds: Optional[int] = None,
) -> Dict[str, Any]:
    """运行一次对话。

    Args:
        user_input: 用户输入内容
        chat_id: 会话ID（可选，不提供则创建新会话）
        max_tool_rounds: 本次对话的工具调用轮数上限（可选）

    Returns:
        包含会话ID、回答内容、结束原因与错误信息的字典

    Raises:
        连接被拒绝、DNS 解析失败等致命错误会原样抛出
    """
    orchestrator = get_default_orchestrator()
    try:
        result = orchestrator.turn(user_input, TurnOptions(chat_id=chat_id, max_tool_rounds=max_tool_rounds))
    except Exception as e:
        logger.error(f"Turn failed: {e}", extra={"extra": {
            "chat_id": chat_id,
            "error": str(e),
        }})
        raise

    return {
        "chat_id": result.chat_id,
        "content": result.content,
        "finish_reason": result.finish_reason,
        "tool_calls": [call.to_dict() for call in result.tool_calls],
        "error": getattr(result.error, "code", None) or (type(result.error).__name__ if result.error else None),
        "usage": result.usage,
    }


def list_chats() -> List[Dict[str, Any]]:
    """列出所有持久化的会话。

    Returns:
        会话列表，每项包含 chat_id, message_count, created_at, updated_at
    """
    history = get_default_orchestrator().chat_history
    chats = []
    for chat_id in history.chat_ids():
        record = history.get_history(chat_id)
        chats.append(
            {
                "chat_id": chat_id,
                "message_count": len(record.messages),
                "created_at": record.metadata.created_at,
                "updated_at": record.metadata.updated_at,
            }
        )
    return chats


def get_chat_messages(chat_id: str) -> List[Dict[str, Any]]:
    return [m.to_dict() for m in get_default_orchestrator().chat_history.get_history(chat_id).messages]


def get_storage_info() -> Dict[str, Any]:
    return get_default_orchestrator().storage_info()


def clear_all_storage() -> None:
    get_default_orchestrator().clear_all_storage()
