"""Agent 当前“在做什么”的状态发布。"""

from agentify.thinking.tracker import ThinkingStatusTracker

__all__ = ["ThinkingStatusTracker"]
