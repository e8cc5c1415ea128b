"""流式响应处理。"""

from agentify.streaming.stream_handler import StreamHandler, StreamOutcome

__all__ = ["StreamHandler", "StreamOutcome"]
