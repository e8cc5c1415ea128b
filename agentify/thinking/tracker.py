"""思考状态跟踪器。

单槽位的状态发布者：编排器写入（开始/结束/当前动作/进度），观察者通过
on_status_change 订阅，或随时调用 get_status 读取快照。

- 快照是深拷贝，观察者修改快照不会影响内部状态；
- elapsed_ms 在读取时根据开始时间计算，不依赖定时器；
- 单个监听器抛出的异常只记录日志，不影响其他监听器和调用方。
"""

import copy
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

from agentify.domain.models import utcnow
from agentify.infrastructure.logging.logger import logger
from agentify.utils.formatters import format_elapsed


MAX_HISTORY = 100

StatusListener = Callable[[Dict[str, Any]], None]


def _initial_status() -> Dict[str, Any]:
    return {
        "is_thinking": False,
        "current_action": None,
        "step": None,
        "progress": 0,
        "thinking_content": "",
        "history": [],
        "start_time": None,
        "elapsed_ms": 0,
        "last_update": None,
    }


class ThinkingStatusTracker:
    def __init__(self):
        self._status = _initial_status()
        self._started_at: Optional[float] = None
        self._listeners: List[StatusListener] = []

    # ---- 写入 ----

    def _update(self, action: Optional[str], **details: Any) -> None:
        previous = self._status["current_action"]
        self._status.update(details)
        self._status["current_action"] = action
        self._status["last_update"] = utcnow()
        if action and action != previous:
            self._status["history"].append({"action": action, "timestamp": utcnow(), "details": copy.deepcopy(details)})
            if len(self._status["history"]) > MAX_HISTORY:
                del self._status["history"][0]
        self._notify()

    def start_thinking(self, action: str = "Processing") -> None:
        self._started_at = time.monotonic()
        self._update(action, is_thinking=True, start_time=utcnow(), progress=0, elapsed_ms=0)

    def stop_thinking(self) -> None:
        elapsed = self._elapsed_ms()
        self._started_at = None
        self._update(None, is_thinking=False, progress=100, elapsed_ms=elapsed)

    def set_action(self, action: str, step: Optional[str] = None) -> None:
        self._update(action, step=step)

    def set_progress(self, progress: Union[int, float]) -> None:
        progress = max(0, min(100, progress))
        self._update(self._status["current_action"], progress=progress)

    def set_step(self, step: int, total_steps: Optional[int] = None) -> None:
        step_info: Any = f"{step}/{total_steps}" if total_steps else step
        self._update(self._status["current_action"], step=step_info)
        if total_steps:
            self.set_progress(round(step / total_steps * 100))

    def add_thinking_content(self, content: str) -> None:
        self._status["thinking_content"] += content
        self._notify()

    def clear_thinking_content(self) -> None:
        self._status["thinking_content"] = ""
        self._notify()

    def clear_history(self) -> None:
        self._status["history"] = []
        self._notify()

    def reset(self) -> None:
        self._status = _initial_status()
        self._started_at = None
        self._notify()

    # ---- 订阅 ----

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """注册监听器，返回取消订阅函数。"""

        if not callable(listener):
            raise TypeError("listener must be callable")
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify(self) -> None:
        snapshot = self.get_status()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.log(logging.ERROR, "Thinking status listener failed", exc_info=True)

    # ---- 读取 ----

    def _elapsed_ms(self) -> int:
        if self._started_at is None:
            return int(self._status["elapsed_ms"])
        return int((time.monotonic() - self._started_at) * 1000)

    def get_status(self) -> Dict[str, Any]:
        status = copy.deepcopy(self._status)
        status["elapsed_ms"] = self._elapsed_ms()
        return status

    def get_history(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._status["history"])

    @property
    def is_thinking(self) -> bool:
        return bool(self._status["is_thinking"])

    @property
    def current_action(self) -> Optional[str]:
        return self._status["current_action"]

    @property
    def progress(self) -> Union[int, float]:
        return self._status["progress"]

    def formatted_elapsed(self) -> str:
        return format_elapsed(self._elapsed_ms())

    def export_summary(self) -> Dict[str, Any]:
        return {
            "current_status": self.get_status(),
            "formatted_elapsed": self.formatted_elapsed(),
            "history_count": len(self._status["history"]),
            "listener_count": len(self._listeners),
        }
